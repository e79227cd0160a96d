"""
Database Helper Functions

MongoDB connection lifecycle and the document helpers the API uses.
The client is created once at startup (init_db) and closed on shutdown
(close_db); request handlers receive the database through get_db.
"""

import logging
from datetime import datetime, timezone
from typing import Union, Optional, Dict, Any

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient, ASCENDING

from config import Config
from errors import DependencyError, ValidationError

logger = logging.getLogger(__name__)

_client = None
db = None


def init_db(client: Optional[MongoClient] = None, name: Optional[str] = None):
    """Connect to MongoDB and prepare indexes. Raises if the server is unreachable."""
    global _client, db
    if client is None:
        if not Config.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not set")
        client = MongoClient(Config.DATABASE_URL)
        # Fail fast: a store we cannot reach at startup is fatal
        client.admin.command("ping")
    _client = client
    db = client[name or Config.DATABASE_NAME]
    ensure_indexes(db)
    logger.info("Connected to database %s", db.name)
    return db


def close_db():
    global _client, db
    if _client is not None:
        _client.close()
        logger.info("Database connection closed")
    _client = None
    db = None


def get_db():
    if db is None:
        raise DependencyError("Database not available")
    return db


def ensure_indexes(database):
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["order"].create_index([("bookId", ASCENDING)])
    database["order"].create_index([("email", ASCENDING)])
    database["book"].create_index([("addedByEmail", ASCENDING)])
    database["wishlist"].create_index([("userEmail", ASCENDING), ("bookId", ASCENDING)], unique=True)


def parse_id(doc_id: str, label: str = "ID") -> ObjectId:
    try:
        return ObjectId(doc_id)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label}")


def to_str_id(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    d = doc.copy()
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d.pop("passwordHash", None)
    return d


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a single document with timestamps"""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(by_alias=True, mode="json")
    else:
        data_dict = data.copy()

    now = datetime.now(timezone.utc)
    data_dict['createdAt'] = now
    data_dict['updatedAt'] = now

    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None, sort: Optional[list] = None):
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document_by_id(database, collection_name: str, doc_id: Union[str, ObjectId]) -> Optional[Dict[str, Any]]:
    """Get a single document by _id; malformed ids resolve to nothing"""
    if not isinstance(doc_id, ObjectId):
        try:
            doc_id = ObjectId(doc_id)
        except (InvalidId, TypeError):
            return None
    return database[collection_name].find_one({"_id": doc_id})


def update_document(database, collection_name: str, doc_id: Union[str, ObjectId], data: dict) -> bool:
    """Update a document by id with $set and updatedAt. True if it exists."""
    if not isinstance(doc_id, ObjectId):
        doc_id = parse_id(doc_id)
    data = data.copy()
    data['updatedAt'] = datetime.now(timezone.utc)
    res = database[collection_name].update_one({"_id": doc_id}, {"$set": data})
    return res.matched_count > 0


def delete_document(database, collection_name: str, doc_id: Union[str, ObjectId]) -> bool:
    if not isinstance(doc_id, ObjectId):
        doc_id = parse_id(doc_id)
    res = database[collection_name].delete_one({"_id": doc_id})
    return res.deleted_count > 0
