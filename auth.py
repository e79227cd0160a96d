"""
Access control and identity

Bearer credentials are verified by a token verifier (HS256 JWTs by
default), then the verified email is looked up in the user collection and
its role checked against what the route requires.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from config import Config
from database import get_db
from errors import AuthenticationError, AuthorizationError
from schemas import Role, User

logger = logging.getLogger(__name__)

# Use pbkdf2_sha256 to avoid bcrypt backend issues in some environments
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

bearer_scheme = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_access_token(data: dict, expires_minutes: Optional[int] = None) -> str:
    to_encode = data.copy()
    minutes = expires_minutes if expires_minutes is not None else Config.ACCESS_TOKEN_EXPIRE_MINUTES
    to_encode["exp"] = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    return jwt.encode(to_encode, Config.SECRET_KEY, algorithm=Config.ALGORITHM)


def verify_access_token(token: str) -> str:
    """Return the verified email carried by the token."""
    try:
        payload = jwt.decode(token, Config.SECRET_KEY, algorithms=[Config.ALGORITHM])
    except JWTError:
        raise AuthenticationError("Invalid credential")
    subject = payload.get("sub")
    if not subject:
        raise AuthenticationError("Invalid credential")
    return subject.lower()


def get_token_verifier() -> Callable[[str], str]:
    return verify_access_token


# ------------------------- Identity directory -------------------------

def find_user(database, email: str) -> Optional[dict]:
    return database["user"].find_one({"email": email.lower()})


def bootstrap_user(database, email: str, name: str = "", photo: Optional[str] = None,
                   provider: Optional[str] = None, password_hash: Optional[str] = None):
    """Create the user on first contact. Returns (document, created)."""
    user = User(email=email.lower(), name=name, photo=photo, provider=provider, password_hash=password_hash)
    doc = user.model_dump(by_alias=True, exclude_none=True, mode="json")
    now = datetime.now(timezone.utc)
    doc["createdAt"] = now
    doc["updatedAt"] = now
    res = database["user"].update_one({"email": doc["email"]}, {"$setOnInsert": doc}, upsert=True)
    created = res.upserted_id is not None
    if created:
        logger.info("Registered user %s", doc["email"])
    return find_user(database, doc["email"]), created


# ------------------------- Request dependencies -------------------------

def get_verified_email(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    verifier: Callable[[str], str] = Depends(get_token_verifier),
) -> str:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Missing credential")
    try:
        return verifier(credentials.credentials)
    except AuthenticationError:
        logger.warning("Rejected bearer credential")
        raise


def get_current_user(email: str = Depends(get_verified_email), database=Depends(get_db)) -> dict:
    user = find_user(database, email)
    if user is None:
        raise AuthorizationError("No account registered for this identity")
    return user


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    verifier: Callable[[str], str] = Depends(get_token_verifier),
    database=Depends(get_db),
) -> Optional[dict]:
    """Caller's user record for public routes; anonymous or unknown callers get None."""
    if credentials is None or not credentials.credentials:
        return None
    try:
        email = verifier(credentials.credentials)
    except AuthenticationError:
        return None
    return find_user(database, email)


def user_role(user: dict) -> Role:
    return Role(user.get("role", Role.USER.value))


def check_role(user: dict, *roles: Role):
    role = user_role(user)
    if not role.satisfies(roles):
        logger.warning("%s with role %s denied, requires %s",
                       user.get("email"), role.value, ", ".join(r.value for r in roles))
        raise AuthorizationError("Insufficient role")


def require_roles(*roles: Role):
    def dependency(user: dict = Depends(get_current_user)) -> dict:
        check_role(user, *roles)
        return user

    return dependency
