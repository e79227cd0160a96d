import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    # Example: "mongodb://localhost:27017"
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_NAME = os.getenv("DATABASE_NAME", "bookcourier")

    # JWT settings for password sign-in tokens
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
    ALGORITHM = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))

    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")

    # Seeded on startup when set and no admin exists yet
    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
    ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")

    CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    PORT = int(os.getenv("PORT", 8000))
