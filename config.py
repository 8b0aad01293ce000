"""
Application configuration, read once from the environment at import.
"""

import os

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

PORT = int(os.getenv("PORT", "8000"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

TOKEN_TTL_DAYS = int(os.getenv("TOKEN_TTL_DAYS", "7"))

# Order rules
RETURN_WINDOW_DAYS = int(os.getenv("RETURN_WINDOW_DAYS", "2"))
ID_MAX_ATTEMPTS = int(os.getenv("ID_MAX_ATTEMPTS", "20"))
