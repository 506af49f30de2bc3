"""
Runtime configuration for the ImportMobile API

Everything is read from environment variables; a local .env file is loaded
first so development setups don't need to export anything.
"""
import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# Auth
JWT_SECRET = os.getenv("JWT_SECRET") or "change-me-in-production"
JWT_ALGORITHM = "HS256"
JWT_EXPIRES_DAYS = _env_int("JWT_EXPIRES_DAYS", 30)
PASSWORD_MIN_LENGTH = 5
DEFAULT_PHONE_REGION = os.getenv("DEFAULT_PHONE_REGION", "UZ")

if not os.getenv("JWT_SECRET"):
    logger.warning("JWT_SECRET is not set; using the insecure development key")

# Telegram bot
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
TELEGRAM_API_URL = os.getenv("TELEGRAM_API_URL", "https://api.telegram.org").rstrip("/")
TELEGRAM_TIMEOUT = float(os.getenv("TELEGRAM_TIMEOUT", "10"))
ADMIN_TELEGRAM_CHAT_ID = os.getenv("ADMIN_TELEGRAM_CHAT_ID")

# Uploads
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
MAX_UPLOAD_SIZE_MB = _env_int("MAX_UPLOAD_SIZE_MB", 5)
MAX_UPLOAD_BYTES = MAX_UPLOAD_SIZE_MB * 1024 * 1024

# Orders
DEFAULT_PREPAYMENT_PERCENTAGE = 50.0
STRICT_STATUS_TRANSITIONS = _env_bool("STRICT_STATUS_TRANSITIONS")

# HTTP
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()] or ["*"]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = _env_int("PORT", 8000)
