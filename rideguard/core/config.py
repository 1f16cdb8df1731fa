# rideguard/core/config.py
import logging
import secrets
from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings for the RideGuard security core"""
    APP_NAME: str = "RideGuard"
    DEBUG: bool = False

    # Credential signing
    JWT_SECRET: Optional[str] = Field(default=None)
    JWT_ALGORITHM: str = "HS256"

    # Storage; unset means in-memory stores
    REDIS_URL: Optional[str] = Field(default=None)
    STORE_TIMEOUT_SECONDS: float = 5.0

    # Session lifecycle
    SESSION_MAX_AGE_HOURS: int = 24
    SESSION_REMEMBER_ME_DAYS: int = 30
    SESSION_INACTIVITY_MINUTES: int = 30
    SESSION_REFRESH_THRESHOLD_MINUTES: int = 15
    MAX_CONCURRENT_SESSIONS: int = 5
    SESSION_SWEEP_INTERVAL_MINUTES: int = 60

    # Request sanitization
    SANITIZER_MAX_DEPTH: int = 32
    POLLUTION_WHITELIST: List[str] = Field(default_factory=lambda: ["tags", "fields"])

    # Activity logging
    ACTIVITY_QUEUE_SIZE: int = 1000
    ACTIVITY_RETENTION_DAYS: int = 90
    ADMIN_API_KEY: Optional[str] = Field(default=None)

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_FILE: str = "rideguard.log"
    LOG_MAX_BYTES: int = 5 * 1024 * 1024
    LOG_BACKUP_COUNT: int = 5

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }


# Settings singleton
settings = Settings()


def validate_required_settings() -> bool:
    """Check that secrets are configured; warns but never fails"""
    missing = []

    if not settings.JWT_SECRET:
        missing.append("JWT_SECRET")

    if not settings.ADMIN_API_KEY:
        missing.append("ADMIN_API_KEY")

    if missing:
        logger.warning(f"Missing environment variables: {', '.join(missing)}")
        logger.warning("Temporary values will be generated; they do not survive a restart.")
        return False

    return True


def get_jwt_secret() -> str:
    """Get the signing secret from settings or generate one for development"""
    if not settings.JWT_SECRET:
        settings.JWT_SECRET = secrets.token_urlsafe(48)
        logger.warning("⚠️ No JWT_SECRET set. Generated temporary signing secret.")
        logger.warning("⚠️ Set JWT_SECRET environment variable for production!")
    return settings.JWT_SECRET


def get_admin_api_key() -> str:
    """Get the admin API key from settings or generate one for development"""
    if not settings.ADMIN_API_KEY:
        settings.ADMIN_API_KEY = secrets.token_urlsafe(32)
        logger.warning("⚠️ No ADMIN_API_KEY set. Generated temporary key.")
        logger.warning(f"⚠️ Temporary key (first 8 chars): {settings.ADMIN_API_KEY[:8]}...")
    return settings.ADMIN_API_KEY
