import logging
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings

load_dotenv()


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Values come from the process environment or a local .env file. Names are
    matched case-insensitively, so DATABASE_URL and database_url both work.
    """

    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./parkwatch.db"
    DATABASE_ECHO: bool = False

    # Auth
    SECRET_KEY: str = "dev-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    CRON_SECRET: Optional[str] = None

    # Appeals
    MAX_EVIDENCE_BYTES: int = 5 * 1024 * 1024
    ALLOWED_EVIDENCE_TYPES: List[str] = [
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ]
    AUTO_CLOSE_DAYS: int = 7

    # Realtime
    POLL_INTERVAL_MS: int = 5000
    POLL_JITTER_MS: int = 500
    RECONNECT_BASE_MS: int = 500
    RECONNECT_MAX_MS: int = 5000
    STALE_AFTER_FAILURES: int = 3
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    # Out-of-band delivery
    SEND_EMAIL_NOTIFICATIONS: bool = False
    SEND_SMS_NOTIFICATIONS: bool = False
    SENDGRID_API_KEY: Optional[str] = None
    FROM_EMAIL: str = "no-reply@parkwatch.local"
    SMS_GATEWAY_URL: str = "https://sms.arkesel.com/sms/api"
    SMS_API_KEY: Optional[str] = None
    SMS_SENDER_ID: str = "ParkWatch"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        return str(v or "INFO").upper()

    @property
    def websocket_url(self) -> str:
        base = self.PUBLIC_BASE_URL.rstrip("/")
        if base.startswith("https://"):
            return "wss://" + base[len("https://"):] + "/api/v1/ws"
        return "ws://" + base.split("://", 1)[-1] + "/api/v1/ws"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=level or settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
