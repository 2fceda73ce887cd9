from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # JWT Settings
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # App Settings
    APP_NAME: str = "Buildmart Order Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Email/SMTP Settings
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = ""  # Defaults to SMTP_USER
    SMTP_FROM_NAME: str = "Buildmart Orders"

    # Geocoding (Google Geocoding API)
    GOOGLE_MAPS_API_KEY: str = ""
    GEOCODE_CACHE_TTL_SECONDS: int = 86400  # 24 hours
    GEOCODE_CACHE_MAX_SIZE: int = 1000
    GEOCODE_TIMEOUT: float = 10.0

    # Delivery
    MAX_WAREHOUSE_SEARCH_RADIUS_KM: float = 500.0  # Used when a warehouse has no radius of its own

    # Order change window
    ORDER_CHANGE_WINDOW_HOURS: int = 48

    # External accounting system
    ACCOUNTING_API_URL: str = ""  # e.g. "https://www.zohoapis.in/books/v3"
    ACCOUNTING_API_TOKEN: str = ""
    ACCOUNTING_ORGANIZATION_ID: str = ""
    ACCOUNTING_TIMEOUT: float = 10.0

    # Accounting document sync
    SYNC_WORKER_COUNT: int = 2
    SYNC_RETRY_ENABLED: bool = False  # Periodic sweep for documents still missing
    SYNC_RETRY_INTERVAL_MINUTES: int = 15

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @property
    def accounting_configured(self) -> bool:
        return bool(self.ACCOUNTING_API_URL and self.ACCOUNTING_API_TOKEN)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
