from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str
    # Create missing tables on startup; disable when migrations own the schema
    DB_AUTO_CREATE: bool = True

    LOG_LEVEL: str = "INFO"

    # "development" exposes exception details in admin error responses
    APP_ENV: str = "production"

    # WhatsApp Cloud API
    WHATSAPP_WEBHOOK_TOKEN: str = ""
    # Optional; signature verification is skipped while empty
    WHATSAPP_APP_SECRET: str = ""
    # Business-side number id, stored as from/to of the business end
    WHATSAPP_PHONE_NUMBER_ID: str = ""
    WHATSAPP_ACCESS_TOKEN: str = ""
    WHATSAPP_API_VERSION: str = "v21.0"
    WHATSAPP_API_BASE_URL: str = "https://graph.facebook.com"
    WHATSAPP_SEND_TIMEOUT: float = 10.0

    # Admin access - empty rejects every admin request
    ADMIN_API_TOKEN: str = ""

    # Background ingestion
    INGEST_QUEUE_SIZE: int = 1000
    INGEST_SHUTDOWN_TIMEOUT: float = 5.0

    @property
    def is_development(self) -> bool:
        return self.APP_ENV.lower() == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
