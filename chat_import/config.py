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

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./chat_import.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Single-message ingest security (empty disables signature checks)
    INGEST_SECRET: str = ""

    # Transcript interpretation
    EXPORT_TIMEZONE: str = "UTC"
    MESSAGE_ID_SCHEME: str = "sequence"

    # Object storage (media); empty credentials disable uploads
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_KEY: str = ""
    STORAGE_BUCKET: str = "whatsapp-media"
    MEDIA_UPLOAD_CONCURRENCY: int = 5

    # Embedding service; empty key disables embedding
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_TIMEOUT_SECONDS: float = 60.0
    EMBEDDING_CACHE_TTL_SECONDS: float = 3600.0
    EMBEDDING_CACHE_MAX_ENTRIES: int = 10000

    # Import pipeline throttling
    IMPORT_BATCH_SIZE: int = 100
    IMPORT_BATCH_DELAY_SECONDS: float = 0.15
    IMPORT_TIMEOUT_SECONDS: float = 300.0

    # Archive extraction
    PDF_MIN_TEXT_CHARS: int = 20
    MAX_ARCHIVE_MEMBERS: int = 2000
    MAX_ARCHIVE_MEMBER_BYTES: int = 50 * 1024 * 1024
    MAX_ARCHIVE_TOTAL_BYTES: int = 500 * 1024 * 1024


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
