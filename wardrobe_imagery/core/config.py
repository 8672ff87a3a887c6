"""
Service configuration.

`Settings` is read from the environment (and `.env`) by pydantic-settings.
The pipeline itself never reads it directly: it receives a frozen
`PipelineConfig` built from it, which tests construct by hand.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings; names match the environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=True)

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Wardrobe Imagery Pipeline"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # ==========================================================================
    # Infrastructure
    # ==========================================================================
    REDIS_URL: str = "redis://localhost:6379/1"
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/wardrobe.db"
    AUTO_CREATE_TABLES: bool = True

    # ==========================================================================
    # Supabase (auth + storage in production)
    # ==========================================================================
    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None

    # ==========================================================================
    # Storage Settings
    # ==========================================================================
    STORAGE_BACKEND: str = "local"  # local, supabase
    STORAGE_BUCKET: str = "wardrobe-images"
    LOCAL_STORAGE_PATH: str = "./data/storage"
    PUBLIC_BASE_URL: str = "http://localhost:8000/static/storage"

    MAX_SOURCE_SIZE_BYTES: int = 5 * 1024 * 1024  # 5MB upload ceiling
    STORAGE_MAX_SIZE_BYTES: int = 10 * 1024 * 1024  # 10MB bucket ceiling
    ALLOWED_MIME_TYPES: str = "image/jpeg,image/png,image/webp"
    BUCKET_MIME_TYPES: str = "image/webp,image/png,image/jpeg"

    # ==========================================================================
    # Replicate Settings
    # ==========================================================================
    REPLICATE_API_URL: str = "https://api.replicate.com/v1"
    REPLICATE_API_TOKEN: Optional[str] = None
    REPLICATE_IMAGEN_VERSION: Optional[str] = None
    REPLICATE_GENERATION_MODELS: str = "google/imagen-4,google-deepmind/imagen-4"
    REPLICATE_BG_MODEL: str = "851-labs/background-remover"
    REPLICATE_BG_VERSION: str = ""
    BG_REMOVAL_MAX_ATTEMPTS: int = 3

    # Timeouts (seconds)
    MODEL_LOOKUP_TIMEOUT: float = 20.0
    SUBMIT_TIMEOUT: float = 60.0
    POLL_REQUEST_TIMEOUT: float = 30.0
    POLL_CEILING_SECONDS: float = 120.0
    POLL_INTERVAL_SECONDS: float = 1.5
    DOWNLOAD_TIMEOUT: float = 30.0

    # ==========================================================================
    # Pipeline Settings
    # ==========================================================================
    RESIZE_MAX_DIMENSION: int = 1024
    GENERATION_COST_CENTS: int = 5

    # ==========================================================================
    # Celery Settings
    # ==========================================================================
    # Both default to REDIS_URL when unset
    CELERY_BROKER_URL: Optional[str] = None
    CELERY_RESULT_BACKEND: Optional[str] = None

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:8888"


def split_csv(value: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class PipelineConfig:
    """Explicit configuration handed to the pipeline at construction."""

    bucket_name: str = "wardrobe-images"
    max_source_bytes: int = 5 * 1024 * 1024
    max_storage_bytes: int = 10 * 1024 * 1024
    allowed_mime_types: Tuple[str, ...] = ("image/jpeg", "image/png", "image/webp")
    model_version: Optional[str] = None
    max_bg_removal_attempts: int = 3
    resize_max_dimension: int = 1024
    download_timeout: float = 30.0
    generation_cost_cents: int = 5

    @classmethod
    def from_settings(cls, s: "Settings") -> "PipelineConfig":
        return cls(
            bucket_name=s.STORAGE_BUCKET,
            max_source_bytes=s.MAX_SOURCE_SIZE_BYTES,
            max_storage_bytes=s.STORAGE_MAX_SIZE_BYTES,
            allowed_mime_types=split_csv(s.ALLOWED_MIME_TYPES),
            model_version=s.REPLICATE_IMAGEN_VERSION or None,
            max_bg_removal_attempts=s.BG_REMOVAL_MAX_ATTEMPTS,
            resize_max_dimension=s.RESIZE_MAX_DIMENSION,
            download_timeout=s.DOWNLOAD_TIMEOUT,
            generation_cost_cents=s.GENERATION_COST_CENTS,
        )


settings = Settings()

# SQLite and local storage both write under ./data by default
for _directory in (Path("data"), Path(settings.LOCAL_STORAGE_PATH)):
    _directory.mkdir(parents=True, exist_ok=True)
