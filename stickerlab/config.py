"""Application configuration using Pydantic Settings."""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Calculate project root: config.py is in stickerlab/, so go up one level
_CONFIG_DIR = Path(__file__).resolve().parent
_PROJECT_ROOT = _CONFIG_DIR.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / "stickerlab" / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="StickerLab", description="Application name")
    app_env: str = Field(default="development", description="Application environment")
    log_level: str = Field(default="INFO", description="Root log level", alias="LOG_LEVEL")

    # Database
    database_url: str = Field(
        default="sqlite:///./stickerlab.db",
        description="Database connection URL (PostgreSQL in production)",
        alias="DATABASE_URL",
    )

    # Design assets served to the canvas editor
    public_dir: Path = Field(
        default=_PROJECT_ROOT / "public",
        description="Directory that canvas asset paths are relative to",
        alias="PUBLIC_DIR",
    )

    # Blob storage
    storage_backend: str = Field(
        default="local",
        description="Blob storage backend: 'local' or 'b2'",
        alias="STORAGE_BACKEND",
    )
    storage_path: str | None = Field(
        default=None,
        description="Base directory for local blob storage",
        alias="STORAGE_PATH",
    )
    storage_public_base_url: str = Field(
        default="/blobs",
        description="URL prefix under which local blobs are published",
        alias="STORAGE_PUBLIC_BASE_URL",
    )
    b2_application_key_id: str | None = Field(default=None, alias="B2_APPLICATION_KEY_ID")
    b2_application_key: str | None = Field(default=None, alias="B2_APPLICATION_KEY")
    b2_bucket_id: str | None = Field(default=None, alias="B2_BUCKET_ID")
    b2_bucket_name: str | None = Field(default=None, alias="B2_BUCKET_NAME")
    blob_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for blob storage HTTP requests",
        alias="BLOB_TIMEOUT_SECONDS",
    )

    # Asset cache
    asset_cache_size: int = Field(
        default=1000,
        description="Maximum number of asset records held in the in-process cache",
        alias="ASSET_CACHE_SIZE",
    )
    asset_blob_prefix: str = Field(
        default="assets/shapes",
        description="Blob key prefix for uploaded design assets",
        alias="ASSET_BLOB_PREFIX",
    )

    # Admin
    admin_api_key: str | None = Field(
        default=None,
        description="If set, admin asset routes require a matching X-Admin-Key header",
        alias="ADMIN_API_KEY",
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def validate_database_url(cls, v: str | None) -> str:
        """Validate and normalize database URL."""
        if v is None or v == "":
            raise ValueError("DATABASE_URL is required")
        return v.strip()

    @field_validator("app_env", mode="before")
    @classmethod
    def normalize_app_env(cls, v: str) -> str:
        """Normalize app environment to lowercase."""
        if isinstance(v, str):
            return v.lower().strip()
        return v

    @field_validator("storage_backend", mode="before")
    @classmethod
    def normalize_storage_backend(cls, v: str) -> str:
        """Normalize storage backend name to lowercase."""
        if isinstance(v, str):
            return v.lower().strip()
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        if isinstance(v, str):
            return v.upper().strip()
        return v

    @field_validator("asset_cache_size")
    @classmethod
    def validate_asset_cache_size(cls, v: int) -> int:
        """Reject non-positive cache capacities."""
        if v < 1:
            raise ValueError("ASSET_CACHE_SIZE must be at least 1")
        return v


def get_settings() -> Settings:
    """Get application settings instance.

    Returns:
        Settings: Application settings instance

    Example:
        ```python
        from stickerlab.config import get_settings

        settings = get_settings()
        print(settings.database_url)
        ```
    """
    return Settings()


# Global settings instance
settings = get_settings()
