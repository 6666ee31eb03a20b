"""Application configuration settings."""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings


class DatabaseSettings(BaseSettings):
    """Database configuration."""

    url: str = Field(default="sqlite:///./data/foldersync.db")

    class Config:
        env_prefix = "DB_"


class DropboxSettings(BaseSettings):
    """Remote store (Dropbox API v2) configuration."""

    app_key: str = Field(default="")
    app_secret: str = Field(default="")
    access_token: str = Field(default="")
    refresh_token: str = Field(default="")
    token_storage_path: str = Field(default="./secrets/dropbox_tokens.json")
    api_base_url: str = Field(default="https://api.dropboxapi.com")
    content_base_url: str = Field(default="https://content.dropboxapi.com")
    request_timeout: int = Field(default=15)
    download_timeout: int = Field(default=30)

    class Config:
        env_prefix = "DROPBOX_"


class SyncSettings(BaseSettings):
    """Synchronization behaviour."""

    root_path: str = Field(default="/FolderSync")
    conflict_policy: str = Field(default="newer-wins")
    allowed_extensions: str = Field(default="jpg,jpeg,png,gif")
    frequency: str = Field(default="hourly")
    auto_sync: bool = Field(default=True)
    media_root: str = Field(default="./data/media")
    staging_dir: str = Field(default="./data/staging")
    schedule_delay_seconds: int = Field(default=5)
    busy_retry_seconds: int = Field(default=120)
    stale_lock_minutes: int = Field(default=120)
    options_file: Optional[str] = Field(default=None)

    class Config:
        env_prefix = "SYNC_"


class ActivityLogSettings(BaseSettings):
    """Activity log retention."""

    max_entries: int = Field(default=1000)

    class Config:
        env_prefix = "ACTIVITY_"


class WebSettings(BaseSettings):
    """Webhook and status server configuration."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)

    class Config:
        env_prefix = "WEB_"


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field(default="INFO")
    format: str = Field(default="json")
    file_path: Optional[str] = Field(default="./logs/foldersync.log")

    class Config:
        env_prefix = "LOG_"


class AppSettings(BaseSettings):
    """Main application settings."""

    name: str = Field(default="Folder Sync")
    version: str = Field(default="1.0.0")
    environment: str = Field(default="development")

    # Sub-settings
    database: DatabaseSettings = DatabaseSettings()
    dropbox: DropboxSettings = DropboxSettings()
    sync: SyncSettings = SyncSettings()
    activity_log: ActivityLogSettings = ActivityLogSettings()
    web: WebSettings = WebSettings()
    logging: LoggingSettings = LoggingSettings()

    class Config:
        env_prefix = "APP_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "allow"  # Allow extra fields in environment


# Global settings instance
settings = AppSettings()


def get_settings() -> AppSettings:
    """Get application settings."""
    return settings
