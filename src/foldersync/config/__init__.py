"""Configuration package for the folder sync connector."""

from .settings import (
    DatabaseSettings,
    DropboxSettings,
    SyncSettings,
    ActivityLogSettings,
    WebSettings,
    LoggingSettings,
    AppSettings,
    get_settings
)

from .schema import (
    ConflictPolicy,
    SyncDirection,
    SyncFrequency,
    SyncOptions,
    normalize_extension
)

from .loader import (
    ConfigLoader,
    ConfigurationError,
    load_sync_options
)

__all__ = [
    # Settings
    "DatabaseSettings",
    "DropboxSettings",
    "SyncSettings",
    "ActivityLogSettings",
    "WebSettings",
    "LoggingSettings",
    "AppSettings",
    "get_settings",

    # Schema
    "ConflictPolicy",
    "SyncDirection",
    "SyncFrequency",
    "SyncOptions",
    "normalize_extension",

    "ConfigLoader",
    "ConfigurationError",
    "load_sync_options"
]
