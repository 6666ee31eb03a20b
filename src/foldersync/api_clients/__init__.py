"""API clients package for remote store integrations."""

from .base import (
    RemoteStore,
    RemoteEntry,
    RemoteStoreError,
    RateLimitError,
    AuthenticationError,
    APIConnectionError,
    RemoteNotFoundError,
    RemoteAPIError
)

from .dropbox import DropboxClient

__all__ = [
    # Base classes and exceptions
    "RemoteStore",
    "RemoteEntry",
    "RemoteStoreError",
    "RateLimitError",
    "AuthenticationError",
    "APIConnectionError",
    "RemoteNotFoundError",
    "RemoteAPIError",

    # Client implementations
    "DropboxClient"
]
