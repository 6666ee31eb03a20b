"""Base remote store interface and common functionality."""

from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
from dataclasses import dataclass, field
import posixpath

from ..utils.logging import get_logger


TAG_FILE = "file"
TAG_FOLDER = "folder"


@dataclass
class RemoteEntry:
    """Standard entry structure returned by remote store listings."""

    path_display: str
    path_lower: str
    tag: str
    server_modified: Optional[datetime] = None  # Naive UTC, files only
    size: Optional[int] = None
    content_hash: Optional[str] = None
    media_info: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return posixpath.basename(self.path_display.rstrip("/"))

    @property
    def is_folder(self) -> bool:
        return self.tag == TAG_FOLDER

    @property
    def is_file(self) -> bool:
        return self.tag == TAG_FILE

    @property
    def extension(self) -> str:
        return posixpath.splitext(self.name)[1].lstrip(".").lower()

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RemoteEntry":
        """Build an entry from a Dropbox-style metadata object."""
        return cls(
            path_display=data.get("path_display") or data.get("path_lower") or "",
            path_lower=data.get("path_lower") or (data.get("path_display") or "").lower(),
            tag=data.get(".tag", TAG_FILE),
            server_modified=parse_timestamp(data.get("server_modified")),
            size=data.get("size"),
            content_hash=data.get("content_hash"),
            media_info=data.get("media_info") or {},
        )


def parse_timestamp(timestamp_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp string into a naive UTC datetime."""
    if not timestamp_str:
        return None
    try:
        parsed = datetime.fromisoformat(timestamp_str.replace('Z', '+00:00'))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class RemoteStore(ABC):
    """Abstract base class for remote object stores."""

    def __init__(self, **kwargs):
        self.logger = get_logger(self.__class__.__name__)

    @abstractmethod
    async def is_connected(self) -> bool:
        """Check credentials are present and accepted; never raises."""
        pass

    @abstractmethod
    async def get_metadata(self, path: str) -> Optional[RemoteEntry]:
        """Return the entry at ``path`` or None if it does not exist."""
        pass

    @abstractmethod
    async def list_folder(self, path: str) -> List[RemoteEntry]:
        """List the immediate children of ``path`` (non-recursive)."""
        pass

    @abstractmethod
    async def create_folder(self, path: str) -> RemoteEntry:
        pass

    @abstractmethod
    async def upload(self, local_path: str, remote_path: str) -> RemoteEntry:
        """Upload a local file, overwriting whatever is at ``remote_path``."""
        pass

    @abstractmethod
    async def download(self, remote_path: str, local_path: str) -> bool:
        """Download ``remote_path`` into ``local_path``."""
        pass

    @abstractmethod
    async def delete(self, path: str) -> bool:
        pass

    @abstractmethod
    async def move(self, from_path: str, to_path: str) -> RemoteEntry:
        pass

    async def get_connection_status(self) -> Dict[str, Any]:
        """Describe the connection for status reporting."""
        return {
            "client_type": self.__class__.__name__,
            "connected": await self.is_connected()
        }


class RemoteStoreError(Exception):
    """Base class for remote store failures."""
    pass


class RateLimitError(RemoteStoreError):
    """Raised when API rate limit is exceeded."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class AuthenticationError(RemoteStoreError):
    """Raised when API authentication fails."""
    pass


class APIConnectionError(RemoteStoreError):
    """Raised when API connection fails."""
    pass


class RemoteNotFoundError(RemoteStoreError):
    """Raised when the requested path does not exist remotely."""
    pass


class RemoteAPIError(RemoteStoreError):
    """Raised for any other non-success API response."""

    def __init__(self, message: str, status: Optional[int] = None, summary: str = ""):
        super().__init__(message)
        self.status = status
        self.summary = summary
