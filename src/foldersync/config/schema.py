"""Configuration schema definitions for sync options and policies."""

from typing import Any, Dict, List, Optional
from enum import Enum
from pydantic import BaseModel, Field, field_validator


class SyncDirection(str, Enum):
    """Which reconciliation passes a sync run performs."""
    BOTH = "both"
    TO_REMOTE = "to_remote"
    FROM_REMOTE = "from_remote"

    @property
    def pushes(self) -> bool:
        return self in (SyncDirection.BOTH, SyncDirection.TO_REMOTE)

    @property
    def pulls(self) -> bool:
        return self in (SyncDirection.BOTH, SyncDirection.FROM_REMOTE)


class ConflictPolicy(str, Enum):
    """Rule deciding which side wins when both stores hold the same file."""
    REMOTE_WINS = "remote-wins"
    LOCAL_WINS = "local-wins"
    NEWER_WINS = "newer-wins"
    KEEP_BOTH = "keep-both"

    @classmethod
    def parse(cls, value: Any) -> "ConflictPolicy":
        """Parse a policy name, accepting the legacy setting names."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower().replace("_", "-")
        text = LEGACY_CONFLICT_NAMES.get(text, text)
        return cls(text)


LEGACY_CONFLICT_NAMES = {
    "dropbox": "remote-wins",
    "remote": "remote-wins",
    "filebird": "local-wins",
    "local": "local-wins",
    "newer": "newer-wins",
    "both": "keep-both",
}


class SyncFrequency(str, Enum):
    """How often the recurring sync jobs fire."""
    HOURLY = "hourly"
    TWICE_DAILY = "twicedaily"
    DAILY = "daily"

    @property
    def interval_hours(self) -> int:
        return {
            SyncFrequency.HOURLY: 1,
            SyncFrequency.TWICE_DAILY: 12,
            SyncFrequency.DAILY: 24,
        }[self]


DEFAULT_ROOT_PATH = "/FolderSync"
DEFAULT_ALLOWED_EXTENSIONS = ["jpg", "jpeg", "png", "gif"]


def normalize_extension(extension: str) -> str:
    """Lowercase an extension, strip the dot and fold ``jpeg`` into ``jpg``."""
    ext = (extension or "").strip().lower().lstrip(".")
    return "jpg" if ext == "jpeg" else ext


class SyncOptions(BaseModel):
    """Read-only inputs the sync engine works from."""

    root_path: str = Field(default=DEFAULT_ROOT_PATH, description="Remote folder all synced content lives under")
    conflict_policy: ConflictPolicy = Field(default=ConflictPolicy.NEWER_WINS, description="Conflict resolution policy")
    allowed_extensions: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_EXTENSIONS),
        description="File extensions imported from the remote store"
    )
    sync_frequency: SyncFrequency = Field(default=SyncFrequency.HOURLY, description="Recurring sync frequency")
    auto_sync: bool = Field(default=True, description="Whether recurring sync jobs are scheduled")

    @field_validator('root_path', mode='before')
    @classmethod
    def validate_root_path(cls, v):
        path = str(v or "").strip().rstrip("/")
        if not path:
            return DEFAULT_ROOT_PATH
        if not path.startswith("/"):
            path = "/" + path
        return path

    @field_validator('conflict_policy', mode='before')
    @classmethod
    def validate_conflict_policy(cls, v):
        return ConflictPolicy.parse(v)

    @field_validator('allowed_extensions', mode='before')
    @classmethod
    def validate_allowed_extensions(cls, v):
        if v is None:
            return list(DEFAULT_ALLOWED_EXTENSIONS)
        if isinstance(v, str):
            v = v.split(",")
        return [ext.strip().lower().lstrip(".") for ext in v if ext and ext.strip()]

    def allows_extension(self, extension: str) -> bool:
        """Check an extension against the allow-list (``jpeg`` counts as ``jpg``)."""
        allowed = {normalize_extension(ext) for ext in self.allowed_extensions}
        return normalize_extension(extension) in allowed

    @classmethod
    def from_settings(cls, sync_settings: Any) -> "SyncOptions":
        """Build options from the ``SyncSettings`` group."""
        return cls(
            root_path=sync_settings.root_path,
            conflict_policy=sync_settings.conflict_policy,
            allowed_extensions=sync_settings.allowed_extensions,
            sync_frequency=sync_settings.frequency,
            auto_sync=sync_settings.auto_sync,
        )

    def merged(self, overrides: Optional[Dict[str, Any]] = None) -> "SyncOptions":
        """Return a copy with ``overrides`` applied and validated."""
        data = self.model_dump()
        data.update(overrides or {})
        return SyncOptions(**data)
