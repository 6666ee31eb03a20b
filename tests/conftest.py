"""Shared fixtures: in-memory database, services and an in-memory remote store."""

import os
import posixpath
import sys
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from foldersync.api_clients.base import (
    RemoteStore, RemoteEntry, RemoteNotFoundError, APIConnectionError, TAG_FILE, TAG_FOLDER
)
from foldersync.config.schema import SyncOptions
from foldersync.core.media_library import MediaLibrary
from foldersync.core.run_state import RunStateStore
from foldersync.core.sync_engine import SyncEngine
from foldersync.database import DatabaseManager
from foldersync.database.activity_log import ActivityLog
from foldersync.database.field_targets import FieldTargetService
from foldersync.database.folder_tree import FolderTreeService
from foldersync.database.models import FileRecordCreate, utcnow
from foldersync.utils.retry import RetryPolicy


async def no_sleep(delay: float) -> None:
    return None


class FakeRemoteStore(RemoteStore):
    """Dropbox-like store kept in memory.

    Paths compare case-insensitively. Server times are truncated to whole
    seconds the way Dropbox reports them.
    """

    def __init__(self, connected: bool = True):
        super().__init__()
        self.connected = connected
        self.folders: Dict[str, str] = {}
        self.files: Dict[str, Tuple[str, bytes, datetime]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail_paths: set = set()

    # Test helpers

    def add_folder(self, path: str) -> None:
        while path not in ("", "/"):
            self.folders.setdefault(path.lower(), path)
            path = posixpath.dirname(path)

    def add_file(self, path: str, content: bytes = b"remote", modified: Optional[datetime] = None) -> None:
        self.add_folder(posixpath.dirname(path))
        self.files[path.lower()] = (path, content, (modified or utcnow()).replace(microsecond=0))

    def content(self, path: str) -> Optional[bytes]:
        entry = self.files.get(path.lower())
        return entry[1] if entry else None

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def _check(self, path: str) -> None:
        if path.lower() in self.fail_paths:
            raise APIConnectionError(f"Network error: {path}")

    def _file_entry(self, key: str) -> RemoteEntry:
        path, content, modified = self.files[key]
        return RemoteEntry(
            path_display=path,
            path_lower=key,
            tag=TAG_FILE,
            server_modified=modified,
            size=len(content)
        )

    # RemoteStore

    async def is_connected(self) -> bool:
        self.calls.append(("is_connected", ""))
        return self.connected

    async def get_metadata(self, path: str) -> Optional[RemoteEntry]:
        self.calls.append(("get_metadata", path))
        key = path.lower()
        if key in self.folders:
            return RemoteEntry(path_display=self.folders[key], path_lower=key, tag=TAG_FOLDER)
        if key in self.files:
            return self._file_entry(key)
        return None

    async def list_folder(self, path: str) -> List[RemoteEntry]:
        self.calls.append(("list_folder", path))
        self._check(path)
        key = path.lower()
        if key not in self.folders:
            raise RemoteNotFoundError(f"Path not found: {path}")

        entries = [
            RemoteEntry(path_display=display, path_lower=folder, tag=TAG_FOLDER)
            for folder, display in self.folders.items()
            if folder != key and posixpath.dirname(folder) == key
        ]
        entries.extend(
            self._file_entry(file_key)
            for file_key in self.files
            if posixpath.dirname(file_key) == key
        )
        return sorted(entries, key=lambda e: e.path_lower)

    async def create_folder(self, path: str) -> RemoteEntry:
        self.calls.append(("create_folder", path))
        self._check(path)
        self.add_folder(path)
        return RemoteEntry(path_display=path, path_lower=path.lower(), tag=TAG_FOLDER)

    async def upload(self, local_path: str, remote_path: str) -> RemoteEntry:
        self.calls.append(("upload", remote_path))
        self._check(remote_path)
        with open(local_path, 'rb') as f:
            self.add_file(remote_path, f.read())
        return self._file_entry(remote_path.lower())

    async def download(self, remote_path: str, local_path: str) -> bool:
        self.calls.append(("download", remote_path))
        self._check(remote_path)
        entry = self.files.get(remote_path.lower())
        if entry is None:
            raise RemoteNotFoundError(f"Path not found: {remote_path}")
        with open(local_path, 'wb') as f:
            f.write(entry[1])
        return True

    async def delete(self, path: str) -> bool:
        self.calls.append(("delete", path))
        self.files.pop(path.lower(), None)
        self.folders.pop(path.lower(), None)
        return True

    async def move(self, from_path: str, to_path: str) -> RemoteEntry:
        self.calls.append(("move", from_path))
        _, content, modified = self.files.pop(from_path.lower())
        self.add_file(to_path, content, modified)
        return self._file_entry(to_path.lower())


class RecordingScheduler:
    """Stands in for SyncScheduler; remembers deferred runs."""

    def __init__(self):
        self.deferred = []

    def defer(self, direction, delay_seconds):
        self.deferred.append((direction, delay_seconds))
        return f"sync-once-{direction.value}"


@pytest.fixture
def db_manager():
    manager = DatabaseManager("sqlite:///:memory:")
    manager.create_tables()
    yield manager
    manager.close()


@pytest.fixture
def folder_tree(db_manager):
    return FolderTreeService(db_manager)


@pytest.fixture
def field_targets(db_manager):
    return FieldTargetService(db_manager)


@pytest.fixture
def activity_log(db_manager):
    return ActivityLog(db_manager, max_entries=1000)


@pytest.fixture
def media(folder_tree, tmp_path):
    return MediaLibrary(folder_tree, str(tmp_path / "media"), str(tmp_path / "staging"))


@pytest.fixture
def run_state(db_manager):
    return RunStateStore(db_manager)


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def make_engine(remote, folder_tree, field_targets, activity_log, media, run_state, scheduler):
    """Engine factory; keyword arguments become ``SyncOptions`` fields."""

    def factory(**option_values) -> SyncEngine:
        return SyncEngine(
            remote=remote,
            folder_tree=folder_tree,
            field_targets=field_targets,
            activity_log=activity_log,
            media=media,
            run_state=run_state,
            options=SyncOptions(**option_values),
            scheduler=scheduler,
            membership_retry=RetryPolicy(max_attempts=3, base_delay=0),
            sleep=no_sleep
        )

    return factory


@pytest.fixture
def add_local_file(folder_tree, media):
    """Write content into the media root and create a record for it."""

    def factory(filename: str, folder_id: int = 0, content: bytes = b"local", modified: Optional[datetime] = None):
        path = os.path.join(media.media_root, filename)
        with open(path, 'wb') as f:
            f.write(content)
        return folder_tree.add_attachment(FileRecordCreate(
            filename=filename,
            file_path=path,
            mime_type="image/jpeg",
            file_size=len(content),
            modified_at=modified,
            folder_id=folder_id or None
        ))

    return factory
