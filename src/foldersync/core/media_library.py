"""Media library: where file record content lives on disk."""

import hashlib
import mimetypes
import os
import shutil
import tempfile
from datetime import datetime
from typing import Any, Dict, Optional

from ..database.folder_tree import FolderTreeService
from ..database.models import FileRecord, FileRecordCreate, FileRecordUpdate, utcnow
from ..utils.logging import get_logger


HASH_BLOCK_SIZE = 64 * 1024


class UnsupportedFileError(ValueError):
    """Raised when an imported file has no known media type."""
    pass


class MediaLibrary:
    """Stores record content under ``media_root`` and stages downloads in ``staging_dir``."""

    def __init__(self, folder_tree: FolderTreeService, media_root: str, staging_dir: str):
        self.folder_tree = folder_tree
        self.media_root = os.path.abspath(media_root)
        self.staging_dir = os.path.abspath(staging_dir)
        self.logger = get_logger(self.__class__.__name__)

        os.makedirs(self.media_root, exist_ok=True)
        os.makedirs(self.staging_dir, exist_ok=True)

    def resolve_path(self, record: FileRecord) -> Optional[str]:
        """Absolute path of a record's content, or None if it is missing."""
        candidates = []
        if record.file_path:
            candidates.append(record.file_path)
        candidates.append(os.path.join(self.media_root, record.filename))

        for candidate in candidates:
            if os.path.isfile(candidate):
                return candidate
        return None

    def staging_path(self, filename: str) -> str:
        """Reserve a fresh staging file for a download."""
        _, ext = os.path.splitext(filename)
        fd, path = tempfile.mkstemp(prefix="foldersync-", suffix=ext, dir=self.staging_dir)
        os.close(fd)
        return path

    def discard(self, path: Optional[str]) -> None:
        if path and os.path.exists(path):
            os.remove(path)

    def import_file(
        self,
        staged_path: str,
        filename: str,
        modified_at: Optional[datetime] = None,
        record_id: Optional[int] = None
    ) -> FileRecord:
        """Move a staged download into the library.

        Updates ``record_id`` in place when given, otherwise creates a new
        record. The record carries generated derivative metadata.

        Raises:
            UnsupportedFileError: If the filename has no known media type
        """
        mime_type, _ = mimetypes.guess_type(filename)
        if not mime_type:
            raise UnsupportedFileError(f"Unsupported file type: {filename}")

        existing = self.folder_tree.get_attachment(record_id) if record_id else None
        if existing and existing.file_path and os.path.isfile(existing.file_path):
            os.remove(existing.file_path)

        destination = self._unique_destination(filename)
        shutil.copyfile(staged_path, destination)
        metadata = self.generate_metadata(destination, mime_type)

        if existing:
            changes = {
                "file_path": destination,
                "mime_type": mime_type,
                "file_size": metadata["size"],
                "modified_at": modified_at or utcnow(),
                "file_metadata": metadata,
            }
            record = self.folder_tree.update_attachment(existing.id, FileRecordUpdate(**changes))
            self.logger.info("Media file updated", file_id=record.id, filename=filename)
        else:
            record = self.folder_tree.add_attachment(FileRecordCreate(
                filename=filename,
                file_path=destination,
                mime_type=mime_type,
                file_size=metadata["size"],
                modified_at=modified_at,
                file_metadata=metadata
            ))
            self.logger.info("Media file added", file_id=record.id, filename=filename)

        return record

    def generate_metadata(self, path: str, mime_type: Optional[str] = None) -> Dict[str, Any]:
        """Derivative metadata stored alongside a record."""
        digest = hashlib.sha256()
        with open(path, 'rb') as f:
            for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
                digest.update(block)

        return {
            "size": os.path.getsize(path),
            "sha256": digest.hexdigest(),
            "mime_type": mime_type or mimetypes.guess_type(path)[0],
            "extension": os.path.splitext(path)[1].lstrip(".").lower(),
        }

    def _unique_destination(self, filename: str) -> str:
        """``name.ext``, or ``name-1.ext``, ``name-2.ext``... if taken."""
        stem, ext = os.path.splitext(os.path.basename(filename))
        candidate = os.path.join(self.media_root, f"{stem}{ext}")
        counter = 1
        while os.path.exists(candidate):
            candidate = os.path.join(self.media_root, f"{stem}-{counter}{ext}")
            counter += 1
        return candidate
