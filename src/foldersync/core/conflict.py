"""Conflict policy decisions for both transfer directions."""

import posixpath
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from ..api_clients.base import RemoteEntry
from ..config.schema import ConflictPolicy
from ..database.models import FileRecord, utcnow


KEEP_BOTH_MARKER = "remote"
KEEP_BOTH_TIME_FORMAT = "%Y%m%d-%H%M%S"


class DownloadAction(str, Enum):
    """What pass 2 does with one remote file."""
    DOWNLOAD = "download"      # Fetch, creating or updating the local record
    KEEP_LOCAL = "keep_local"  # Skip the fetch, only make sure the record is filed
    KEEP_BOTH = "keep_both"    # Fetch under a new name as a new record


@dataclass
class DownloadDecision:
    action: DownloadAction
    filename: str
    existing_record_id: Optional[int] = None

    @property
    def downloads(self) -> bool:
        return self.action != DownloadAction.KEEP_LOCAL


def should_upload(policy: ConflictPolicy, local_modified: datetime, remote: Optional[RemoteEntry]) -> bool:
    """Pass 1: decide whether a local file overwrites the remote entry."""
    if remote is None:
        return True
    if policy == ConflictPolicy.REMOTE_WINS:
        return False
    if policy == ConflictPolicy.LOCAL_WINS:
        return True

    # newer-wins, and keep-both which only differs on download
    if remote.server_modified is None:
        return True
    return local_modified > remote.server_modified


def decide_download(
    policy: ConflictPolicy,
    filename: str,
    remote_modified: Optional[datetime],
    local: Optional[FileRecord]
) -> DownloadDecision:
    """Pass 2: decide how a remote file lands locally.

    ``local`` is the record found by filename lookup, if any.
    """
    if local is None:
        return DownloadDecision(DownloadAction.DOWNLOAD, filename)

    if policy == ConflictPolicy.LOCAL_WINS:
        return DownloadDecision(DownloadAction.KEEP_LOCAL, filename, local.id)

    if policy == ConflictPolicy.NEWER_WINS:
        if remote_modified is None or local.modified_at >= remote_modified:
            return DownloadDecision(DownloadAction.KEEP_LOCAL, filename, local.id)
        return DownloadDecision(DownloadAction.DOWNLOAD, filename, local.id)

    if policy == ConflictPolicy.KEEP_BOTH:
        return DownloadDecision(DownloadAction.KEEP_BOTH, keep_both_filename(filename, remote_modified))

    return DownloadDecision(DownloadAction.DOWNLOAD, filename, local.id)


def keep_both_filename(filename: str, remote_modified: Optional[datetime]) -> str:
    """``photo.jpg`` becomes ``photo-remote-20240131-120000.jpg``."""
    stem, ext = posixpath.splitext(filename)
    stamp = (remote_modified or utcnow()).strftime(KEEP_BOTH_TIME_FORMAT)
    return f"{stem}-{KEEP_BOTH_MARKER}-{stamp}{ext}"
