"""Core sync logic package."""

from .sync_engine import (
    SyncEngine,
    SyncReport,
    PassResult,
    SyncEngineError,
    PassFailedError,
    CONNECTIVITY_ERROR
)
from .conflict import DownloadAction, DownloadDecision, decide_download, should_upload, keep_both_filename
from .path_mapping import PathMapper, MAX_FOLDER_DEPTH, join_remote_path
from .run_state import RunStateStore
from .media_library import MediaLibrary, UnsupportedFileError

__all__ = [
    "SyncEngine",
    "SyncReport",
    "PassResult",
    "SyncEngineError",
    "PassFailedError",
    "CONNECTIVITY_ERROR",
    "DownloadAction",
    "DownloadDecision",
    "decide_download",
    "should_upload",
    "keep_both_filename",
    "PathMapper",
    "MAX_FOLDER_DEPTH",
    "join_remote_path",
    "RunStateStore",
    "MediaLibrary",
    "UnsupportedFileError"
]
