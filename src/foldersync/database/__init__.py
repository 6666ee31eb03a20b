"""Database package for the folder sync connector."""

from .database import (
    DatabaseManager,
    DatabaseError,
    init_database,
    close_database
)

from .models import (
    FolderModel,
    FileRecordModel,
    FolderFieldMappingModel,
    GalleryFieldModel,
    ActivityLogModel,
    SyncStateModel,
    Folder,
    FileRecord,
    FileRecordCreate,
    FileRecordUpdate,
    FolderFieldMapping,
    ActivityLogEntry,
    SyncRunState,
    SyncStatus,
    LogLevel
)

from .operations import (
    FolderRepository,
    FileRecordRepository,
    MappingRepository,
    GalleryFieldRepository,
    ActivityLogRepository,
    SyncStateRepository,
    FolderNotFoundError,
    RecordNotFoundError,
    InvalidFolderError,
    DuplicateMappingError
)

from .folder_tree import FolderTreeService, FolderTreeObserver
from .field_targets import FieldTargetService
from .activity_log import ActivityLog

__all__ = [
    # Database management
    "DatabaseManager",
    "DatabaseError",
    "init_database",
    "close_database",

    # Models
    "FolderModel",
    "FileRecordModel",
    "FolderFieldMappingModel",
    "GalleryFieldModel",
    "ActivityLogModel",
    "SyncStateModel",
    "Folder",
    "FileRecord",
    "FileRecordCreate",
    "FileRecordUpdate",
    "FolderFieldMapping",
    "ActivityLogEntry",
    "SyncRunState",
    "SyncStatus",
    "LogLevel",

    # Repositories
    "FolderRepository",
    "FileRecordRepository",
    "MappingRepository",
    "GalleryFieldRepository",
    "ActivityLogRepository",
    "SyncStateRepository",

    # Errors
    "FolderNotFoundError",
    "RecordNotFoundError",
    "InvalidFolderError",
    "DuplicateMappingError",

    # Services
    "FolderTreeService",
    "FolderTreeObserver",
    "FieldTargetService",
    "ActivityLog"
]
