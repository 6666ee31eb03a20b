"""Database models for the folder sync connector."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, DateTime, JSON, Boolean, Text, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from pydantic import BaseModel


Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncStatus(str, Enum):
    """Status of the most recent or in-flight sync run."""
    NONE = "none"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class LogLevel(str, Enum):
    """Activity log levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# SQLAlchemy Models (Database Tables)

class FolderModel(Base):
    """A node in the local folder tree. ``parent_id`` 0 means a top-level folder."""

    __tablename__ = "folders"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    parent_id = Column(Integer, default=0, nullable=False, index=True)
    ord = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    files = relationship("FileRecordModel", back_populates="folder")

    def __repr__(self):
        return f"<FolderModel(id={self.id}, name='{self.name}', parent_id={self.parent_id})>"


class FileRecordModel(Base):
    """A synchronizable file held in the media library."""

    __tablename__ = "file_records"

    id = Column(Integer, primary_key=True, index=True)
    filename = Column(String(500), nullable=False, index=True)
    file_path = Column(Text, nullable=True)  # Absolute path of the stored content
    mime_type = Column(String(100), nullable=True)
    file_size = Column(Integer, nullable=True)
    modified_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    folder_id = Column(Integer, ForeignKey("folders.id", ondelete="SET NULL"), nullable=True, index=True)
    ord = Column(Integer, default=0, nullable=False)

    # Derivative metadata generated on import (size, hash, dimensions...)
    file_metadata = Column(JSON, nullable=True)

    folder = relationship("FolderModel", back_populates="files")

    def __repr__(self):
        return f"<FileRecordModel(id={self.id}, filename='{self.filename}', folder_id={self.folder_id})>"


class FolderFieldMappingModel(Base):
    """Operator-defined link from a folder to a gallery field on a content record."""

    __tablename__ = "folder_field_mappings"
    __table_args__ = (
        UniqueConstraint("folder_id", "field_key", "target_id", name="uq_folder_field_target"),
    )

    id = Column(Integer, primary_key=True, index=True)
    folder_id = Column(Integer, nullable=False, index=True)
    field_key = Column(String(255), nullable=False)
    target_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return (
            f"<FolderFieldMappingModel(folder_id={self.folder_id}, "
            f"field_key='{self.field_key}', target_id={self.target_id})>"
        )


class GalleryFieldModel(Base):
    """Value of a gallery field: ordered file record ids on a content record."""

    __tablename__ = "gallery_fields"
    __table_args__ = (
        UniqueConstraint("target_id", "field_key", name="uq_gallery_target_field"),
    )

    id = Column(Integer, primary_key=True, index=True)
    target_id = Column(Integer, nullable=False, index=True)
    field_key = Column(String(255), nullable=False)
    file_ids = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ActivityLogModel(Base):
    """One entry of the bounded activity log."""

    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    level = Column(String(20), nullable=False, index=True)
    message = Column(Text, nullable=False)


class SyncStateModel(Base):
    """Single-row run state; ``is_running`` is the cross-invocation guard."""

    __tablename__ = "sync_state"

    id = Column(Integer, primary_key=True)
    status = Column(String(20), default=SyncStatus.NONE.value, nullable=False)
    last_direction = Column(String(20), nullable=True)
    last_error = Column(Text, nullable=True)
    is_running = Column(Boolean, default=False, nullable=False)
    scheduled_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


# Pydantic Models (Transfer Objects)

class Folder(BaseModel):
    """Folder as seen by the sync engine."""
    id: int
    name: str
    parent_id: int = 0
    ord: int = 0

    class Config:
        from_attributes = True


class FileRecord(BaseModel):
    """File record as seen by the sync engine."""
    id: int
    filename: str
    file_path: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None
    modified_at: datetime
    folder_id: Optional[int] = None
    file_metadata: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class FileRecordCreate(BaseModel):
    """Pydantic model for creating a file record."""
    filename: str
    file_path: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None
    modified_at: Optional[datetime] = None
    folder_id: Optional[int] = None
    file_metadata: Optional[Dict[str, Any]] = None


class FileRecordUpdate(BaseModel):
    """Pydantic model for updating a file record."""
    filename: Optional[str] = None
    file_path: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None
    modified_at: Optional[datetime] = None
    file_metadata: Optional[Dict[str, Any]] = None


class FolderFieldMapping(BaseModel):
    """Folder to gallery field mapping."""
    id: int
    folder_id: int
    field_key: str
    target_id: int
    created_at: datetime

    class Config:
        from_attributes = True


class ActivityLogEntry(BaseModel):
    """Activity log entry."""
    id: int
    created_at: datetime
    level: str
    message: str

    class Config:
        from_attributes = True


class SyncRunState(BaseModel):
    """Queryable run status."""
    status: SyncStatus = SyncStatus.NONE
    last_direction: Optional[str] = None
    last_error: Optional[str] = None
    is_running: bool = False
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True

