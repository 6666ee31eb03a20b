"""Database operations and repository classes."""

from datetime import datetime
from typing import List, Optional, Iterable, Any

from sqlalchemy.orm import Session
from sqlalchemy import and_, or_, desc, func, select

from .models import (
    FolderModel, FileRecordModel, FolderFieldMappingModel, GalleryFieldModel,
    ActivityLogModel, SyncStateModel,
    FileRecordCreate, FileRecordUpdate,
    SyncStatus, utcnow
)
from ..utils.logging import get_logger, log_execution_time


logger = get_logger("database.operations")


SYNC_STATE_ROW_ID = 1


class FolderNotFoundError(LookupError):
    """Raised when a folder id does not exist."""
    pass


class RecordNotFoundError(LookupError):
    """Raised when a file record id does not exist."""
    pass


class InvalidFolderError(ValueError):
    """Raised when a folder name or parent is not acceptable."""
    pass


class DuplicateMappingError(ValueError):
    """Raised when a folder to field mapping already exists."""
    pass


class FolderRepository:
    """Repository for folder operations."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, name: str, parent_id: int = 0) -> FolderModel:
        """Create a folder appended after its siblings."""
        folder = FolderModel(name=name, parent_id=parent_id, ord=self.next_ord(parent_id))
        self.session.add(folder)
        self.session.flush()

        logger.info("Folder created", folder_id=folder.id, name=name, parent_id=parent_id)
        return folder

    def get_by_id(self, folder_id: int) -> Optional[FolderModel]:
        return self.session.query(FolderModel).filter(FolderModel.id == folder_id).first()

    def get_all(self) -> List[FolderModel]:
        return self.session.query(FolderModel).order_by(FolderModel.parent_id, FolderModel.ord, FolderModel.id).all()

    def get_by_parent(self, parent_id: int) -> List[FolderModel]:
        return self.session.query(FolderModel).filter(
            FolderModel.parent_id == parent_id
        ).order_by(FolderModel.ord, FolderModel.id).all()

    def get_by_name(self, name: str, parent_id: int = 0) -> Optional[FolderModel]:
        """Case-insensitive, like remote paths."""
        return self.session.query(FolderModel).filter(
            and_(func.lower(FolderModel.name) == name.lower(), FolderModel.parent_id == parent_id)
        ).order_by(FolderModel.id).first()

    def next_ord(self, parent_id: int) -> int:
        current = self.session.query(func.max(FolderModel.ord)).filter(
            FolderModel.parent_id == parent_id
        ).scalar()
        return 0 if current is None else current + 1

    def delete(self, folder: FolderModel) -> None:
        self.session.delete(folder)
        logger.info("Folder deleted", folder_id=folder.id)


class FileRecordRepository:
    """Repository for file record operations."""

    def __init__(self, session: Session):
        self.session = session

    @log_execution_time
    def create(self, record_data: FileRecordCreate) -> FileRecordModel:
        """Create a new file record."""
        record = FileRecordModel(
            filename=record_data.filename,
            file_path=record_data.file_path,
            mime_type=record_data.mime_type,
            file_size=record_data.file_size,
            modified_at=record_data.modified_at or utcnow(),
            folder_id=record_data.folder_id or None,
            ord=self.next_ord(record_data.folder_id) if record_data.folder_id else 0,
            file_metadata=record_data.file_metadata
        )

        self.session.add(record)
        self.session.flush()

        logger.info("File record created", file_id=record.id, filename=record.filename)
        return record

    def get_by_id(self, file_id: int) -> Optional[FileRecordModel]:
        return self.session.query(FileRecordModel).filter(FileRecordModel.id == file_id).first()

    def get_by_filename(self, filename: str) -> Optional[FileRecordModel]:
        """First record with this filename ignoring case, oldest first."""
        return self.session.query(FileRecordModel).filter(
            func.lower(FileRecordModel.filename) == filename.lower()
        ).order_by(FileRecordModel.id).first()

    def get_by_folder(self, folder_id: int) -> List[FileRecordModel]:
        return self.session.query(FileRecordModel).filter(
            FileRecordModel.folder_id == folder_id
        ).order_by(FileRecordModel.ord, FileRecordModel.id).all()

    def existing_ids(self, file_ids: Iterable[int]) -> set:
        file_ids = list(file_ids)
        if not file_ids:
            return set()
        rows = self.session.query(FileRecordModel.id).filter(FileRecordModel.id.in_(file_ids)).all()
        return {row[0] for row in rows}

    def next_ord(self, folder_id: int) -> int:
        current = self.session.query(func.max(FileRecordModel.ord)).filter(
            FileRecordModel.folder_id == folder_id
        ).scalar()
        return 0 if current is None else current + 1

    @log_execution_time
    def update(self, record: FileRecordModel, update_data: FileRecordUpdate) -> FileRecordModel:
        update_dict = update_data.model_dump(exclude_unset=True)
        for field, value in update_dict.items():
            setattr(record, field, value)

        logger.info("File record updated", file_id=record.id, updated_fields=list(update_dict.keys()))
        return record

    def set_folder(self, record: FileRecordModel, folder_id: Optional[int]) -> FileRecordModel:
        """File a record under ``folder_id``; None or 0 leaves it unfiled."""
        folder_id = folder_id or None
        if record.folder_id != folder_id:
            record.ord = self.next_ord(folder_id) if folder_id else 0
            record.folder_id = folder_id
        return record

    def release_folder(self, folder_id: int) -> int:
        """Unfile every member of a folder."""
        return self.session.query(FileRecordModel).filter(
            FileRecordModel.folder_id == folder_id
        ).update({FileRecordModel.folder_id: None, FileRecordModel.ord: 0}, synchronize_session=False)

    def delete(self, record: FileRecordModel) -> None:
        self.session.delete(record)
        logger.info("File record deleted", file_id=record.id)


class MappingRepository:
    """Repository for folder to gallery field mappings."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, folder_id: int, field_key: str, target_id: int) -> Optional[FolderFieldMappingModel]:
        return self.session.query(FolderFieldMappingModel).filter(
            and_(
                FolderFieldMappingModel.folder_id == folder_id,
                FolderFieldMappingModel.field_key == field_key,
                FolderFieldMappingModel.target_id == target_id
            )
        ).first()

    def create(self, folder_id: int, field_key: str, target_id: int) -> FolderFieldMappingModel:
        if self.get(folder_id, field_key, target_id):
            raise DuplicateMappingError(
                f"Mapping already exists: folder {folder_id} -> {field_key} on {target_id}"
            )

        mapping = FolderFieldMappingModel(folder_id=folder_id, field_key=field_key, target_id=target_id)
        self.session.add(mapping)
        self.session.flush()

        logger.info("Mapping created", mapping_id=mapping.id, folder_id=folder_id, field_key=field_key, target_id=target_id)
        return mapping

    def get_all(self) -> List[FolderFieldMappingModel]:
        return self.session.query(FolderFieldMappingModel).order_by(FolderFieldMappingModel.id).all()

    def delete(self, folder_id: int, field_key: str, target_id: int) -> bool:
        mapping = self.get(folder_id, field_key, target_id)
        if not mapping:
            return False
        self.session.delete(mapping)
        logger.info("Mapping deleted", folder_id=folder_id, field_key=field_key, target_id=target_id)
        return True


class GalleryFieldRepository:
    """Repository for gallery field values."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, target_id: int, field_key: str) -> Optional[GalleryFieldModel]:
        return self.session.query(GalleryFieldModel).filter(
            and_(GalleryFieldModel.target_id == target_id, GalleryFieldModel.field_key == field_key)
        ).first()

    def set(self, target_id: int, field_key: str, file_ids: List[int]) -> GalleryFieldModel:
        field = self.get(target_id, field_key)
        if field is None:
            field = GalleryFieldModel(target_id=target_id, field_key=field_key, file_ids=list(file_ids))
            self.session.add(field)
        else:
            field.file_ids = list(file_ids)
        self.session.flush()
        return field


class ActivityLogRepository:
    """Repository for activity log entries."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, message: str, level: str) -> ActivityLogModel:
        entry = ActivityLogModel(message=message, level=level)
        self.session.add(entry)
        self.session.flush()
        return entry

    def get_recent(self, limit: int = 100) -> List[ActivityLogModel]:
        return self.session.query(ActivityLogModel).order_by(
            desc(ActivityLogModel.created_at), desc(ActivityLogModel.id)
        ).limit(limit).all()

    def get_by_level(self, level: str, limit: int = 100) -> List[ActivityLogModel]:
        return self.session.query(ActivityLogModel).filter(
            ActivityLogModel.level == level
        ).order_by(desc(ActivityLogModel.created_at), desc(ActivityLogModel.id)).limit(limit).all()

    def count(self) -> int:
        return self.session.query(func.count(ActivityLogModel.id)).scalar() or 0

    def trim(self, max_entries: int) -> int:
        """Delete the oldest entries beyond ``max_entries``."""
        keep_ids = self.session.query(ActivityLogModel.id).order_by(
            desc(ActivityLogModel.created_at), desc(ActivityLogModel.id)
        ).limit(max_entries).subquery()

        deleted = self.session.query(ActivityLogModel).filter(
            ActivityLogModel.id.notin_(select(keep_ids.c.id))
        ).delete(synchronize_session=False)
        return deleted

    def clear(self) -> int:
        return self.session.query(ActivityLogModel).delete(synchronize_session=False)


class SyncStateRepository:
    """Repository for the single run-state row."""

    def __init__(self, session: Session):
        self.session = session

    def get_or_create(self) -> SyncStateModel:
        state = self.session.query(SyncStateModel).filter(SyncStateModel.id == SYNC_STATE_ROW_ID).first()
        if state is None:
            state = SyncStateModel(id=SYNC_STATE_ROW_ID, status=SyncStatus.NONE.value, is_running=False)
            self.session.add(state)
            self.session.flush()
        return state

    def try_acquire(self, direction: str, now: datetime, stale_before: datetime) -> bool:
        """Compare-and-swap the guard from free (or silent since ``stale_before``) to held."""
        self.get_or_create()

        acquired = self.session.query(SyncStateModel).filter(
            and_(
                SyncStateModel.id == SYNC_STATE_ROW_ID,
                or_(
                    SyncStateModel.is_running.is_(False),
                    SyncStateModel.heartbeat_at.is_(None),
                    SyncStateModel.heartbeat_at < stale_before
                )
            )
        ).update({
            SyncStateModel.is_running: True,
            SyncStateModel.status: SyncStatus.IN_PROGRESS.value,
            SyncStateModel.last_direction: direction,
            SyncStateModel.last_error: None,
            SyncStateModel.started_at: now,
            SyncStateModel.heartbeat_at: now,
        }, synchronize_session=False)

        return acquired == 1

    def heartbeat(self, now: datetime) -> bool:
        updated = self.session.query(SyncStateModel).filter(
            and_(SyncStateModel.id == SYNC_STATE_ROW_ID, SyncStateModel.is_running.is_(True))
        ).update({SyncStateModel.heartbeat_at: now}, synchronize_session=False)
        return updated == 1

    def release(self) -> None:
        self.session.query(SyncStateModel).filter(
            SyncStateModel.id == SYNC_STATE_ROW_ID
        ).update({SyncStateModel.is_running: False}, synchronize_session=False)

    def update(self, **fields: Any) -> SyncStateModel:
        state = self.get_or_create()
        for field, value in fields.items():
            setattr(state, field, value)
        self.session.flush()
        return state
