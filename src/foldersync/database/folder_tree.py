"""Folder tree service: CRUD over folders and folder membership of file records."""

from abc import ABC, abstractmethod
from typing import List, Optional

from .database import DatabaseManager
from .models import Folder, FileRecord, FileRecordCreate, FileRecordUpdate
from .operations import (
    FolderRepository, FileRecordRepository,
    FolderNotFoundError, RecordNotFoundError, InvalidFolderError
)
from ..utils.logging import get_logger


# Change kinds passed to observers
FOLDER_CREATED = "created"
FOLDER_RENAMED = "renamed"
FOLDER_DELETED = "deleted"
FILE_ADDED = "added"
FILE_UPDATED = "updated"
FILE_DELETED = "deleted"
FILE_MOVED = "moved"


class FolderTreeObserver(ABC):
    """Receives notifications after the folder tree changes."""

    @abstractmethod
    def on_folder_changed(self, folder_id: int, change: str) -> None:
        pass

    @abstractmethod
    def on_file_changed(self, file_id: int, change: str) -> None:
        pass


class FolderTreeService:
    """Data-access facade over the local folder tree.

    Mutations notify registered observers once the change is committed.
    Observer failures are logged and never undo the change.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self.logger = get_logger(self.__class__.__name__)
        self._observers: List[FolderTreeObserver] = []

    def add_observer(self, observer: FolderTreeObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: FolderTreeObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _notify_folder(self, folder_id: int, change: str) -> None:
        for observer in list(self._observers):
            try:
                observer.on_folder_changed(folder_id, change)
            except Exception as e:
                self.logger.error("Folder observer failed", folder_id=folder_id, change=change, error=str(e))

    def _notify_file(self, file_id: int, change: str) -> None:
        for observer in list(self._observers):
            try:
                observer.on_file_changed(file_id, change)
            except Exception as e:
                self.logger.error("File observer failed", file_id=file_id, change=change, error=str(e))

    # Folders

    def all_folders(self) -> List[Folder]:
        with self.db_manager.session_scope() as session:
            return [Folder.model_validate(f) for f in FolderRepository(session).get_all()]

    def folders_by_parent(self, parent_id: int) -> List[Folder]:
        with self.db_manager.session_scope() as session:
            return [Folder.model_validate(f) for f in FolderRepository(session).get_by_parent(parent_id)]

    def get_folder(self, folder_id: int) -> Optional[Folder]:
        with self.db_manager.session_scope() as session:
            folder = FolderRepository(session).get_by_id(folder_id)
            return Folder.model_validate(folder) if folder else None

    def get_folder_by_name(self, name: str, parent_id: int = 0) -> Optional[Folder]:
        with self.db_manager.session_scope() as session:
            folder = FolderRepository(session).get_by_name(name, parent_id)
            return Folder.model_validate(folder) if folder else None

    def create_folder(self, name: str, parent_id: int = 0) -> Folder:
        """Create a folder under ``parent_id`` (0 for top level).

        Raises:
            InvalidFolderError: If the name is empty or contains a path separator
            FolderNotFoundError: If the parent does not exist
        """
        name = _clean_name(name)

        with self.db_manager.session_scope() as session:
            repo = FolderRepository(session)
            if parent_id and not repo.get_by_id(parent_id):
                raise FolderNotFoundError(f"Parent folder not found: {parent_id}")
            folder = Folder.model_validate(repo.create(name, parent_id or 0))

        self._notify_folder(folder.id, FOLDER_CREATED)
        return folder

    def rename_folder(self, folder_id: int, name: str) -> Folder:
        name = _clean_name(name)

        with self.db_manager.session_scope() as session:
            folder = FolderRepository(session).get_by_id(folder_id)
            if not folder:
                raise FolderNotFoundError(f"Folder not found: {folder_id}")
            folder.name = name
            session.flush()
            result = Folder.model_validate(folder)

        self.logger.info("Folder renamed", folder_id=folder_id, name=name)
        self._notify_folder(folder_id, FOLDER_RENAMED)
        return result

    def delete_folder(self, folder_id: int) -> None:
        """Delete a folder; its members become unfiled and its children move up a level."""
        with self.db_manager.session_scope() as session:
            repo = FolderRepository(session)
            folder = repo.get_by_id(folder_id)
            if not folder:
                raise FolderNotFoundError(f"Folder not found: {folder_id}")

            for child in repo.get_by_parent(folder_id):
                child.parent_id = folder.parent_id
            FileRecordRepository(session).release_folder(folder_id)
            repo.delete(folder)

        self._notify_folder(folder_id, FOLDER_DELETED)

    # Membership

    def attachments_in_folder(self, folder_id: int) -> List[FileRecord]:
        """Member records of a folder in display order."""
        with self.db_manager.session_scope() as session:
            return [FileRecord.model_validate(r) for r in FileRecordRepository(session).get_by_folder(folder_id)]

    def folder_for_attachment(self, file_id: int) -> Optional[int]:
        """Folder id holding a record, or None when unfiled or unknown."""
        with self.db_manager.session_scope() as session:
            record = FileRecordRepository(session).get_by_id(file_id)
            return record.folder_id if record else None

    def move_attachment_to_folder(self, file_id: int, folder_id: int) -> None:
        """File a record under ``folder_id``; 0 unfiles it.

        Raises:
            RecordNotFoundError: If the record does not exist
            FolderNotFoundError: If the folder does not exist
        """
        with self.db_manager.session_scope() as session:
            records = FileRecordRepository(session)
            record = records.get_by_id(file_id)
            if not record:
                raise RecordNotFoundError(f"File record not found: {file_id}")
            if folder_id and not FolderRepository(session).get_by_id(folder_id):
                raise FolderNotFoundError(f"Folder not found: {folder_id}")

            moved = record.folder_id != (folder_id or None)
            records.set_folder(record, folder_id)

        if moved:
            self.logger.debug("Attachment moved", file_id=file_id, folder_id=folder_id)
            self._notify_file(file_id, FILE_MOVED)

    def attachment_by_filename(self, filename: str) -> Optional[FileRecord]:
        with self.db_manager.session_scope() as session:
            record = FileRecordRepository(session).get_by_filename(filename)
            return FileRecord.model_validate(record) if record else None

    # Records

    def get_attachment(self, file_id: int) -> Optional[FileRecord]:
        with self.db_manager.session_scope() as session:
            record = FileRecordRepository(session).get_by_id(file_id)
            return FileRecord.model_validate(record) if record else None

    def add_attachment(self, record_data: FileRecordCreate) -> FileRecord:
        with self.db_manager.session_scope() as session:
            if record_data.folder_id and not FolderRepository(session).get_by_id(record_data.folder_id):
                raise FolderNotFoundError(f"Folder not found: {record_data.folder_id}")
            record = FileRecord.model_validate(FileRecordRepository(session).create(record_data))

        self._notify_file(record.id, FILE_ADDED)
        return record

    def update_attachment(self, file_id: int, update_data: FileRecordUpdate) -> FileRecord:
        with self.db_manager.session_scope() as session:
            records = FileRecordRepository(session)
            record = records.get_by_id(file_id)
            if not record:
                raise RecordNotFoundError(f"File record not found: {file_id}")
            result = FileRecord.model_validate(records.update(record, update_data))

        self._notify_file(file_id, FILE_UPDATED)
        return result

    def delete_attachment(self, file_id: int) -> None:
        with self.db_manager.session_scope() as session:
            records = FileRecordRepository(session)
            record = records.get_by_id(file_id)
            if not record:
                raise RecordNotFoundError(f"File record not found: {file_id}")
            records.delete(record)

        self._notify_file(file_id, FILE_DELETED)


def _clean_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise InvalidFolderError("Folder name cannot be empty")
    if "/" in name:
        raise InvalidFolderError(f"Folder name cannot contain '/': {name}")
    return name
