"""Field target service: gallery field values and folder to field mappings."""

from typing import List

from .database import DatabaseManager
from .models import FolderFieldMapping
from .operations import FileRecordRepository, GalleryFieldRepository, MappingRepository
from ..utils.logging import get_logger


class FieldTargetService:
    """Reads and writes gallery fields and the mappings that feed them."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self.logger = get_logger(self.__class__.__name__)

    def get_gallery_field(self, target_id: int, field_key: str) -> List[int]:
        with self.db_manager.session_scope() as session:
            field = GalleryFieldRepository(session).get(target_id, field_key)
            return list(field.file_ids) if field else []

    def set_gallery_field(self, target_id: int, field_key: str, file_ids: List[int]) -> List[int]:
        """Replace a gallery field's value, keeping order.

        Ids that do not refer to an existing file record are dropped.

        Returns:
            The stored id list
        """
        with self.db_manager.session_scope() as session:
            existing = FileRecordRepository(session).existing_ids(file_ids)
            stored = [file_id for file_id in file_ids if file_id in existing]

            dropped = [file_id for file_id in file_ids if file_id not in existing]
            if dropped:
                self.logger.warning(
                    "Dropped unknown file ids from gallery field",
                    target_id=target_id,
                    field_key=field_key,
                    dropped=dropped
                )

            GalleryFieldRepository(session).set(target_id, field_key, stored)

        self.logger.debug("Gallery field set", target_id=target_id, field_key=field_key, count=len(stored))
        return stored

    # Mappings

    def add_mapping(self, folder_id: int, field_key: str, target_id: int) -> FolderFieldMapping:
        """Persist a mapping; raises DuplicateMappingError if the triple exists."""
        with self.db_manager.session_scope() as session:
            mapping = MappingRepository(session).create(folder_id, field_key, target_id)
            return FolderFieldMapping.model_validate(mapping)

    def remove_mapping(self, folder_id: int, field_key: str, target_id: int) -> bool:
        with self.db_manager.session_scope() as session:
            return MappingRepository(session).delete(folder_id, field_key, target_id)

    def list_mappings(self) -> List[FolderFieldMapping]:
        with self.db_manager.session_scope() as session:
            return [FolderFieldMapping.model_validate(m) for m in MappingRepository(session).get_all()]
