"""Mapping between local folders and remote paths."""

import posixpath
from typing import Dict, Iterable, List, Optional

from ..database.models import Folder
from ..utils.logging import get_logger


# Ancestor walks stop after this many levels
MAX_FOLDER_DEPTH = 64

logger = get_logger("core.path_mapping")


def join_remote_path(*parts: str) -> str:
    """Join remote path segments into a single absolute path."""
    cleaned = [part.strip("/") for part in parts if part and part.strip("/")]
    return "/" + "/".join(cleaned)


def remote_parent(path: str) -> str:
    return posixpath.dirname(path.rstrip("/")) or "/"


class PathMapper:
    """Computes a folder's remote path from its ancestor chain.

    The chain is read from a snapshot of the folder tree taken at
    construction time. A chain that is broken (missing parent) or cyclic
    is cut where the problem is found, so the walk always terminates.
    """

    def __init__(self, root_path: str, folders: Iterable[Folder]):
        self.root_path = join_remote_path(root_path)
        self.folders: Dict[int, Folder] = {folder.id: folder for folder in folders}

    def ancestor_names(self, folder_id: int) -> List[str]:
        """Folder names from the top-level ancestor down to ``folder_id``."""
        names: List[str] = []
        seen = set()
        current: Optional[Folder] = self.folders.get(folder_id)

        while current is not None:
            if current.id in seen or len(names) >= MAX_FOLDER_DEPTH:
                logger.warning(
                    "Folder ancestor chain truncated",
                    folder_id=folder_id,
                    at_folder=current.id,
                    depth=len(names)
                )
                break
            seen.add(current.id)
            names.append(current.name)

            if not current.parent_id:
                break
            parent = self.folders.get(current.parent_id)
            if parent is None:
                logger.warning(
                    "Folder parent missing from tree",
                    folder_id=folder_id,
                    missing_parent=current.parent_id
                )
            current = parent

        names.reverse()
        return names

    def remote_path(self, folder_id: int) -> str:
        return join_remote_path(self.root_path, *self.ancestor_names(folder_id))

    def remote_file_path(self, folder_id: int, filename: str) -> str:
        return join_remote_path(self.remote_path(folder_id), filename)
