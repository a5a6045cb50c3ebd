"""Media library folder helpers.

The folder store is duck-typed; :class:`uploadpath.metadata.MetadataStore` is
the implementation shipped here. The methods used are ``find_folder``,
``find_folder_by_path``, ``find_folder_by_name``, ``create_folder``,
``count_child_folders``, ``count_files_in_folder``, ``find_file_by_hash`` and
``delete_folder``.
"""

import logging
from typing import Any, Mapping, Optional

from .errors import InvalidDirectoryHint
from .paths import sanitize_folder_path

logger = logging.getLogger("uploadpath.folders")


def _folder_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, Mapping) and isinstance(value.get("id"), int):
        return value["id"]
    return None


def ensure_folder_from_path(
    store, folder_path: str, user: Optional[Mapping[str, Any]] = None
) -> int:
    """Find or create every folder along *folder_path* and return the leaf id."""

    names = [name for name in sanitize_folder_path(folder_path).split("/") if name]
    if not names:
        raise InvalidDirectoryHint("Invalid folder path", context={"path": folder_path})

    parent: Optional[int] = None
    for name in names:
        existing = store.find_folder_by_name(name, parent)
        if existing and existing.get("id"):
            parent = existing["id"]
            continue
        created = store.create_folder(name, parent, user=user)
        parent = created["id"]
    return parent


class FolderCleaner:
    """Deletes media library folders left empty after a file is removed.

    The file's own record may still exist (or already be gone) when this runs,
    so sibling counts always exclude the hash being deleted. Any failure ends
    the walk quietly; cleanup never changes the outcome of the delete.
    """

    def __init__(self, store) -> None:
        self.store = store

    def resolve_start_folder(self, file) -> Optional[int]:
        folder_id = _folder_id(getattr(file, "folder", None))
        if folder_id:
            return folder_id

        folder_path = getattr(file, "folder_path", None)
        if isinstance(folder_path, str) and folder_path.strip():
            try:
                folder = self.store.find_folder_by_path(folder_path.strip())
            except Exception as error:
                logger.debug("folder_lookup_failed path=%s error=%s", folder_path, error)
                folder = None
            folder_id = _folder_id(folder)
            if folder_id:
                return folder_id

        try:
            record = self.store.find_file_by_hash(file.hash)
            if not record:
                return None
            folder_id = _folder_id(record.get("folder_id"))
            if not folder_id and record.get("folder_path"):
                folder_id = _folder_id(self.store.find_folder_by_path(record["folder_path"]))
        except Exception as error:
            logger.debug("folder_lookup_failed hash=%s error=%s", file.hash, error)
            return None
        return folder_id

    def cleanup(self, file) -> int:
        """Walk upward from the file's folder deleting empty folders.

        Returns the number of folders removed.
        """

        folder_id = self.resolve_start_folder(file)
        removed = 0
        while folder_id:
            try:
                folder = self.store.find_folder(folder_id)
                if not folder:
                    break
                if self.store.count_child_folders(folder_id) > 0:
                    break
                if self.store.count_files_in_folder(folder.get("path"), file.hash) > 0:
                    break
                self.store.delete_folder(folder_id)
            except Exception as error:
                logger.debug("folder_cleanup_stopped folder_id=%s error=%s", folder_id, error)
                break
            removed += 1
            logger.debug("folder_cleanup_removed folder_id=%s", folder_id)
            folder_id = _folder_id(folder.get("parent"))
        return removed
