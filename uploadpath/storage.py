import contextlib
import logging
import os
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, Mapping, Optional, Tuple

from .candidates import (
    extension_candidates,
    extract_object_path_from_url,
    filename_pattern,
    object_path_candidates,
    scan_directories,
)
from .errors import InvalidDirectoryHint, PayloadTooLarge
from .folders import FolderCleaner
from .paths import (
    join_object_path,
    normalize_prefix,
    normalize_relative_slash_path,
    prune_empty_dirs,
    require_under_root,
    resolve_entry_under_root,
    sanitize_path_dir,
)
from .signing import build_signed_url

logger = logging.getLogger("uploadpath.storage")

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
NOT_FOUND_MESSAGE = "File doesn't exist"

RECORD_FIELDS = (
    "name",
    "hash",
    "ext",
    "mime",
    "size",
    "url",
    "preview_url",
    "path",
    "folder_path",
    "formats",
)


def human_filesize(num: float) -> str:
    if num < 1024:
        return f"{int(num)} B"
    for unit in ["KB", "MB", "GB", "TB"]:
        num /= 1024.0
        if abs(num) < 1024.0:
            return f"{num:.2f} {unit}"
    return f"{num:.2f} PB"


@dataclass
class StoredFile:
    """An uploaded object as seen by the provider.

    ``path`` is the directory hint recorded at upload time; at delete time it
    may be stale or missing, as may ``ext``.
    """

    hash: str
    ext: Optional[str] = None
    mime: Optional[str] = None
    name: Optional[str] = None
    size: Optional[int] = None
    path: Optional[str] = None
    url: Optional[str] = None
    preview_url: Optional[str] = None
    folder: Optional[int] = None
    folder_path: Optional[str] = None
    formats: Optional[Dict[str, Any]] = None
    stream: Optional[BinaryIO] = field(default=None, repr=False, compare=False)
    buffer: Optional[bytes] = field(default=None, repr=False, compare=False)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "StoredFile":
        values = {key: record.get(key) for key in RECORD_FIELDS}
        values["folder"] = record.get("folder_id", record.get("folder"))
        return cls(**values)

    def to_record(self) -> Dict[str, Any]:
        record = {key: value for key, value in asdict(self).items() if key in RECORD_FIELDS}
        record["folder_id"] = self.folder
        return record


@dataclass
class DeleteResult:
    deleted: bool
    path: Optional[Path] = None
    strategy: Optional[str] = None
    message: Optional[str] = None


class LocalUploadProvider:
    """Stores uploads under ``root`` and removes them again from partial hints.

    ``config`` is a normalized mapping from :func:`uploadpath.config.normalize_config`.
    """

    def __init__(self, root: Path, config: Mapping[str, Any], folder_store=None) -> None:
        self.root = Path(root).resolve()
        self.mount = config["mount"]
        self.prefix = normalize_prefix(config.get("prefix") or "")
        self.base_url = config.get("base_url") or None
        self.strict_path_dir = bool(config.get("strict_path_dir"))
        self.cleanup_dirs = bool(config.get("cleanup_empty_dirs"))
        self.uploads_url_marker = config.get("uploads_url_marker") or f"/{self.mount}/"
        self.rename_to_uuid = bool(config.get("rename_to_uuid"))
        self.size_limit = config.get("size_limit")
        self.private_enable = bool(config.get("private_enable"))
        self.private_folder = config.get("private_folder") if self.private_enable else ""
        self.private_ttl = config.get("private_ttl", 60)
        self.private_secret = config.get("private_secret") or ""
        self.folder_cleaner = (
            FolderCleaner(folder_store)
            if folder_store is not None and config.get("cleanup_empty_folders")
            else None
        )
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise RuntimeError(
                f"The upload folder ({self.root}) doesn't exist or could not be created. "
                "Please check permissions."
            ) from error

    # Upload

    def _filename(self, file: StoredFile) -> str:
        ext = file.ext or ""
        if self.rename_to_uuid:
            return f"{uuid.uuid4()}_{file.hash}{ext}"
        return f"{file.hash}{ext}"

    def public_url(self, object_path: str) -> str:
        if self.base_url:
            return join_object_path(self.base_url, object_path)
        return f"/{self.mount}/{object_path}"

    def upload(self, file: StoredFile) -> str:
        """Write the payload of *file* and set ``file.url``."""

        raw_path = file.path or ""
        dynamic_path = sanitize_path_dir(raw_path) if raw_path else ""
        if self.strict_path_dir and raw_path and not dynamic_path:
            raise InvalidDirectoryHint(
                "Invalid file.path (sanitizes to empty)", context={"path": raw_path}
            )
        if file.stream is None and file.buffer is None:
            raise ValueError("File must have either stream or buffer")

        object_path = join_object_path(self.prefix, dynamic_path, self._filename(file))
        final_path = require_under_root(self.root, object_path)

        logger.debug(
            "upload hash=%s ext=%s dynamic_path=%s object_path=%s",
            file.hash,
            file.ext,
            dynamic_path,
            object_path,
        )
        try:
            final_path.parent.mkdir(parents=True, exist_ok=True)
            if file.stream is not None:
                with final_path.open("wb") as destination:
                    while True:
                        chunk = file.stream.read(CHUNK_SIZE_BYTES)
                        if not chunk:
                            break
                        destination.write(chunk)
            else:
                final_path.write_bytes(file.buffer)
        except OSError:
            logger.exception("upload_failed hash=%s path=%s", file.hash, final_path)
            with contextlib.suppress(OSError):
                final_path.unlink(missing_ok=True)
            raise

        file.url = self.public_url(object_path)
        logger.debug("upload_url hash=%s url=%s", file.hash, file.url)
        return file.url

    def upload_stream(self, file: StoredFile) -> str:
        return self.upload(file)

    def check_file_size(self, file: StoredFile, size_limit: Optional[int] = None) -> None:
        limit = self.size_limit or size_limit
        if limit and (file.size or 0) > limit:
            raise PayloadTooLarge(
                f"{file.name} exceeds size limit of {human_filesize(limit)}.",
                context={"size": file.size, "limit": limit},
            )

    # Private files

    def is_private(self, file: Optional[StoredFile] = None) -> bool:
        if not self.private_enable or not self.private_folder:
            return False
        if file is None:
            return True
        object_path = extract_object_path_from_url(file.url, self.uploads_url_marker, self.base_url)
        if not object_path:
            return False
        return any(object_path.startswith(lead) for lead in self.private_leads())

    def private_leads(self) -> Tuple[str, ...]:
        """Object-path prefixes that mark an object as private, longest first."""

        if not self.private_enable or not self.private_folder:
            return ()
        leads = [f"{self.prefix}{self.private_folder}/", f"{self.private_folder}/"]
        return tuple(dict.fromkeys(leads))

    def get_signed_url(self, file: StoredFile) -> str:
        raw = file.url or ""
        if not self.private_enable or not self.private_secret or not raw:
            return raw
        return build_signed_url(self.private_secret, raw, self.private_ttl)

    # Delete

    def _object_paths_from_urls(self, file: StoredFile) -> Iterable[Optional[str]]:
        return [
            extract_object_path_from_url(url, self.uploads_url_marker, self.base_url)
            for url in (file.url, file.preview_url)
        ]

    def _remove(self, absolute: Path, file: StoredFile, strategy: str) -> bool:
        try:
            absolute.unlink()
        except FileNotFoundError:
            return False
        except OSError:
            logger.exception("delete_failed hash=%s path=%s", file.hash, absolute)
            raise
        logger.debug("delete_removed strategy=%s path=%s", strategy, absolute)
        if self.cleanup_dirs:
            prune_empty_dirs(absolute, self.root)
        if self.folder_cleaner is not None:
            self.folder_cleaner.cleanup(file)
        return True

    def delete(self, file: StoredFile) -> DeleteResult:
        """Remove the stored object described by *file*.

        Direct candidates are probed first; a directory scan by hash is the
        last resort. A missing object is reported, not raised.
        """

        url_paths = list(self._object_paths_from_urls(file))
        extensions = extension_candidates(
            ext=file.ext, name=file.name, mime=file.mime, url_object_paths=url_paths
        )
        object_paths = object_path_candidates(
            file.hash,
            extensions,
            prefix=self.prefix,
            declared_path=file.path,
            url_object_paths=url_paths,
        )

        for object_path in object_paths:
            relative = normalize_relative_slash_path(object_path)
            if not relative:
                continue
            absolute = resolve_entry_under_root(self.root, relative)
            if absolute is None or not absolute.is_file():
                continue
            if self._remove(absolute, file, "direct"):
                return DeleteResult(deleted=True, path=absolute, strategy="direct")

        pattern = filename_pattern(file.hash, extensions)
        for directory in scan_directories(self.root, object_paths):
            try:
                entries = sorted(os.listdir(directory))
            except OSError:
                continue
            for name in entries:
                if not pattern.match(name):
                    continue
                absolute = directory / name
                if not absolute.is_file():
                    continue
                if self._remove(absolute, file, "scan"):
                    return DeleteResult(deleted=True, path=absolute, strategy="scan")

        logger.debug(
            "delete_not_found hash=%s url=%s preview_url=%s path=%s ext=%s",
            file.hash,
            file.url,
            file.preview_url,
            file.path,
            file.ext,
        )
        return DeleteResult(deleted=False, message=NOT_FOUND_MESSAGE)
