import logging
import posixpath
import secrets
from typing import Any, Dict, List, Mapping, Optional

from werkzeug.utils import secure_filename

from .storage import DeleteResult, LocalUploadProvider, StoredFile

logger = logging.getLogger("uploadpath.library")


def generate_hash(filename: str) -> str:
    """Content key for a new upload: a slug of the file stem plus random hex."""

    stem = posixpath.splitext(secure_filename(filename or ""))[0]
    slug = stem.lower()[:40].strip("._-") or "file"
    return f"{slug}_{secrets.token_hex(5)}"


def _info_for(file_info: Any, index: int) -> Mapping[str, Any]:
    if isinstance(file_info, list):
        entry = file_info[index] if index < len(file_info) else None
        return entry if isinstance(entry, dict) else {}
    return file_info if isinstance(file_info, dict) else {}


class MediaLibrary:
    """File records plus the storage provider behind them.

    Payloads follow the shape ``{"data": {...}, "files": [...]}`` where each
    file entry carries ``filename``, ``mime``, ``size`` and either ``stream``
    or ``buffer``. ``data["path"]`` is handed to the provider as the
    directory hint and ``data["fileInfo"]`` (a dict, or one dict per file)
    may carry ``name`` and ``folder``.
    """

    def __init__(self, store, provider: LocalUploadProvider, size_limit: Optional[int] = None) -> None:
        self.store = store
        self.provider = provider
        self.size_limit = size_limit

    def _prepare(self, upload: Mapping[str, Any], info: Mapping[str, Any], data: Mapping[str, Any]) -> StoredFile:
        filename = upload.get("filename") or ""
        folder_id = info.get("folder")
        folder_path = None
        if folder_id:
            folder = self.store.find_folder(folder_id)
            folder_path = folder["path"] if folder else None
        return StoredFile(
            hash=generate_hash(filename),
            ext=posixpath.splitext(filename)[1] or None,
            mime=upload.get("mime"),
            name=info.get("name") or filename,
            size=upload.get("size"),
            path=data.get("path"),
            folder=folder_id,
            folder_path=folder_path,
            stream=upload.get("stream"),
            buffer=upload.get("buffer"),
        )

    def _store_payload(self, stored: StoredFile) -> None:
        if stored.stream is not None:
            self.provider.upload_stream(stored)
        else:
            self.provider.upload(stored)

    def upload(self, payload: Mapping[str, Any], opts: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        """Store every file of *payload* or none of them."""

        data = payload.get("data") or {}
        prepared = [
            self._prepare(upload, _info_for(data.get("fileInfo"), index), data)
            for index, upload in enumerate(payload.get("files") or [])
        ]
        for stored in prepared:
            self.provider.check_file_size(stored, self.size_limit)

        records: List[Dict[str, Any]] = []
        try:
            for stored in prepared:
                self._store_payload(stored)
                record = self.store.insert_file(stored.to_record())
                logger.info(
                    "file_uploaded file_id=%s hash=%s url=%s", record["id"], stored.hash, stored.url
                )
                records.append(record)
        except Exception:
            self._rollback(prepared, records)
            raise
        return records

    def _rollback(self, prepared: List[StoredFile], records: List[Dict[str, Any]]) -> None:
        for record in records:
            try:
                self.store.delete_file(record["id"])
            except Exception:
                logger.warning("rollback_delete_failed file_id=%s", record["id"])
        for stored in prepared:
            if not stored.url:
                continue
            try:
                self.provider.delete(stored)
            except Exception:
                logger.warning("rollback_delete_failed hash=%s", stored.hash)
        logger.info("upload_rolled_back files=%d records=%d", len(prepared), len(records))

    def replace(
        self, file_id: Any, payload: Mapping[str, Any], opts: Optional[Mapping[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        existing = self.store.get_file(file_id)
        if existing is None:
            return None
        files = payload.get("files") or []
        if not files:
            raise ValueError("A replacement file is required")
        data = dict(payload.get("data") or {})
        info = dict(_info_for(data.get("fileInfo"), 0))
        # without hints the replacement stays where the old object was
        if "path" not in data:
            data["path"] = existing.get("path")
        if not info.get("folder"):
            info["folder"] = existing.get("folder_id")
        stored = self._prepare(files[0], info, data)
        self.provider.check_file_size(stored, self.size_limit)
        self._store_payload(stored)
        # the record must point at the new hash before the old object is
        # removed, otherwise folder cleanup sees the folder as empty
        record = self.store.update_file(file_id, stored.to_record())
        self.provider.delete(StoredFile.from_record(existing))
        logger.info("file_replaced file_id=%s old_hash=%s new_hash=%s", file_id, existing["hash"], stored.hash)
        return record

    def find(self, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        params = params or {}
        folder_id = params.get("folder")
        results = self.store.list_files(
            limit=params.get("limit"), offset=params.get("offset") or 0, folder_id=folder_id
        )
        return {"results": results, "pagination": {"total": self.store.count_files(folder_id)}}

    def find_one(self, file_id: Any, params: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
        return self.store.get_file(file_id)

    def delete(self, file_id: Any) -> Optional[DeleteResult]:
        record = self.store.get_file(file_id)
        if record is None:
            return None
        result = self.provider.delete(StoredFile.from_record(record))
        self.store.delete_file(file_id)
        logger.info(
            "file_deleted file_id=%s hash=%s found=%s", file_id, record["hash"], result.deleted
        )
        return result
