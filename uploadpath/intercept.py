"""Directory-hint support layered over the media library's upload service.

The wrapped service keeps its own contract; the adapter only rewrites the
``data`` part of upload/replace payloads before delegating:

* ``data["path"]``: virtual hint, becomes a media library folder chain and the
  ``folder`` of every ``fileInfo`` entry.
* ``data["pathDir"]``: physical hint, becomes the sanitized ``data["path"]``
  handed to the storage provider.
* ``data["private"]``: stores the upload under ``<private_folder>/<pathDir>``.
"""

import copy
import logging
from typing import Any, Dict, Mapping, Optional

from .candidates import non_blank
from .errors import InvalidDirectoryHint
from .folders import ensure_folder_from_path
from .paths import sanitize_path_dir
from .storage import StoredFile

logger = logging.getLogger("uploadpath.intercept")


class PathMappingUploadService:
    def __init__(self, service, folder_store, provider, config: Mapping[str, Any]) -> None:
        self.service = service
        self.folder_store = folder_store
        self.provider = provider
        self.strict_path_dir = bool(config.get("strict_path_dir"))
        self.use_path_as_path_dir = bool(config.get("use_path_as_path_dir", True))
        self.private_enable = bool(config.get("private_enable"))
        self.private_folder = (config.get("private_folder") or "").strip("/").strip()
        self.sign_urls = self.private_enable and bool(config.get("private_secret"))

    def apply_path_mapping(self, data: Dict[str, Any], user: Optional[Mapping[str, Any]] = None) -> bool:
        """Rewrite *data* in place. Returns ``False`` when nothing was requested."""

        is_private = self.private_enable and data.get("private") is True
        path_dir_raw = non_blank(data.get("pathDir"))
        admin_path = non_blank(data.get("path"))

        if is_private:
            if not path_dir_raw or not self.private_folder:
                raise InvalidDirectoryHint(
                    "When private is true, pathDir (owner id) is required and "
                    "the private folder must be configured"
                )
            owner_id = sanitize_path_dir(path_dir_raw)
            if not owner_id:
                raise InvalidDirectoryHint(
                    "When private is true, pathDir (owner id) must not sanitize to empty",
                    context={"pathDir": path_dir_raw},
                )
            admin_path = f"{self.private_folder}/{owner_id}"
            data["path"] = admin_path
            data.pop("pathDir", None)
            logger.debug("private_path_mapped admin_path=%s owner_id=%s", admin_path, owner_id)

        if not admin_path and not path_dir_raw and not is_private:
            return False

        if admin_path:
            folder_id = ensure_folder_from_path(self.folder_store, admin_path, user=user)
            file_info = data.get("fileInfo")
            if isinstance(file_info, list):
                data["fileInfo"] = [dict(entry or {}, folder=folder_id) for entry in file_info]
            else:
                data["fileInfo"] = dict(file_info or {}, folder=folder_id)

        if not is_private:
            fs_source = path_dir_raw or (admin_path if self.use_path_as_path_dir else "") or ""
            fs_path = sanitize_path_dir(fs_source) if fs_source else ""
            if path_dir_raw and self.strict_path_dir and not fs_path:
                raise InvalidDirectoryHint(
                    "Invalid pathDir (sanitizes to empty)", context={"pathDir": path_dir_raw}
                )
            if fs_path:
                data["path"] = fs_path
            else:
                data.pop("path", None)
            data.pop("pathDir", None)

        logger.debug(
            "metas_mapped admin_path=%s path_dir=%s fs_path=%s",
            admin_path,
            path_dir_raw,
            data.get("path"),
        )
        return True

    def _mapped(self, payload: Optional[Mapping[str, Any]], opts: Optional[Mapping[str, Any]]):
        payload = dict(payload or {})
        data = copy.deepcopy(payload.get("data") or {})
        user = (opts or {}).get("user")
        if not self.apply_path_mapping(data, user=user):
            return None
        payload["data"] = data
        return payload

    def upload(self, payload: Mapping[str, Any], opts: Optional[Mapping[str, Any]] = None):
        mapped = self._mapped(payload, opts)
        return self.service.upload(payload if mapped is None else mapped, opts)

    def replace(self, file_id: Any, payload: Mapping[str, Any], opts: Optional[Mapping[str, Any]] = None):
        mapped = self._mapped(payload, opts)
        return self.service.replace(file_id, payload if mapped is None else mapped, opts)

    # Signed URL enrichment for reads

    def _sign(self, entry: Dict[str, Any]) -> None:
        candidate = StoredFile(hash=entry.get("hash") or "", url=entry.get("url"))
        if not self.provider.is_private(candidate):
            return
        try:
            entry["url"] = self.provider.get_signed_url(candidate)
        except (TypeError, ValueError) as error:
            logger.warning("signed_url_failed hash=%s error=%s", entry.get("hash"), error)

    def enrich(self, record: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not record or not self.sign_urls:
            return record
        self._sign(record)
        formats = record.get("formats")
        if isinstance(formats, dict):
            for variant in formats.values():
                if isinstance(variant, dict) and variant.get("url"):
                    self._sign(variant)
        return record

    def find(self, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        result = self.service.find(params)
        for record in result.get("results") or []:
            self.enrich(record)
        return result

    def find_one(self, file_id: Any, params: Optional[Mapping[str, Any]] = None):
        return self.enrich(self.service.find_one(file_id, params))

    def __getattr__(self, name: str):
        return getattr(self.service, name)


def wrap_upload_service(service, folder_store, provider, config: Mapping[str, Any]) -> PathMappingUploadService:
    """Wrap *service* once; wrapping an already wrapped service returns it."""

    if isinstance(service, PathMappingUploadService):
        return service
    return PathMappingUploadService(service, folder_store, provider, config)
