"""Lookup strategies used to find a stored object from a partial description.

Delete payloads can lack the extension, the directory hint, or both. These
helpers turn whatever the caller still knows (url, preview url, name, mime
type, declared path) into ordered candidate extensions, object paths and scan
directories. None of them touch the filesystem except :func:`scan_directories`,
which only resolves paths.
"""

import posixpath
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Pattern
from urllib.parse import unquote, urlparse

from .paths import (
    join_object_path,
    normalize_relative_slash_path,
    resolve_under_root,
    sanitize_path_dir,
)

MIME_EXTENSIONS: Dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/svg+xml": ".svg",
    "application/pdf": ".pdf",
}

_SCHEME_PATTERN = re.compile(r"^\w+://")


def non_blank(value: object) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def normalize_ext(ext: object) -> Optional[str]:
    raw = non_blank(ext)
    if not raw:
        return None
    return raw if raw.startswith(".") else f".{raw}"


def ext_from_mime(mime: object) -> Optional[str]:
    raw = non_blank(mime)
    if not raw:
        return None
    return MIME_EXTENSIONS.get(raw.strip().lower())


def extract_object_path_from_url(
    url: object, marker: str = "/uploads/", base_url: Optional[str] = None
) -> Optional[str]:
    """Recover the object path (relative to the storage root) from a public URL.

    The path after *marker* is preferred; when the marker is absent and *url*
    starts with *base_url*, the remainder after the base URL is used instead.
    Both are URL-decoded.
    """

    raw = non_blank(url)
    if not raw:
        return None

    if _SCHEME_PATTERN.match(raw):
        try:
            pathname = urlparse(raw).path
        except ValueError:
            pathname = raw.split("?", 1)[0]
    else:
        pathname = raw.split("?", 1)[0]

    index = pathname.find(marker) if marker else -1
    if index != -1:
        object_path = pathname[index + len(marker):].lstrip("/")
        return unquote(object_path) if object_path else None

    base = non_blank(base_url)
    if base and raw.startswith(base):
        remainder = raw[len(base):].lstrip("/").split("?", 1)[0]
        return unquote(remainder) if remainder else None

    return None


def _add(ordered: Dict[str, None], value: Optional[str]) -> None:
    if value is not None and value not in ordered:
        ordered[value] = None


def extension_candidates(
    *,
    ext: object = None,
    name: object = None,
    mime: object = None,
    url_object_paths: Iterable[Optional[str]] = (),
) -> List[str]:
    """Collect extension candidates in priority order.

    Falls back to ``[""]`` when nothing is known so the bare hash is still tried.
    """

    ordered: Dict[str, None] = {}
    _add(ordered, normalize_ext(ext))
    for object_path in url_object_paths:
        if object_path:
            _add(ordered, posixpath.splitext(object_path)[1] or None)
    if non_blank(name):
        _add(ordered, posixpath.splitext(str(name))[1] or None)
    _add(ordered, ext_from_mime(mime))
    if not ordered:
        ordered[""] = None
    return list(ordered)


def object_path_candidates(
    file_hash: str,
    extensions: Iterable[str],
    *,
    prefix: str = "",
    declared_path: object = None,
    url_object_paths: Iterable[Optional[str]] = (),
) -> List[str]:
    """Build object paths to probe, most likely first.

    For every extension: the sanitized declared directory, the raw (only
    slash-normalized) declared directory for files stored under older
    sanitization rules, the prefix root and the storage root. Object paths
    recovered from URLs come last.
    """

    raw_path = declared_path if isinstance(declared_path, str) else ""
    sanitized_dir = sanitize_path_dir(raw_path) if raw_path else ""
    raw_dir = normalize_relative_slash_path(raw_path)

    ordered: Dict[str, None] = {}
    for ext in extensions:
        filename = f"{file_hash}{ext}"
        _add(ordered, join_object_path(prefix, sanitized_dir, filename))
        if raw_dir:
            _add(ordered, join_object_path(prefix, raw_dir, filename))
        _add(ordered, join_object_path(prefix, filename))
        _add(ordered, filename)
    for object_path in url_object_paths:
        if object_path:
            _add(ordered, object_path)
    return list(ordered)


def scan_directories(root: Path, object_paths: Iterable[str]) -> List[Path]:
    """Parent directories of *object_paths* that stay under *root*, then *root*."""

    ordered: Dict[Path, None] = {}
    for object_path in object_paths:
        relative = normalize_relative_slash_path(object_path)
        if not relative or "/" not in relative:
            continue
        directory = resolve_under_root(root, relative.rsplit("/", 1)[0])
        if directory is not None and directory not in ordered:
            ordered[directory] = None
    root_abs = Path(root).resolve()
    if root_abs not in ordered:
        ordered[root_abs] = None
    return list(ordered)


def filename_pattern(file_hash: str, extensions: Iterable[str]) -> Pattern[str]:
    """Case-insensitive pattern matching ``<hash><ext>`` for the known extensions."""

    known = [ext for ext in extensions if ext]
    escaped_hash = re.escape(file_hash)
    if known:
        alternatives = "|".join(re.escape(ext) for ext in known)
        return re.compile(f"^{escaped_hash}({alternatives})$", re.IGNORECASE)
    return re.compile(f"^{escaped_hash}\\.[a-z0-9]{{1,6}}$", re.IGNORECASE)
