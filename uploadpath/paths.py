"""Path sanitization and root confinement for uploaded objects.

Directory hints arrive from untrusted callers and may carry arbitrary Unicode,
traversal sequences or control characters. Everything that ends up on disk goes
through :func:`sanitize_path_dir` and :func:`resolve_under_root`.
"""

import logging
import re
import unicodedata
from pathlib import Path
from typing import Optional, Union

from .errors import PathEscape

logger = logging.getLogger("uploadpath.paths")

MAX_SEGMENT_LENGTH = 128
MAX_PATH_LENGTH = 512

_COMBINING_MARKS = re.compile(r"[\u0300-\u036f]")
_WHITESPACE = re.compile(r"\s+")
_UNSAFE_DIR_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
_UNSAFE_FOLDER_CHARS = re.compile(r"[^a-zA-Z0-9 _-]")
_HYPHEN_RUNS = re.compile(r"-+")
_LEADING_DOTS_HYPHENS = re.compile(r"^[.\-]+")
_TRAILING_HYPHENS = re.compile(r"-+$")

PathLike = Union[str, Path]


def _strip_diacritics(value: str) -> str:
    return _COMBINING_MARKS.sub("", unicodedata.normalize("NFD", value))


def _sanitize_dir_segment(part: str) -> str:
    segment = _strip_diacritics(part)
    segment = _WHITESPACE.sub("-", segment)
    segment = _UNSAFE_DIR_CHARS.sub("", segment)
    segment = _HYPHEN_RUNS.sub("-", segment)
    segment = _LEADING_DOTS_HYPHENS.sub("", segment)
    segment = _TRAILING_HYPHENS.sub("", segment)
    if len(segment) > MAX_SEGMENT_LENGTH:
        segment = _TRAILING_HYPHENS.sub("", segment[:MAX_SEGMENT_LENGTH])
    return segment


def sanitize_path_dir(value: object) -> str:
    """Sanitize a relative directory hint for use on the filesystem.

    ``"  Árvore/../Café  "`` becomes ``"Arvore/Cafe"``. The result is either an
    empty string or one or more ``/``-joined segments built from
    ``[A-Za-z0-9._-]``; ``.``/``..`` and empty segments never survive.
    """

    raw = unicodedata.normalize("NFD", str(value or "")).strip().replace("\\", "/")
    if not raw:
        return ""

    segments = []
    for part in raw.split("/"):
        part = part.strip()
        if not part:
            continue
        segment = _sanitize_dir_segment(part)
        if not segment or segment in {".", ".."}:
            continue
        segments.append(segment)

    joined = "/".join(segments)
    if len(joined) > MAX_PATH_LENGTH:
        joined = joined[:MAX_PATH_LENGTH].rstrip("/-")
    return joined


def sanitize_folder_name(value: object) -> str:
    """Sanitize a single metadata folder name (letters, digits, space, ``_``, ``-``)."""

    name = _strip_diacritics(str(value or ""))
    name = _UNSAFE_FOLDER_CHARS.sub("", name)
    name = _WHITESPACE.sub(" ", name).strip()
    if len(name) > MAX_SEGMENT_LENGTH:
        name = name[:MAX_SEGMENT_LENGTH].strip()
    return name


def sanitize_folder_path(value: object) -> str:
    """Sanitize a metadata folder path such as ``"a/b/c"`` name by name."""

    raw = str(value or "").strip().replace("\\", "/")
    if not raw:
        return ""
    names = (sanitize_folder_name(part) for part in raw.split("/"))
    return "/".join(name for name in names if name)


def normalize_relative_slash_path(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().replace("\\", "/").lstrip("/").rstrip("/")


def normalize_prefix(prefix: str) -> str:
    """Return *prefix* without surrounding slashes plus a single trailing one."""

    prefix = (prefix or "").strip().strip("/")
    if not prefix:
        return ""
    return prefix + "/"


def join_object_path(*segments: str) -> str:
    """Join URL/object path segments with single forward slashes.

    Empty leading segments are skipped so ``join_object_path("", "", "a.png")``
    is just ``"a.png"``.
    """

    if not segments:
        return ""
    joined = ""
    for segment in segments[:-1]:
        joined += segment if segment == "" or segment.endswith("/") else segment + "/"
    return joined + segments[-1]


def resolve_under_root(root: PathLike, relative: str) -> Optional[Path]:
    """Resolve *relative* against *root*, or ``None`` if it would leave the root.

    The root itself is rejected too: an object path can never name the storage
    directory.
    """

    if relative is None or "\x00" in str(relative):
        return None
    root_abs = Path(root).resolve()
    try:
        candidate = (root_abs / str(relative)).resolve()
    except (OSError, RuntimeError, ValueError):
        return None
    if candidate == root_abs or root_abs not in candidate.parents:
        return None
    return candidate


def resolve_entry_under_root(root: PathLike, relative: str) -> Optional[Path]:
    """Like :func:`resolve_under_root` but leaves the last component unresolved.

    The result names the directory entry itself, so a symlink comes back as
    the link and not as its target. Its parent directory must be the root or
    lie under it.
    """

    if relative is None or "\x00" in str(relative):
        return None
    root_abs = Path(root).resolve()
    lexical = root_abs / str(relative)
    if lexical.name in ("", ".", ".."):
        return None
    try:
        parent = lexical.parent.resolve()
    except (OSError, RuntimeError, ValueError):
        return None
    if parent != root_abs and root_abs not in parent.parents:
        return None
    return parent / lexical.name


def require_under_root(root: PathLike, relative: str) -> Path:
    resolved = resolve_under_root(root, relative)
    if resolved is None:
        raise PathEscape("Path resolves outside the storage root", context={"path": str(relative)})
    return resolved


def prune_empty_dirs(file_path: PathLike, root: PathLike) -> None:
    """Remove empty directories from the parent of *file_path* up to *root*.

    Stops at the root, at the first directory that is not empty, or on the
    first filesystem error.
    """

    root_abs = Path(root).resolve()
    current = Path(file_path).resolve().parent
    while current != root_abs and root_abs in current.parents:
        try:
            current.rmdir()
        except OSError as error:
            logger.debug("prune_stopped path=%s reason=%s", current, error.__class__.__name__)
            break
        logger.debug("prune_removed path=%s", current)
        current = current.parent
