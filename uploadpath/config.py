import json
import logging
import math
import os
from pathlib import Path
from typing import Any, Dict, Optional

BASE_DIR = Path(__file__).resolve().parent

logger = logging.getLogger("uploadpath.config")


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("UPLOADPATH_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("UPLOADPATH_DATA_DIR", STORAGE_ROOT / "data")
UPLOADS_DIR = _resolve_env_path("UPLOADPATH_UPLOADS_DIR", STORAGE_ROOT / "uploads")
LOGS_DIR = _resolve_env_path("UPLOADPATH_LOGS_DIR", STORAGE_ROOT / "logs")
DB_PATH = DATA_DIR / "metadata.db"
CONFIG_PATH = DATA_DIR / "config.json"

ENV_PREFIX = "UPLOADPATH_"
UPLOADS_FOLDER_NAME = "uploads"
DEFAULT_PRIVATE_FOLDER = "private"
DEFAULT_PRIVATE_TTL = 60
DEFAULT_MAX_UPLOAD_MB = 500
TRUTHY_VALUES = {"1", "true", "yes", "on"}


DEFAULT_CONFIG: Dict[str, Any] = {
    "mount": UPLOADS_FOLDER_NAME,
    "prefix": "",
    "base_url": "",
    "debug": False,
    "strict_path_dir": False,
    "cleanup_empty_dirs": False,
    "cleanup_empty_folders": False,
    "use_path_as_path_dir": True,
    "uploads_url_marker": "",
    "rename_to_uuid": False,
    "private_enable": False,
    "private_folder": DEFAULT_PRIVATE_FOLDER,
    "private_ttl": float(DEFAULT_PRIVATE_TTL),
    "private_secret": "",
    "private_user_document_id_field": "id",
    "size_limit": 0.0,
    "max_upload_size_mb": float(DEFAULT_MAX_UPLOAD_MB),
    "upload_rate_limit_per_hour": 100.0,
    "download_rate_limit_per_minute": 120.0,
    "api_auth_enabled": False,
    "api_keys": [],
}

CONFIG_NUMERIC_KEYS = {
    "private_ttl",
    "size_limit",
    "max_upload_size_mb",
    "upload_rate_limit_per_hour",
    "download_rate_limit_per_minute",
}

CONFIG_BOOLEAN_KEYS = {
    "debug",
    "strict_path_dir",
    "cleanup_empty_dirs",
    "cleanup_empty_folders",
    "use_path_as_path_dir",
    "rename_to_uuid",
    "private_enable",
    "api_auth_enabled",
}

CONFIG_STRING_KEYS = {
    "mount",
    "prefix",
    "base_url",
    "uploads_url_marker",
    "private_folder",
    "private_secret",
    "private_user_document_id_field",
}

CONFIG_LIST_KEYS = {"api_keys"}


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def _coerce_numeric(value, default):
    """Coerce a value to float, rejecting NaN and infinity."""
    try:
        coerced = float(value)
        if math.isnan(coerced) or math.isinf(coerced):
            return float(default)
    except (TypeError, ValueError):
        return float(default)
    return float(coerced)


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_VALUES
    return bool(value)


def _strip_slashes(value: str) -> str:
    return value.strip().strip("/").strip()


def normalize_config(raw_config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Merge *raw_config* over the defaults and clamp every value into range."""

    if not isinstance(raw_config, dict):
        raw_config = {}

    config = DEFAULT_CONFIG.copy()
    config["api_keys"] = []

    for key in CONFIG_NUMERIC_KEYS:
        if key in raw_config:
            config[key] = _coerce_numeric(raw_config.get(key), config[key])

    for key in CONFIG_BOOLEAN_KEYS:
        if key in raw_config:
            config[key] = _coerce_bool(raw_config.get(key))

    for key in CONFIG_STRING_KEYS:
        value = raw_config.get(key)
        if isinstance(value, str):
            config[key] = value.strip()

    for key in CONFIG_LIST_KEYS:
        value = raw_config.get(key)
        if isinstance(value, list):
            config[key] = [entry for entry in value if isinstance(entry, dict)]

    config["mount"] = _strip_slashes(config["mount"]) or UPLOADS_FOLDER_NAME
    config["private_folder"] = _strip_slashes(config["private_folder"]) or DEFAULT_PRIVATE_FOLDER
    if not config["uploads_url_marker"]:
        config["uploads_url_marker"] = f"/{config['mount']}/"
    config["private_user_document_id_field"] = config["private_user_document_id_field"] or "id"

    config["private_ttl"] = max(1, int(math.floor(config["private_ttl"])))

    size_limit = int(config["size_limit"])
    config["size_limit"] = size_limit if size_limit > 0 else None

    if config["max_upload_size_mb"] < 1:
        config["max_upload_size_mb"] = float(DEFAULT_MAX_UPLOAD_MB)
    if config["upload_rate_limit_per_hour"] < 1:
        config["upload_rate_limit_per_hour"] = DEFAULT_CONFIG["upload_rate_limit_per_hour"]
    if config["download_rate_limit_per_minute"] < 1:
        config["download_rate_limit_per_minute"] = DEFAULT_CONFIG["download_rate_limit_per_minute"]

    return config


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for key in DEFAULT_CONFIG:
        if key in CONFIG_LIST_KEYS:
            continue
        value = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
        if value is not None:
            overrides[key] = value
    return overrides


def load_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Load the persisted config, then apply environment and explicit overrides."""

    ensure_directories()
    raw: Dict[str, Any] = {}
    if CONFIG_PATH.exists():
        try:
            with CONFIG_PATH.open("r", encoding="utf-8") as handle:
                loaded = json.load(handle)
            if isinstance(loaded, dict):
                raw.update(loaded)
        except (OSError, json.JSONDecodeError) as error:
            logger.warning("config_load_failed path=%s error=%s", CONFIG_PATH, error)
    raw.update(_env_overrides())
    if overrides:
        raw.update(overrides)
    return normalize_config(raw)


def save_config(config: Dict[str, Any]) -> None:
    ensure_directories()
    normalized = normalize_config(config)
    persisted = dict(normalized)
    persisted["size_limit"] = normalized["size_limit"] or 0
    temp_path = CONFIG_PATH.with_suffix(".tmp")
    with temp_path.open("w", encoding="utf-8") as handle:
        json.dump(persisted, handle, indent=2, sort_keys=True)
    temp_path.replace(CONFIG_PATH)
