import hashlib
import json
import logging
import os
import secrets
import shutil
import time
import uuid
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from secrets import compare_digest
from typing import Any, Callable, Dict, List, Optional

from flask import Flask, Response, abort, g, jsonify, make_response, request, send_file
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage

from .access import PrivateAccessGate, UserTokenCodec, bearer_token
from .config import (
    DATA_DIR,
    DB_PATH,
    LOGS_DIR,
    TRUTHY_VALUES,
    UPLOADS_DIR,
    ensure_directories,
    load_config,
    save_config,
)
from .errors import UploadPathError
from .intercept import wrap_upload_service
from .library import MediaLibrary
from .metadata import MetadataStore
from .paths import resolve_under_root
from .storage import LocalUploadProvider

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3
NON_CANONICAL_SEGMENTS = {"", ".", ".."}
BYTES_PER_MB = 1024 * 1024

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


def _load_secret_key() -> str:
    env_secret = os.environ.get("SECRET_KEY")
    if env_secret:
        return env_secret

    secret_path = DATA_DIR / ".secret_key"
    try:
        ensure_directories()
        try:
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            fd = os.open(secret_path, os.O_WRONLY | os.O_TRUNC, 0o600)
        generated = secrets.token_hex(32)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(generated)
        logging.getLogger("uploadpath.config").warning(
            "Generated new secret key - stored in %s", secret_path
        )
        return generated
    except OSError as error:
        logging.getLogger("uploadpath.config").critical(
            "SECURITY WARNING: Using in-memory secret key. User tokens will not survive "
            "restarts. Set SECRET_KEY for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        request_id = g.get("request_id") if g else None
        if request_id:
            return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()

_CONFIG: Dict[str, Any] = load_config()
if _CONFIG["debug"]:
    logging.getLogger("uploadpath").setLevel(logging.DEBUG)

MOUNT = _CONFIG["mount"]

metadata_store = MetadataStore(DB_PATH)
metadata_store.init_db()
provider = LocalUploadProvider(UPLOADS_DIR, _CONFIG, folder_store=metadata_store)
library = MediaLibrary(metadata_store, provider, size_limit=_CONFIG["size_limit"])
upload_service = wrap_upload_service(library, metadata_store, provider, _CONFIG)
user_tokens = UserTokenCodec(_load_secret_key())


def hash_api_key(key: str) -> str:
    """Hash an API key using SHA-256 for persistent storage."""

    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def create_api_key(label: str = "") -> str:
    """Store a new privileged API key and return its raw value once."""

    raw_key = secrets.token_urlsafe(32)
    entry = {
        "id": uuid.uuid4().hex,
        "label": label,
        "key_hash": hash_api_key(raw_key),
        "created_at": time.time(),
    }
    _CONFIG["api_keys"] = list(_CONFIG.get("api_keys", [])) + [entry]
    save_config(_CONFIG)
    logging.getLogger("uploadpath.security").info("api_key_created key_id=%s", entry["id"])
    return raw_key


def match_api_key(provided: Optional[str]) -> Optional[Dict[str, Any]]:
    if not provided:
        return None
    provided_hash = hash_api_key(provided)
    for entry in _CONFIG.get("api_keys", []):
        if compare_digest(entry.get("key_hash", ""), provided_hash):
            return entry
    return None


gate = PrivateAccessGate(
    mount=MOUNT,
    private_folder=provider.private_folder,
    prefix=provider.prefix,
    secret=_CONFIG["private_secret"],
    owner_field=_CONFIG["private_user_document_id_field"],
    privileged_verifier=match_api_key,
    owner_verifier=user_tokens.decode,
    user_lookup=metadata_store.get_user,
)

app = Flask(__name__)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.environ.get("UPLOADPATH_RATE_LIMIT_STORAGE", "memory://"),
)

app.config["MAX_CONTENT_LENGTH"] = int(_CONFIG["max_upload_size_mb"] * BYTES_PER_MB)
app.logger.setLevel(numeric_level)

_base_lifecycle_logger = logging.getLogger("uploadpath.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)


def upload_rate_limit_string() -> str:
    return f"{int(_CONFIG['upload_rate_limit_per_hour'])} per hour"


def download_rate_limit_string() -> str:
    return f"{int(_CONFIG['download_rate_limit_per_minute'])} per minute"


def _extract_api_key_from_request() -> Optional[str]:
    header_key = request.headers.get("X-API-Key")
    if header_key:
        return header_key.strip()
    return bearer_token(request.headers.get("Authorization")) or None


def require_api_auth(view: Callable):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not _CONFIG.get("api_auth_enabled"):
            return view(*args, **kwargs)
        if match_api_key(_extract_api_key_from_request()):
            return view(*args, **kwargs)
        lifecycle_logger.warning(
            "api_auth_failed endpoint=%s method=%s", request.endpoint, request.method
        )
        return make_response(jsonify({"error": "API authentication required."}), 401)

    return wrapped


def _current_user() -> Optional[Dict[str, Any]]:
    token = bearer_token(request.headers.get("Authorization"))
    if not token:
        return None
    claims = user_tokens.decode(token)
    if not claims or claims.get("id") is None:
        return None
    return metadata_store.get_user(claims["id"])


def _stream_size(stream: Any) -> Optional[int]:
    try:
        position = stream.tell()
        stream.seek(0, os.SEEK_END)
        size = stream.tell()
        stream.seek(position)
        return size
    except (AttributeError, OSError):
        return None


def _upload_entries(uploads: List[FileStorage]) -> List[Dict[str, Any]]:
    entries = []
    for upload in uploads:
        if not isinstance(upload, FileStorage) or not upload.filename:
            continue
        entries.append(
            {
                "filename": upload.filename,
                "mime": upload.mimetype or None,
                "size": upload.content_length or _stream_size(upload.stream),
                "stream": upload.stream,
            }
        )
    return entries


def _upload_data() -> Dict[str, Any]:
    """Collect the directory/privacy hints of an upload request."""

    data: Dict[str, Any] = {}
    for key in ("path", "pathDir"):
        value = request.form.get(key)
        if value is not None:
            data[key] = value
    private = request.form.get("private")
    if private is not None:
        data["private"] = private.strip().lower() in TRUTHY_VALUES
    raw_info = request.form.get("fileInfo")
    if raw_info:
        try:
            file_info = json.loads(raw_info)
        except json.JSONDecodeError:
            abort(make_response(jsonify({"error": "fileInfo must be valid JSON"}), 400))
        if not isinstance(file_info, (dict, list)):
            abort(make_response(jsonify({"error": "fileInfo must be an object or a list"}), 400))
        data["fileInfo"] = file_info
    return data


def _is_canonical_object_path(object_path: str) -> bool:
    if not object_path or "\\" in object_path:
        return False
    return not any(segment in NON_CANONICAL_SEGMENTS for segment in object_path.split("/"))


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        request.path,
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(UploadPathError)
def handle_upload_error(error: UploadPathError):
    lifecycle_logger.warning("request_failed code=%s message=%s", error.code, error.message)
    return jsonify(error.to_payload()), int(error.status)


@app.errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    return jsonify({"error": "File too large"}), 413


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        with metadata_store.get_db() as conn:
            conn.execute("SELECT COUNT(*) FROM files").fetchone()
        checks["database"] = "ok"
    except Exception as error:
        checks["database"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        probe_file = UPLOADS_DIR / f".health_check_{uuid.uuid4().hex}"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
        checks["disk_space_gb"] = round(shutil.disk_usage(UPLOADS_DIR).free / (1024 ** 3), 2)
    except OSError as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    checks["private_enabled"] = provider.is_private()
    return jsonify(
        {"status": "healthy" if healthy else "unhealthy", "timestamp": time.time(), "checks": checks}
    ), (200 if healthy else 503)


@app.route("/api/upload", methods=["POST"])
@require_api_auth
@limiter.limit(lambda: upload_rate_limit_string())
def upload_files():
    uploads = request.files.getlist("files") or request.files.getlist("file")
    entries = _upload_entries(uploads)
    if not entries:
        app.logger.warning("upload_failed reason=no_file_selected")
        return jsonify({"error": "No file selected"}), 400

    payload = {"data": _upload_data(), "files": entries}
    records = upload_service.upload(payload, {"user": _current_user()})
    lifecycle_logger.info("upload_completed count=%d", len(records))
    return jsonify([upload_service.enrich(record) for record in records]), 201


@app.route("/api/upload/<int:file_id>/replace", methods=["POST"])
@require_api_auth
@limiter.limit(lambda: upload_rate_limit_string())
def replace_file(file_id: int):
    entries = _upload_entries(request.files.getlist("files") or request.files.getlist("file"))
    if not entries:
        return jsonify({"error": "No file selected"}), 400

    payload = {"data": _upload_data(), "files": entries[:1]}
    record = upload_service.replace(file_id, payload, {"user": _current_user()})
    if record is None:
        abort(404)
    return jsonify(upload_service.enrich(record))


@app.route("/api/files")
@require_api_auth
def list_files():
    params = {
        "limit": request.args.get("limit", 50, type=int),
        "offset": request.args.get("offset", 0, type=int),
        "folder": request.args.get("folder", type=int),
    }
    return jsonify(upload_service.find(params))


@app.route("/api/files/<int:file_id>")
@require_api_auth
def get_file(file_id: int):
    record = upload_service.find_one(file_id)
    if record is None:
        abort(404)
    return jsonify(record)


@app.route("/api/files/<int:file_id>", methods=["DELETE"])
@require_api_auth
def delete_file(file_id: int):
    result = upload_service.delete(file_id)
    if result is None:
        abort(404)
    return jsonify({"deleted": result.deleted, "message": result.message})


@app.route(f"/{MOUNT}/<path:object_path>")
@limiter.limit(lambda: download_rate_limit_string())
def serve_upload(object_path: str):
    resolved = None
    if _is_canonical_object_path(object_path):
        resolved = resolve_under_root(provider.root, object_path)
    if resolved is None or not resolved.is_file():
        lifecycle_logger.warning("file_serve_missing path=%s", request.path)
        abort(404)

    # access is decided on the location actually served, not on the request text
    served_path = f"/{MOUNT}/{resolved.relative_to(provider.root).as_posix()}"
    gate.authorize(served_path, request.headers.get("Authorization"), request.args)

    lifecycle_logger.info("file_served path=%s", request.path)
    try:
        return send_file(resolved, as_attachment=False)
    except FileNotFoundError:
        lifecycle_logger.warning("file_serve_missing_race path=%s", request.path)
        abort(404)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)
