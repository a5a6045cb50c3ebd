from http import HTTPStatus
from typing import Any, Dict, Optional


class UploadPathError(Exception):
    """Base class for errors surfaced to callers of the upload provider."""

    status = HTTPStatus.BAD_REQUEST
    code = "upload_error"

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.context:
            payload["context"] = dict(self.context)
        return payload


class InvalidDirectoryHint(UploadPathError):
    """Raised when a directory hint sanitizes to an empty value in strict mode."""

    code = "invalid_directory_hint"


class PathEscape(UploadPathError):
    """Raised when a candidate path resolves outside the storage root."""

    status = HTTPStatus.NOT_FOUND
    code = "path_escape"


class PayloadTooLarge(UploadPathError):
    status = HTTPStatus.REQUEST_ENTITY_TOO_LARGE
    code = "payload_too_large"


class AccessDenied(UploadPathError):
    status = HTTPStatus.FORBIDDEN
    code = "access_denied"

    def __init__(self, message: str = "Access denied", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
