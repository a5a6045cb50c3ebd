"""HMAC tokens for time-limited access to private uploads.

``token = base64url(HMAC-SHA256(secret, path + "\\n" + expires))`` without
padding. The expiry is part of the signed payload but is not checked here:
callers compare it against the clock before calling
:func:`verify_private_url_token`.
"""

import hashlib
import time
from typing import Optional
from urllib.parse import quote, urlparse

from itsdangerous import Signer
from itsdangerous.encoding import want_bytes

DEFAULT_TTL_SECONDS = 60


def _signer(secret: str) -> Signer:
    return Signer(secret, key_derivation="none", digest_method=hashlib.sha256)


def _payload(canonical_path: str, expires_at: int) -> bytes:
    return want_bytes(f"{canonical_path}\n{int(expires_at)}")


def sign_private_url(secret: str, canonical_path: str, expires_at: int) -> str:
    return _signer(secret).get_signature(_payload(canonical_path, expires_at)).decode("ascii")


def verify_private_url_token(
    secret: str, canonical_path: str, expires_at: int, token: Optional[str]
) -> bool:
    """Constant-time check of *token* for *canonical_path* and *expires_at*."""

    if not secret or not token:
        return False
    try:
        return _signer(secret).verify_signature(_payload(canonical_path, expires_at), token)
    except (TypeError, ValueError):
        return False


def canonical_path_for(url: str) -> str:
    """Return the path component of *url* with any query string removed."""

    canonical = url.split("?", 1)[0]
    if canonical.startswith(("http://", "https://")):
        return urlparse(canonical).path
    return canonical


def build_signed_url(secret: str, url: str, ttl: int = DEFAULT_TTL_SECONDS, now: Optional[float] = None) -> str:
    """Append ``token`` and ``expires`` query parameters to *url*."""

    canonical_url = url.split("?", 1)[0]
    expires_at = int(now if now is not None else time.time()) + max(1, int(ttl))
    token = sign_private_url(secret, canonical_path_for(canonical_url), expires_at)
    return f"{canonical_url}?token={quote(token, safe='')}&expires={expires_at}"
