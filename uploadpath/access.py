import logging
import time
from typing import Any, Callable, Mapping, Optional

from itsdangerous import BadData, URLSafeTimedSerializer

from .errors import AccessDenied
from .paths import normalize_prefix
from .signing import verify_private_url_token

logger = logging.getLogger("uploadpath.access")

USER_TOKEN_SALT = "uploadpath-user"

PrivilegedVerifier = Callable[[str], Any]
OwnerVerifier = Callable[[str], Optional[Mapping[str, Any]]]
UserLookup = Callable[[Any], Optional[Mapping[str, Any]]]


def bearer_token(authorization: Optional[str]) -> str:
    if isinstance(authorization, str) and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return ""


class UserTokenCodec:
    """Issues and decodes end-user bearer tokens carrying ``{"id": ...}``."""

    def __init__(self, secret: str, max_age: Optional[int] = None) -> None:
        self._serializer = URLSafeTimedSerializer(secret, salt=USER_TOKEN_SALT)
        self.max_age = max_age

    def issue(self, user_id: Any) -> str:
        return self._serializer.dumps({"id": user_id})

    def decode(self, token: str) -> Optional[Mapping[str, Any]]:
        try:
            claims = self._serializer.loads(token, max_age=self.max_age)
        except BadData:
            return None
        return claims if isinstance(claims, dict) else None


class PrivateAccessGate:
    """Decides whether a request may read an object under the private folder.

    Three independent checks run in order and the first success wins:
    a privileged bearer token, a user bearer token whose owner field matches
    the owner segment of the path, and a signed URL. A verifier that raises
    simply fails its own check.
    """

    def __init__(
        self,
        *,
        mount: str,
        private_folder: str,
        prefix: str = "",
        secret: str = "",
        owner_field: str = "id",
        privileged_verifier: Optional[PrivilegedVerifier] = None,
        owner_verifier: Optional[OwnerVerifier] = None,
        user_lookup: Optional[UserLookup] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.mount = mount
        self.private_folder = private_folder
        self.prefix = normalize_prefix(prefix)
        self.secret = secret
        self.owner_field = owner_field or "id"
        self.privileged_verifier = privileged_verifier
        self.owner_verifier = owner_verifier
        self.user_lookup = user_lookup
        self.clock = clock

    def _private_remainder(self, request_path: str) -> Optional[str]:
        """Part of *request_path* after the private folder, or ``None`` if public.

        Objects are private under ``<prefix><private_folder>/`` and, for
        objects stored before a prefix was configured, ``<private_folder>/``.
        """

        mount_lead = f"/{self.mount}/"
        if not self.private_folder or not request_path.startswith(mount_lead):
            return None
        object_path = request_path[len(mount_lead):]
        for lead in dict.fromkeys([f"{self.prefix}{self.private_folder}/", f"{self.private_folder}/"]):
            if object_path.startswith(lead):
                return object_path[len(lead):]
        return None

    def applies_to(self, request_path: str) -> bool:
        return self._private_remainder(request_path) is not None

    def owner_segment(self, request_path: str) -> str:
        remainder = self._private_remainder(request_path) or ""
        segments = [segment for segment in remainder.split("/") if segment]
        return segments[0] if segments else ""

    def _privileged(self, token: str) -> bool:
        if not token or self.privileged_verifier is None:
            return False
        try:
            return bool(self.privileged_verifier(token))
        except Exception as error:
            logger.debug("privileged_check_failed error=%s", error.__class__.__name__)
            return False

    def _owner_match(self, token: str, owner: str) -> bool:
        if not token or not owner or self.owner_verifier is None or self.user_lookup is None:
            return False
        try:
            claims = self.owner_verifier(token)
            if not claims:
                return False
            user_id = claims.get("id", claims.get("sub"))
            if user_id is None:
                return False
            user = self.user_lookup(user_id)
            if user is None:
                return False
            identifier = user.get(self.owner_field)
            if identifier is None:
                identifier = user.get("id")
            return identifier is not None and str(identifier) == owner
        except Exception as error:
            logger.debug("owner_check_failed error=%s", error.__class__.__name__)
            return False

    def _signed_url(self, request_path: str, query: Mapping[str, Any]) -> bool:
        if not self.secret:
            return False
        token = query.get("token")
        try:
            expires = int(query.get("expires", ""))
        except (TypeError, ValueError):
            return False
        if not token or expires <= self.clock():
            return False
        return verify_private_url_token(self.secret, request_path, expires, token)

    def is_allowed(
        self, request_path: str, authorization: Optional[str], query: Mapping[str, Any]
    ) -> bool:
        token = bearer_token(authorization)
        if self._privileged(token):
            logger.debug("private_access_allowed reason=privileged path=%s", request_path)
            return True
        if self._owner_match(token, self.owner_segment(request_path)):
            logger.debug("private_access_allowed reason=owner path=%s", request_path)
            return True
        if self._signed_url(request_path, query):
            logger.debug("private_access_allowed reason=signed_url path=%s", request_path)
            return True
        return False

    def authorize(
        self, request_path: str, authorization: Optional[str], query: Mapping[str, Any]
    ) -> None:
        if not self.applies_to(request_path):
            return
        if not self.is_allowed(request_path, authorization, query):
            logger.info("private_access_denied path=%s", request_path)
            raise AccessDenied()
