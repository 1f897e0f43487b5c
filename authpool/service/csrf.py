from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Mapping, Optional

from authpool.logging import get_logger
from authpool.service.errors import CsrfRejectedError

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
QUERY_PARAM = "_csrf"


class CsrfGuard:
    """Double-submit tokens bound to an HTTP-only session cookie.

    A token is ``nonce.mac`` where ``mac = HMAC(secret, session_id:nonce)``.
    Any number of tokens may be outstanding for one session; each verifies
    independently so that concurrent tabs keep working.
    """

    def __init__(
        self,
        secret: str,
        *,
        enabled: bool = True,
        header_name: str = "x-csrf-token",
        cookie_name: str = "csrf_session",
    ) -> None:
        # Separate key so a CSRF mac can never double as a token signature
        self._key = hmac.new(secret.encode(), b"authpool-csrf", hashlib.sha256).digest()
        self.enabled = enabled
        self.header_name = header_name.lower()
        self.cookie_name = cookie_name

    @staticmethod
    def new_session_id() -> str:
        return secrets.token_urlsafe(24)

    def _mac(self, session_id: str, nonce: str) -> str:
        msg = f"{session_id}:{nonce}".encode("utf-8", "surrogatepass")
        return hmac.new(self._key, msg, hashlib.sha256).hexdigest()

    def issue(self, session_id: str) -> str:
        nonce = secrets.token_urlsafe(16)
        return f"{nonce}.{self._mac(session_id, nonce)}"

    def extract(
        self,
        headers: Mapping[str, str],
        query: Optional[Mapping[str, str]] = None,
        form: Optional[Mapping[str, str]] = None,
    ) -> Optional[str]:
        for source, name in ((headers, self.header_name), (query, QUERY_PARAM), (form, QUERY_PARAM)):
            if not source:
                continue
            value = source.get(name)
            if isinstance(value, str) and value:
                return value
        return None

    def is_valid(self, session_id: Optional[str], submitted: Optional[str]) -> bool:
        if not session_id or not submitted:
            return False
        nonce, sep, mac = submitted.partition(".")
        if not sep or not nonce or not mac:
            return False
        expected = self._mac(session_id, nonce).encode()
        return hmac.compare_digest(mac.encode("utf-8", "surrogatepass"), expected)

    def verify(self, session_id: Optional[str], submitted: Optional[str]) -> None:
        if not self.enabled:
            return
        if self.is_valid(session_id, submitted):
            return
        reason = "missing_session" if not session_id else "missing_token" if not submitted else "mismatch"
        logger.warning("csrf_rejected", reason=reason)
        raise CsrfRejectedError("missing or invalid CSRF token", detail={"reason": reason})
