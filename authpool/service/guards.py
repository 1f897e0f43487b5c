from __future__ import annotations

from typing import Iterable, Optional, Protocol

from authpool.logging import get_logger
from authpool.service.errors import (
    AuthenticationError,
    AuthInvalidError,
    AuthMissingError,
    AuthorizationError,
    AuthRevokedError,
    StoreUnavailableError,
)
from authpool.service.tokens import ACCESS, TokenIssuer
from authpool.storage.common import bounded_store_call
from authpool.storage.errors import StoreUnavailable
from authpool.storage.models import AccessTokenClaims, Identity

logger = get_logger(__name__)


class IdentityReader(Protocol):
    def get_identity(self, identity_id: str) -> Optional[Identity]: ...


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AccessGuard:
    """Verifies bearer access tokens against the live token version."""

    def __init__(self, issuer: TokenIssuer, identities: IdentityReader, *, timeout: float = 2.0) -> None:
        self.issuer = issuer
        self.identities = identities
        self.timeout = timeout

    async def authenticate(self, authorization: Optional[str]) -> AccessTokenClaims:
        try:
            return await self._authenticate(authorization)
        except AuthenticationError as exc:
            logger.info("access_denied", reason=exc.kind, detail=exc.message)
            raise

    async def _authenticate(self, authorization: Optional[str]) -> AccessTokenClaims:
        token = extract_bearer(authorization)
        if token is None:
            raise AuthMissingError("no token provided")
        payload = self.issuer.verify(token, ACCESS)
        try:
            claims = AccessTokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise AuthInvalidError("malformed token claims", detail={"reason": "payload"}) from exc
        try:
            # Always the stored value; a cached copy could hide a global logout
            identity = await bounded_store_call(
                "identity.get", self.identities.get_identity, claims.sub, timeout=self.timeout
            )
        except StoreUnavailable as exc:
            logger.error("access_identity_lookup_failed", identity_id=claims.sub, reason=exc.reason)
            raise StoreUnavailableError("identity store unavailable") from exc
        if identity is None or identity.token_version != claims.token_version:
            raise AuthRevokedError("token has been invalidated")
        return claims


class RoleGate:
    """Passes when the caller holds at least one of the required roles."""

    def __init__(self, required: Iterable[str]) -> None:
        self.required = frozenset(str(r).lower() for r in required)

    def allows(self, roles: Optional[Iterable[str]]) -> bool:
        held = {str(r).lower() for r in roles or ()}
        return bool(held & self.required)

    def check(self, roles: Optional[Iterable[str]], *, identity_id: Optional[str] = None) -> None:
        if not self.allows(roles):
            logger.warning(
                "role_gate_denied",
                identity_id=identity_id,
                required=sorted(self.required),
                roles=list(roles or ()),
            )
            raise AuthorizationError(
                "insufficient role", detail={"required": sorted(self.required)}
            )
