from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from authpool.logging import get_logger
from authpool.service.errors import AuthenticationError, NotFoundError, StoreUnavailableError
from authpool.service.refresh import RefreshStore
from authpool.service.tokens import REFRESH, TokenIssuer
from authpool.storage.common import bounded_store_call
from authpool.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class TokenVersionStore(Protocol):
    def increment_token_version(self, identity_id: str) -> Optional[int]: ...


@dataclass
class GlobalLogoutResult:
    identity_id: str
    token_version: int
    refresh_revoked: Optional[int]

    @property
    def complete(self) -> bool:
        return self.refresh_revoked is not None


class RevocationManager:
    """Single-session and global revocation."""

    def __init__(
        self,
        issuer: TokenIssuer,
        refresh_store: RefreshStore,
        identities: TokenVersionStore,
        *,
        timeout: float = 2.0,
    ) -> None:
        self.issuer = issuer
        self.refresh_store = refresh_store
        self.identities = identities
        self.timeout = timeout

    async def logout(self, refresh_token: Optional[str]) -> bool:
        """Best-effort revoke of the session's refresh record.

        Never raises: the caller tears down local session state whatever
        happens here. Returns True when a record was actually revoked.
        """
        if not refresh_token:
            return False
        try:
            payload = self.issuer.verify(refresh_token, REFRESH)
        except AuthenticationError as exc:
            logger.info("logout_token_ignored", reason=exc.detail.get("reason"))
            return False
        jti = payload.get("jti")
        if not jti:
            return False
        try:
            revoked = await self.refresh_store.revoke(jti)
        except StoreUnavailable as exc:
            logger.warning(
                "logout_revoke_failed", jti=jti, owner_id=payload.get("sub"), reason=exc.reason
            )
            return False
        logger.info("logout_revoked", jti=jti, owner_id=payload.get("sub"), revoked=revoked)
        return revoked

    async def logout_all(self, identity_id: str) -> GlobalLogoutResult:
        """Bump the token version, then revoke every refresh record.

        The version bump comes first: if the sweep fails afterwards, access
        tokens are already dead and stale refresh tokens are rejected at
        rotation by their embedded version.
        """
        try:
            version = await bounded_store_call(
                "identity.bump_version",
                self.identities.increment_token_version,
                identity_id,
                timeout=self.timeout,
            )
        except StoreUnavailable as exc:
            logger.error("global_logout_failed", identity_id=identity_id, reason=exc.reason)
            raise StoreUnavailableError("could not revoke sessions") from exc
        if version is None:
            raise NotFoundError("identity not found", detail={"identity_id": identity_id})

        try:
            revoked: Optional[int] = await self.refresh_store.revoke_all(identity_id)
        except StoreUnavailable as exc:
            logger.error(
                "global_logout_partial",
                identity_id=identity_id,
                token_version=version,
                reason=exc.reason,
            )
            revoked = None
        else:
            logger.info(
                "global_logout", identity_id=identity_id, token_version=version, refresh_revoked=revoked
            )
        return GlobalLogoutResult(identity_id=identity_id, token_version=version, refresh_revoked=revoked)
