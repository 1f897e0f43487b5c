from __future__ import annotations

import asyncio
import hmac
from datetime import datetime
from typing import Callable, Optional, Protocol

from authpool.logging import get_logger
from authpool.service.errors import (
    AuthInvalidError,
    AuthRevokedError,
    StoreUnavailableError,
)
from authpool.service.tokens import REFRESH, IssuedTokens, TokenIssuer, hash_token
from authpool.storage.common import bounded_store_call
from authpool.storage.errors import ConstraintViolation, StoreUnavailable
from authpool.storage.models import Identity, RefreshTokenRecord, utcnow

logger = get_logger(__name__)


class RefreshRecordBackend(Protocol):
    def save_refresh_record(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_record(self, jti: str) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_record(self, jti: str, revoked_at: Optional[datetime] = None) -> bool: ...

    def revoke_refresh_records_for_owner(
        self, owner_id: str, revoked_at: Optional[datetime] = None
    ) -> int: ...


class IdentityLookup(Protocol):
    def get_identity(self, identity_id: str) -> Optional[Identity]: ...


class RefreshStore:
    """Hashed refresh-token records with bounded store calls."""

    def __init__(
        self,
        backend: RefreshRecordBackend,
        *,
        timeout: float = 2.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.backend = backend
        self.timeout = timeout
        self._clock = clock

    async def persist(
        self, owner_id: str, raw_token: str, jti: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        record = RefreshTokenRecord(
            jti=jti,
            owner_id=owner_id,
            token_hash=hash_token(raw_token),
            expires_at=expires_at,
            created_at=self._clock(),
        )
        return await bounded_store_call(
            "refresh.persist", self.backend.save_refresh_record, record, timeout=self.timeout
        )

    async def get(self, jti: str) -> Optional[RefreshTokenRecord]:
        return await bounded_store_call(
            "refresh.get", self.backend.get_refresh_record, jti, timeout=self.timeout
        )

    async def is_valid(self, raw_token: str, jti: str) -> bool:
        """True iff an unrevoked, unexpired record for ``jti`` matches the token.

        Store failures and timeouts count as invalid.
        """
        try:
            record = await self.get(jti)
        except StoreUnavailable as exc:
            logger.warning(
                "refresh_validity_check_failed",
                jti=jti,
                operation=exc.operation,
                reason=exc.reason,
            )
            return False
        if record is None or not record.is_active(self._clock()):
            return False
        return hmac.compare_digest(record.token_hash, hash_token(raw_token))

    async def revoke(self, jti: str) -> bool:
        """Idempotent revoke; True only when this call flipped the record."""
        return await bounded_store_call(
            "refresh.revoke",
            self.backend.revoke_refresh_record,
            jti,
            self._clock(),
            timeout=self.timeout,
        )

    async def revoke_all(self, owner_id: str) -> int:
        return await bounded_store_call(
            "refresh.revoke_all",
            self.backend.revoke_refresh_records_for_owner,
            owner_id,
            self._clock(),
            timeout=self.timeout,
        )


def _consume_result(task: "asyncio.Future") -> None:
    # Shielded work may finish after its caller went away
    if not task.cancelled():
        task.exception()


class RotationProtocol:
    """Single-use refresh rotation: verify, check store, revoke old, issue new."""

    def __init__(
        self,
        issuer: TokenIssuer,
        refresh_store: RefreshStore,
        identities: IdentityLookup,
        *,
        timeout: float = 2.0,
    ) -> None:
        self.issuer = issuer
        self.refresh_store = refresh_store
        self.identities = identities
        self.timeout = timeout

    async def issue(self, identity: Identity) -> IssuedTokens:
        """Mint a fresh pair for ``identity`` and persist its refresh record."""
        tokens = self.issuer.issue_pair(identity)
        try:
            await self.refresh_store.persist(
                identity.id,
                tokens.refresh_token,
                tokens.refresh_jti,
                tokens.refresh_expires_at,
            )
        except (StoreUnavailable, ConstraintViolation) as exc:
            logger.error(
                "refresh_persist_failed",
                owner_id=identity.id,
                jti=tokens.refresh_jti,
                error=str(exc),
            )
            raise StoreUnavailableError("could not persist session") from exc
        return tokens

    async def rotate(self, raw_token: str) -> tuple[Identity, IssuedTokens]:
        payload = self.issuer.verify(raw_token, REFRESH)
        jti = payload.get("jti")
        if not jti or not isinstance(jti, str):
            raise AuthInvalidError("malformed refresh token", detail={"reason": "jti"})

        if not await self.refresh_store.is_valid(raw_token, jti):
            await self._reject(jti, payload)

        identity = await self._load_identity(str(payload["sub"]))
        if identity is None:
            raise AuthRevokedError("identity no longer exists")
        if payload.get("token_version") != identity.token_version:
            logger.warning(
                "refresh_token_version_stale",
                jti=jti,
                owner_id=identity.id,
                token_version=payload.get("token_version"),
                live_version=identity.token_version,
            )
            raise AuthRevokedError("refresh token predates a global logout")

        # The revoke/persist pair must not be abandoned halfway by a disconnect
        mutation = asyncio.ensure_future(self._swap(jti, identity))
        mutation.add_done_callback(_consume_result)
        tokens = await asyncio.shield(mutation)
        logger.info("refresh_rotated", owner_id=identity.id, old_jti=jti, new_jti=tokens.refresh_jti)
        return identity, tokens

    async def _reject(self, jti: str, payload: dict) -> None:
        try:
            record = await self.refresh_store.get(jti)
        except StoreUnavailable:
            record = None
        if record is not None and record.revoked_at is not None:
            logger.warning(
                "refresh_token_reuse_detected",
                jti=jti,
                owner_id=record.owner_id,
                revoked_at=record.revoked_at.isoformat(),
            )
            raise AuthRevokedError("refresh token already used")
        logger.info("refresh_token_rejected", jti=jti, owner_id=payload.get("sub"))
        raise AuthInvalidError("refresh token not recognised")

    async def _load_identity(self, identity_id: str) -> Optional[Identity]:
        try:
            return await bounded_store_call(
                "identity.get", self.identities.get_identity, identity_id, timeout=self.timeout
            )
        except StoreUnavailable as exc:
            logger.warning("refresh_identity_lookup_failed", owner_id=identity_id, reason=exc.reason)
            raise StoreUnavailableError("identity store unavailable") from exc

    async def _swap(self, jti: str, identity: Identity) -> IssuedTokens:
        try:
            revoked = await self.refresh_store.revoke(jti)
        except StoreUnavailable as exc:
            logger.warning("refresh_rotation_failed", stage="revoke", jti=jti, reason=exc.reason)
            raise StoreUnavailableError("refresh store unavailable") from exc
        if not revoked:
            # Another request rotated this jti first
            logger.warning(
                "refresh_token_reuse_detected",
                jti=jti,
                owner_id=identity.id,
                concurrent=True,
            )
            raise AuthRevokedError("refresh token already used")

        tokens = self.issuer.issue_pair(identity)
        try:
            await self.refresh_store.persist(
                identity.id,
                tokens.refresh_token,
                tokens.refresh_jti,
                tokens.refresh_expires_at,
            )
        except (StoreUnavailable, ConstraintViolation) as exc:
            logger.error(
                "refresh_rotation_incomplete",
                owner_id=identity.id,
                revoked_jti=jti,
                new_jti=tokens.refresh_jti,
                error=str(exc),
            )
            raise StoreUnavailableError("refresh rotation could not complete") from exc
        return tokens
