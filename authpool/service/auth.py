from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

from authpool.logging import get_logger
from authpool.service.errors import (
    AuthenticationError,
    AuthInvalidError,
    AuthMissingError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from authpool.service.guards import AccessGuard, RoleGate
from authpool.service.identity import IdentityResolver
from authpool.service.limits import BruteForceGuard
from authpool.service.providers import ProviderGateway
from authpool.service.refresh import RotationProtocol
from authpool.service.revocation import GlobalLogoutResult, RevocationManager
from authpool.service.tokens import REFRESH, IssuedTokens
from authpool.storage.common import bounded_store_call
from authpool.storage.errors import StoreUnavailable
from authpool.storage.models import AccessTokenClaims, Identity, ProviderCallback


class AuthService:
    """Login, refresh and revocation flows over the credential components."""

    def __init__(
        self,
        store,
        *,
        resolver: IdentityResolver,
        rotation: RotationProtocol,
        revocation: RevocationManager,
        access_guard: AccessGuard,
        bruteforce: BruteForceGuard,
        gateway: ProviderGateway,
        timeout: float = 2.0,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.rotation = rotation
        self.revocation = revocation
        self.access_guard = access_guard
        self.bruteforce = bruteforce
        self.gateway = gateway
        self.timeout = timeout
        self.logger = get_logger(__name__)

    async def login(self, callback: ProviderCallback) -> Tuple[Identity, IssuedTokens]:
        """Resolve the identity behind a verified callback and open a session."""
        identity = await self.resolver.resolve_callback(callback)
        tokens = await self.rotation.issue(identity)
        self.logger.info("login_succeeded", identity_id=identity.id, provider=callback.provider)
        return identity, tokens

    async def complete_oauth(
        self, provider: str, code: str, state: Optional[str], *, ip: Optional[str] = None
    ) -> Tuple[Identity, IssuedTokens]:
        provider = provider.lower()
        if not self.gateway.supports(provider):
            raise NotFoundError("unknown provider", detail={"provider": provider})
        await self.bruteforce.check(ip, provider)
        callback = await self.gateway.exchange(provider, code, state)
        if callback is None:
            await self.bruteforce.record_failure(ip, provider)
            self.logger.warning("oauth_exchange_failed", provider=provider, ip=ip)
            raise AuthInvalidError("authentication failed", detail={"reason": "exchange"})
        await self.bruteforce.record_success(ip, provider)
        return await self.login(callback)

    async def refresh(
        self, refresh_token: Optional[str], *, ip: Optional[str] = None
    ) -> Tuple[Identity, IssuedTokens]:
        if not refresh_token:
            raise AuthMissingError("no refresh token provided")
        return await self.bruteforce.attempt(
            ip,
            self._refresh_hint(refresh_token),
            lambda: self.rotation.rotate(refresh_token),
            failure_types=(AuthenticationError,),
        )

    def _refresh_hint(self, refresh_token: str) -> str:
        """Lockout hint: the token's owner, or a shared bucket for forgeries."""
        try:
            payload = self.rotation.issuer.verify(refresh_token, REFRESH)
        except AuthenticationError:
            return "refresh"
        return f"refresh:{payload['sub']}"

    async def logout(self, refresh_token: Optional[str]) -> bool:
        return await self.revocation.logout(refresh_token)

    async def logout_all(self, identity_id: str) -> GlobalLogoutResult:
        return await self.revocation.logout_all(identity_id)

    async def authenticate(self, authorization: Optional[str]) -> AccessTokenClaims:
        return await self.access_guard.authenticate(authorization)

    def authorize(self, claims: AccessTokenClaims, required: Iterable[str]) -> AccessTokenClaims:
        RoleGate(required).check(claims.roles, identity_id=claims.sub)
        return claims

    async def _store_call(self, operation: str, func, *args):
        try:
            return await bounded_store_call(operation, func, *args, timeout=self.timeout)
        except StoreUnavailable as exc:
            self.logger.error("identity_store_failed", operation=operation, reason=exc.reason)
            raise StoreUnavailableError("identity store unavailable") from exc

    async def get_identity(self, identity_id: str) -> Identity:
        identity = await self._store_call("identity.get", self.store.get_identity, identity_id)
        if identity is None:
            raise NotFoundError("identity not found", detail={"identity_id": identity_id})
        return identity

    async def grant_roles(self, identity_id: str, roles: List[str]) -> Identity:
        """Replace the role set; takes effect with the next issued access token."""
        cleaned = sorted({r.strip().lower() for r in roles if isinstance(r, str) and r.strip()})
        if not cleaned:
            raise ValidationError("at least one role is required")
        identity = await self._store_call(
            "identity.set_roles", self.store.set_identity_roles, identity_id, cleaned
        )
        if identity is None:
            raise NotFoundError("identity not found", detail={"identity_id": identity_id})
        self.logger.info("identity_roles_updated", identity_id=identity_id, roles=cleaned)
        return identity
