from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from authpool.logging import get_logger
from authpool.service.errors import StoreUnavailableError, ValidationError
from authpool.storage.common import bounded_store_call
from authpool.storage.errors import ConstraintViolation, StoreUnavailable
from authpool.storage.models import Identity, ProviderCallback, VerifiedProfile

logger = get_logger(__name__)

Candidate = Dict[str, Any]
IdentityTransform = Callable[
    [VerifiedProfile, str], Union[Candidate, Awaitable[Candidate]]
]

_MERGE_FIELDS = ("email", "name", "picture", "roles")


class IdentityStore(Protocol):
    def create_identity(self, identity: Identity) -> Identity: ...

    def save_identity(self, identity: Identity) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_provider(self, provider: str, provider_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...


def default_transform(profile: VerifiedProfile, provider: str) -> Candidate:
    """Map a verified profile onto identity fields, skipping empty values."""
    candidate: Candidate = {"provider_ids": {provider: profile.provider_id}}
    if profile.email:
        candidate["email"] = profile.email.strip()
    if profile.name:
        candidate["name"] = profile.name
    if profile.picture:
        candidate["picture"] = profile.picture
    return candidate


def validate_candidate(candidate: Any) -> List[str]:
    """Return the problems with a transform's output; empty means usable."""
    if not isinstance(candidate, dict):
        return ["Transformed identity must be a mapping."]
    errors: List[str] = []
    provider_ids = candidate.get("provider_ids")
    if provider_ids is not None and not isinstance(provider_ids, dict):
        errors.append("Field 'provider_ids' must be a mapping of provider to id.")
        provider_ids = {}
    has_provider_id = any(
        isinstance(value, str) and value.strip() for value in (provider_ids or {}).values()
    )
    email = candidate.get("email")
    has_email = isinstance(email, str) and email.strip() != ""
    if not has_provider_id and not has_email:
        errors.append(
            "Transformed identity must include at least one provider id or a valid email."
        )
    for field in ("name", "picture"):
        value = candidate.get(field)
        if value is not None and not isinstance(value, str):
            errors.append(f"Field '{field}' must be a string if provided.")
    if email is not None and not isinstance(email, str):
        errors.append("Field 'email' must be a string if provided.")
    roles = candidate.get("roles")
    if roles is not None and (
        not isinstance(roles, list) or not all(isinstance(r, str) for r in roles)
    ):
        errors.append("Field 'roles' must be an array of strings if provided.")
    return errors


class IdentityResolver:
    """Upserts a durable identity from a verified provider profile.

    Lookup order is provider id, then email. A miss creates the identity
    with the default role set; a hit merges every non-null candidate field
    onto the stored record.
    """

    def __init__(
        self,
        store: IdentityStore,
        *,
        transform: Optional[IdentityTransform] = None,
        timeout: float = 2.0,
    ) -> None:
        self.store = store
        self.transform = transform or default_transform
        self.timeout = timeout

    async def resolve_callback(self, callback: ProviderCallback) -> Identity:
        return await self.resolve(callback.provider, callback.profile)

    async def resolve(self, provider: str, profile: VerifiedProfile) -> Identity:
        candidate = await self._candidate(provider, profile)
        try:
            return await self._upsert(candidate)
        except ConstraintViolation:
            # Lost a create race against a concurrent first login
            logger.info("identity_create_conflict_retry", provider=provider)
            return await self._upsert(candidate)

    async def _candidate(self, provider: str, profile: VerifiedProfile) -> Candidate:
        try:
            candidate = self.transform(profile, provider)
            if inspect.isawaitable(candidate):
                candidate = await candidate
        except ValidationError:
            raise
        except Exception as exc:
            logger.warning(
                "identity_transform_failed",
                provider=provider,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ValidationError(
                "identity transform failed", detail={"errors": [str(exc)]}
            ) from exc
        problems = validate_candidate(candidate)
        if problems:
            logger.warning("identity_transform_invalid", provider=provider, errors=problems)
            raise ValidationError("invalid identity candidate", detail={"errors": problems})
        return candidate

    async def _call(self, operation: str, func, *args):
        try:
            return await bounded_store_call(operation, func, *args, timeout=self.timeout)
        except StoreUnavailable as exc:
            logger.error("identity_store_unavailable", operation=operation, reason=exc.reason)
            raise StoreUnavailableError("identity store unavailable") from exc

    async def _lookup(self, candidate: Candidate) -> Optional[Identity]:
        for provider, provider_id in (candidate.get("provider_ids") or {}).items():
            if not provider_id:
                continue
            found = await self._call(
                "identity.by_provider", self.store.get_identity_by_provider, provider, provider_id
            )
            if found:
                return found
        email = candidate.get("email")
        if email:
            return await self._call("identity.by_email", self.store.get_identity_by_email, email)
        return None

    async def _upsert(self, candidate: Candidate) -> Identity:
        provider_ids = {
            k: v for k, v in (candidate.get("provider_ids") or {}).items() if v
        }
        existing = await self._lookup(candidate)
        if existing is None:
            identity = Identity.new(
                provider_ids=provider_ids,
                email=candidate.get("email"),
                name=candidate.get("name"),
                picture=candidate.get("picture"),
                roles=candidate.get("roles"),
            )
            created = await self._call("identity.create", self.store.create_identity, identity)
            logger.info("identity_created", identity_id=created.id, providers=sorted(provider_ids))
            return created

        changed = False
        for provider, provider_id in provider_ids.items():
            if existing.provider_ids.get(provider) != provider_id:
                existing.provider_ids[provider] = provider_id
                changed = True
        for field in _MERGE_FIELDS:
            value = candidate.get(field)
            if value is not None and getattr(existing, field) != value:
                setattr(existing, field, list(value) if field == "roles" else value)
                changed = True
        if not changed:
            return existing
        saved = await self._call("identity.save", self.store.save_identity, existing)
        logger.info("identity_merged", identity_id=saved.id)
        return saved
