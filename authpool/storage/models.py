from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Identity:
    id: str
    provider_ids: Dict[str, str] = field(default_factory=dict)
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    token_version: int = 0
    roles: List[str] = field(default_factory=lambda: ["user"])
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        *,
        provider_ids: Optional[Dict[str, str]] = None,
        email: Optional[str] = None,
        name: Optional[str] = None,
        picture: Optional[str] = None,
        roles: Optional[List[str]] = None,
    ) -> "Identity":
        return cls(
            id=str(uuid.uuid4()),
            provider_ids=dict(provider_ids or {}),
            email=email,
            name=name,
            picture=picture,
            roles=list(roles) if roles else ["user"],
        )


@dataclass
class RefreshTokenRecord:
    jti: str
    owner_id: str
    token_hash: str
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.revoked_at is None and now < self.expires_at


@dataclass
class AccessTokenClaims:
    """Verified access-token payload attached to the request context."""

    sub: str
    token_version: int
    roles: List[str]
    exp: int
    iat: int
    jti: str
    name: Optional[str] = None
    picture: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AccessTokenClaims":
        return cls(
            sub=str(payload["sub"]),
            token_version=int(payload.get("token_version", 0)),
            roles=[str(r) for r in payload.get("roles") or []],
            exp=int(payload["exp"]),
            iat=int(payload.get("iat", 0)),
            jti=str(payload.get("jti", "")),
            name=payload.get("name"),
            picture=payload.get("picture"),
        )


@dataclass
class VerifiedProfile:
    """Output of an external provider integration after the handshake."""

    provider_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderCallback:
    provider: str
    profile: VerifiedProfile


@dataclass
class LockoutRecord:
    key: str
    failures: int = 0
    locked_until: Optional[float] = None  # epoch seconds
    last_failure_at: Optional[float] = None

    def is_locked(self, now: float) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def remaining_seconds(self, now: float) -> float:
        if self.locked_until is None:
            return 0.0
        return max(0.0, self.locked_until - now)


@dataclass
class WindowCount:
    count: int
    reset_seconds: float
