from __future__ import annotations

import threading
from typing import Any, Dict, Iterable, Optional, Protocol, Tuple, Union

from authpool.logging import get_logger
from authpool.storage.models import ProviderCallback, VerifiedProfile

logger = get_logger(__name__)


class ProviderGateway(Protocol):
    """Completes the provider handshake and hands back a verified profile."""

    def supports(self, provider: str) -> bool: ...

    async def exchange(self, provider: str, code: str, state: Optional[str]) -> Optional[ProviderCallback]: ...


def profile_from_userinfo(provider: str, userinfo: Dict[str, Any]) -> VerifiedProfile:
    """Parse user info from an OAuth provider into a verified profile."""
    if provider == "google":
        uid, email = userinfo.get("id") or userinfo.get("sub"), userinfo.get("email")
        name, picture = userinfo.get("name"), userinfo.get("picture")
    elif provider == "github":
        uid, email = userinfo.get("id"), userinfo.get("email")
        name, picture = userinfo.get("name") or userinfo.get("login"), userinfo.get("avatar_url")
    elif provider == "microsoft":
        uid = userinfo.get("id")
        email = userinfo.get("mail") or userinfo.get("userPrincipalName")
        # Photos need a separate Graph API call
        name, picture = userinfo.get("displayName"), None
    else:
        uid, email = userinfo.get("id") or userinfo.get("sub"), userinfo.get("email")
        name, picture = userinfo.get("name"), userinfo.get("picture")
    return VerifiedProfile(
        provider_id=str(uid) if uid is not None else "",
        email=email,
        name=name,
        picture=picture,
        raw=dict(userinfo),
    )


class RegisteredProfileGateway:
    """Serves pre-registered code exchanges for offline flows and tests.

    Each registered code is single use, like a real authorization code.
    """

    def __init__(self, providers: Iterable[str]) -> None:
        self.providers = frozenset(p.lower() for p in providers)
        self._codes: Dict[Tuple[str, str], VerifiedProfile] = {}
        self._lock = threading.Lock()

    def supports(self, provider: str) -> bool:
        return provider.lower() in self.providers

    def register(
        self, provider: str, code: str, profile: Union[VerifiedProfile, Dict[str, Any]]
    ) -> None:
        """Record an exchanged OAuth payload for testing or offline flows."""
        provider = provider.lower()
        if not isinstance(profile, VerifiedProfile):
            profile = profile_from_userinfo(provider, profile)
        with self._lock:
            self._codes[(provider, code)] = profile

    async def exchange(self, provider: str, code: str, state: Optional[str]) -> Optional[ProviderCallback]:
        provider = provider.lower()
        with self._lock:
            profile = self._codes.pop((provider, code), None)
        if profile is None:
            logger.info("oauth_code_unknown", provider=provider)
            return None
        return ProviderCallback(provider=provider, profile=profile)
