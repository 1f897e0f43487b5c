from __future__ import annotations

import asyncio
import importlib
import threading
from typing import Dict, Optional, Union
from urllib.parse import urlparse, urlunparse

from authpool.config import get_settings, reset_settings_cache
from authpool.logging import get_logger
from authpool.service.auth import AuthService
from authpool.service.csrf import CsrfGuard
from authpool.service.guards import AccessGuard
from authpool.service.identity import IdentityResolver, IdentityTransform
from authpool.service.limits import BruteForceGuard, RateLimiter, SlowDown
from authpool.service.providers import ProviderGateway, RegisteredProfileGateway
from authpool.service.refresh import RefreshStore, RotationProtocol
from authpool.service.revocation import RevocationManager
from authpool.service.tokens import TokenIssuer
from authpool.storage.common import bounded_store_call
from authpool.storage.counters import MemoryCounterStore
from authpool.storage.errors import StoreUnavailable
from authpool.storage.memory import MemoryStore
from authpool.storage.postgres import PostgresStore
from authpool.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _load_object(path: str):
    """Import ``module:attr`` (or ``module.attr``) and return the attribute."""
    module_name, sep, attr = path.partition(":")
    if not sep:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise RuntimeError(f"invalid import path: {path!r}")
    return getattr(importlib.import_module(module_name), attr)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        *,
        transform: Optional[IdentityTransform] = None,
        gateway: Optional[ProviderGateway] = None,
    ):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=None if settings.test_mode else settings.shared_fs_root)
                if settings.use_memory_store
                else PostgresStore(settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                cache = RedisCache(settings.redis_url, socket_timeout=settings.store_timeout_seconds)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits and lockouts; start Redis or "
                    "set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and lockouts "
                    "are per-process only."
                ),
                mode=fallback_mode,
            )
        self.counters: Union[RedisCache, MemoryCounterStore] = self.cache or MemoryCounterStore()

        timeout = settings.store_timeout_seconds
        limits = settings.rate_limits
        self.issuer = TokenIssuer(settings)
        self.refresh_store = RefreshStore(self.store, timeout=timeout)
        if transform is None and settings.identity_transform:
            transform = _load_object(settings.identity_transform)
        self.resolver = IdentityResolver(self.store, transform=transform, timeout=timeout)
        self.rotation = RotationProtocol(self.issuer, self.refresh_store, self.store, timeout=timeout)
        self.revocation = RevocationManager(self.issuer, self.refresh_store, self.store, timeout=timeout)
        self.access_guard = AccessGuard(self.issuer, self.store, timeout=timeout)
        self.csrf = CsrfGuard(
            settings.jwt_secret,
            enabled=settings.csrf_enabled,
            header_name=settings.csrf_header_name,
            cookie_name=settings.csrf_cookie_name,
        )
        if not settings.csrf_enabled:
            logger.warning("csrf_protection_disabled")
        self.rate_limiter = RateLimiter(
            self.counters, {"global": limits.global_, "auth": limits.auth}
        )
        self.slowdown = SlowDown(self.counters, limits.slowdown)
        self.bruteforce = BruteForceGuard(
            self.counters,
            threshold=settings.bruteforce_threshold,
            lock_seconds=settings.bruteforce_lock_minutes * 60,
        )
        if gateway is None and settings.provider_gateway:
            gateway = _load_object(settings.provider_gateway)(settings)
        self.gateway: ProviderGateway = gateway or RegisteredProfileGateway(settings.oauth_providers)
        self.auth = AuthService(
            self.store,
            resolver=self.resolver,
            rotation=self.rotation,
            revocation=self.revocation,
            access_guard=self.access_guard,
            bruteforce=self.bruteforce,
            gateway=self.gateway,
            timeout=timeout,
        )

        logger.info(
            "runtime_initialized",
            store_type="memory" if settings.use_memory_store else "postgres",
            redis_enabled=self.cache is not None,
            csrf_enabled=settings.csrf_enabled,
            gateway=type(self.gateway).__name__,
            custom_transform=transform is not None,
        )

    async def health(self) -> Dict[str, str]:
        """Probe backing stores with bounded timeouts."""
        checks: Dict[str, str] = {}
        probe = getattr(self.store, "verify_connection", None)
        if probe is None:
            checks["store"] = "ok"
        else:
            try:
                await bounded_store_call(
                    "store.ping", probe, timeout=self.settings.store_timeout_seconds
                )
                checks["store"] = "ok"
            except StoreUnavailable as exc:
                logger.warning("health_store_failed", reason=exc.reason)
                checks["store"] = "unavailable"
        if self.cache is None:
            checks["redis"] = "disabled"
        else:
            try:
                await asyncio.wait_for(
                    self.cache.client.ping(), timeout=self.settings.store_timeout_seconds
                )
                checks["redis"] = "ok"
            except Exception as exc:
                logger.warning("health_redis_failed", error=str(exc))
                checks["redis"] = "unavailable"
        return checks

    async def close(self) -> None:
        await self.counters.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the first check skips the lock once the
    runtime exists, the second prevents two threads building it at once.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_quietly(previous: Runtime) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    try:
        if loop is not None:
            loop.create_task(previous.close())
        else:
            asyncio.run(previous.close())
    except Exception as exc:
        # Connections may already be bound to a closed loop
        logger.warning("runtime_close_failed", error=str(exc))


def configure_runtime(
    *,
    transform: Optional[IdentityTransform] = None,
    gateway: Optional[ProviderGateway] = None,
) -> Runtime:
    """Build the runtime singleton with injected collaborators.

    Call before the app serves requests; a runtime that already exists is
    closed and replaced.
    """
    global runtime

    with _runtime_lock:
        previous = runtime
        runtime = Runtime(transform=transform, gateway=gateway)
    if previous is not None:
        _close_quietly(previous)
    return runtime


def reset_runtime_for_tests(
    *,
    transform: Optional[IdentityTransform] = None,
    gateway: Optional[ProviderGateway] = None,
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            _close_quietly(runtime)
        runtime = Runtime(transform=transform, gateway=gateway)
        return runtime
