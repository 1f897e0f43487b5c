from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authpool.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class RateScope(BaseModel):
    """Hard request ceiling for one limiter scope."""

    window_ms: int
    max: int


class SlowdownScope(BaseModel):
    """Progressive delay applied before the hard ceiling triggers."""

    window_ms: int
    delay_after: int
    delay_ms: int
    max_delay_ms: int


class RateLimitConfig(BaseModel):
    global_: RateScope = Field(alias="global")
    auth: RateScope
    slowdown: SlowdownScope

    model_config = ConfigDict(populate_by_name=True)


class Settings(BaseModel):
    """Runtime settings for the gateway core."""

    environment: str = env_field(
        "production",
        "ENVIRONMENT",
        description="development disables the Secure flag on auth cookies",
    )
    database_url: str | None = env_field(None, "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authpool", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets.",
    )
    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authpool", "JWT_ISSUER")
    jwt_audience: str = env_field("authpool-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    store_timeout_seconds: float = env_field(
        2.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for a single refresh/identity store call",
    )
    # Cookies and CSRF
    auth_path_prefix: str = env_field("/v1/auth", "AUTH_PATH_PREFIX")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    csrf_enabled: bool = env_field(True, "CSRF_ENABLED")
    csrf_header_name: str = env_field("x-csrf-token", "CSRF_HEADER_NAME")
    csrf_cookie_name: str = env_field("csrf_session", "CSRF_COOKIE_NAME")
    # Rate limits
    global_rate_window_ms: int = env_field(15 * 60 * 1000, "GLOBAL_RATE_WINDOW_MS")
    global_rate_max: int = env_field(300, "GLOBAL_RATE_MAX")
    auth_rate_window_ms: int = env_field(60 * 1000, "AUTH_RATE_WINDOW_MS")
    auth_rate_max: int = env_field(5, "AUTH_RATE_MAX")
    slowdown_window_ms: int = env_field(60 * 1000, "SLOWDOWN_WINDOW_MS")
    slowdown_delay_after: int = env_field(3, "SLOWDOWN_DELAY_AFTER")
    slowdown_delay_ms: int = env_field(250, "SLOWDOWN_DELAY_MS")
    slowdown_max_delay_ms: int = env_field(5000, "SLOWDOWN_MAX_DELAY_MS")
    # Brute-force lockout
    bruteforce_threshold: int = env_field(5, "BRUTEFORCE_THRESHOLD")
    bruteforce_lock_minutes: int = env_field(15, "BRUTEFORCE_LOCK_MINUTES")
    # Providers whose callbacks share the issuance path
    oauth_providers: list[str] = env_field(
        ["google"],
        "OAUTH_PROVIDERS",
        description="Comma separated provider tags accepted on the callback route",
    )
    identity_transform: str | None = env_field(
        None,
        "IDENTITY_TRANSFORM",
        description="module:attr of a transform(profile, provider) applied before identity upsert",
    )
    provider_gateway: str | None = env_field(
        None,
        "PROVIDER_GATEWAY",
        description="module:attr of a factory(settings) returning the provider gateway",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("oauth_providers", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("oauth_providers")
    @classmethod
    def _normalize_providers(cls, value: list[str]) -> list[str]:
        return [provider.lower() for provider in value]

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return (value or "production").strip().lower()

    @field_validator(
        "redis_url", "database_url", "identity_transform", "provider_gateway", mode="before"
    )
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authpool"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def cookie_secure(self) -> bool:
        return not self.is_development

    @property
    def rate_limits(self) -> RateLimitConfig:
        return RateLimitConfig(
            global_=RateScope(window_ms=self.global_rate_window_ms, max=self.global_rate_max),
            auth=RateScope(window_ms=self.auth_rate_window_ms, max=self.auth_rate_max),
            slowdown=SlowdownScope(
                window_ms=self.slowdown_window_ms,
                delay_after=self.slowdown_delay_after,
                delay_ms=self.slowdown_delay_ms,
                max_delay_ms=self.slowdown_max_delay_ms,
            ),
        )

    def missing_required(self) -> list[str]:
        """Return the env vars a production deployment still needs."""

        missing: list[str] = []
        if not os.getenv("JWT_SECRET"):
            missing.append("JWT_SECRET")
        if not self.use_memory_store and not self.database_url:
            missing.append("DATABASE_URL")
        if not self.redis_url and not (self.test_mode or self.allow_redis_fallback_dev):
            missing.append("REDIS_URL")
        if not self.oauth_providers:
            missing.append("OAUTH_PROVIDERS")
        return missing


def env_checklist() -> list[str]:
    return [
        "JWT_SECRET",
        "DATABASE_URL (unless USE_MEMORY_STORE=true)",
        "REDIS_URL (unless TEST_MODE or ALLOW_REDIS_FALLBACK_DEV)",
        "OAUTH_PROVIDERS",
        "(optional) ENVIRONMENT",
        "(optional) CORS_ALLOW_ORIGINS",
        "(optional) IDENTITY_TRANSFORM",
        "(optional) PROVIDER_GATEWAY",
    ]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
