from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from authpool.api.error_handling import register_exception_handlers, service_error_response
from authpool.api.routes import client_ip, router
from authpool.config import Settings
from authpool.logging import get_logger, set_correlation_id
from authpool.service.csrf import SAFE_METHODS
from authpool.service.errors import ServiceError
from authpool.service.guards import extract_bearer

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from authpool.service.runtime import get_runtime

    runtime = get_runtime()
    yield
    await runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="authpool", version=__version__, lifespan=lifespan)

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")
_RATE_EXEMPT_PATHS = frozenset({"/healthz"})


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    """Double-submit check for state-changing requests.

    Safe requests receive a fresh token in the CSRF response header. A
    request authenticated by a Bearer credential alone skips the check; once
    the refresh cookie rides along it is verified like any other.
    """
    from authpool.service.runtime import get_runtime

    runtime = get_runtime()
    guard = runtime.csrf
    settings = runtime.settings
    session_id = request.cookies.get(guard.cookie_name)
    issued_session = None
    if not session_id:
        session_id = issued_session = guard.new_session_id()

    bearer_only = bool(extract_bearer(request.headers.get("Authorization"))) and (
        settings.refresh_cookie_name not in request.cookies
    )
    if request.method.upper() in SAFE_METHODS or bearer_only:
        response = await call_next(request)
        if request.method.upper() in SAFE_METHODS:
            response.headers[guard.header_name] = guard.issue(session_id)
    else:
        form = None
        content_type = request.headers.get("content-type", "")
        if guard.enabled and content_type.startswith(_FORM_TYPES):
            form = await request.form()
        submitted = guard.extract(request.headers, request.query_params, form)
        try:
            # A session minted on this request has no token to match yet
            guard.verify(None if issued_session else session_id, submitted)
        except ServiceError as exc:
            response = service_error_response(exc)
        else:
            response = await call_next(request)

    if issued_session:
        response.set_cookie(
            guard.cookie_name,
            issued_session,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="strict",
            path="/",
        )
    return response


@app.middleware("http")
async def enforce_global_rate_limit(request: Request, call_next):
    if request.url.path in _RATE_EXEMPT_PATHS or request.method.upper() == "OPTIONS":
        return await call_next(request)
    from authpool.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        decision = await runtime.rate_limiter.hit("global", client_ip(request) or "unknown")
    except ServiceError as exc:
        return service_error_response(exc)
    response = await call_next(request)
    # Route-level scopes are narrower and keep their own headers
    if "X-RateLimit-Limit" not in response.headers:
        decision.apply_headers(response)
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs with the caller's X-Request-ID (or a fresh one) and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


# Outermost, so CSRF and rate-limit rejections carry CORS headers too
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", _settings.csrf_header_name, "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        _settings.csrf_header_name,
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)

register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    from authpool.service.runtime import get_runtime

    runtime = get_runtime()
    checks = await runtime.health()
    healthy = all(value != "unavailable" for value in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        },
    )
