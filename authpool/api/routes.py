from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from authpool.api.error_handling import error_response
from authpool.api.schemas import (
    ClaimsResponse,
    Envelope,
    GlobalLogoutResponse,
    IdentityResponse,
    LogoutResponse,
    RoleGrantRequest,
    TokenRefreshRequest,
    TokenResponse,
)
from authpool.config import Settings
from authpool.logging import get_logger
from authpool.service.runtime import get_runtime
from authpool.service.tokens import IssuedTokens
from authpool.storage.models import AccessTokenClaims, Identity

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> AccessTokenClaims:
    runtime = get_runtime()
    claims = await runtime.auth.authenticate(authorization)
    request.state.principal = claims
    return claims


def require_roles(*roles: str):
    """Dependency factory: the caller must hold at least one of ``roles``."""

    async def _dependency(
        principal: AccessTokenClaims = Depends(get_principal),
    ) -> AccessTokenClaims:
        return get_runtime().auth.authorize(principal, roles)

    return _dependency


get_admin = require_roles("admin")


async def auth_throttle(request: Request, response: Response) -> None:
    """Auth-scope ceiling plus progressive slowdown per client address."""
    runtime = get_runtime()
    key = client_ip(request) or "unknown"
    decision = await runtime.rate_limiter.hit("auth", key)
    decision.apply_headers(response)
    await runtime.slowdown.throttle(key)


def _apply_refresh_cookie(response: Response, tokens: IssuedTokens, settings: Settings) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        path=settings.auth_path_prefix,
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.auth_path_prefix,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _token_response(identity: Identity, tokens: IssuedTokens) -> TokenResponse:
    return TokenResponse(
        identity_id=identity.id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
        roles=list(identity.roles),
    )


def _identity_response(identity: Identity) -> IdentityResponse:
    return IdentityResponse(
        id=identity.id,
        email=identity.email,
        name=identity.name,
        picture=identity.picture,
        roles=list(identity.roles),
        providers=dict(identity.provider_ids),
        token_version=identity.token_version,
        created_at=identity.created_at,
        updated_at=identity.updated_at,
    )


def _refresh_token_from(request: Request, body: Optional[TokenRefreshRequest]) -> Optional[str]:
    if body is not None and body.refresh_token:
        return body.refresh_token
    return request.cookies.get(get_runtime().settings.refresh_cookie_name)


@router.get("/auth/failure", response_model=Envelope, tags=["auth"])
async def auth_failure():
    """Landing route for provider flows that end without a verified profile."""
    return error_response(401, "authentication failed", code="unauthorized")


@router.get(
    "/auth/{provider}/callback",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(auth_throttle)],
)
async def oauth_callback(
    request: Request,
    response: Response,
    provider: str = Path(..., max_length=64, description="OAuth provider"),
    code: str = Query(..., max_length=512, description="Authorization code from the provider"),
    state: Optional[str] = Query(None, max_length=128),
):
    """Complete a provider login and open a session."""
    runtime = get_runtime()
    identity, tokens = await runtime.auth.complete_oauth(
        provider, code, state, ip=client_ip(request)
    )
    _apply_refresh_cookie(response, tokens, runtime.settings)
    return Envelope(status="ok", data=_token_response(identity, tokens))


@router.post(
    "/auth/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(auth_throttle)],
)
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    runtime = get_runtime()
    identity, tokens = await runtime.auth.refresh(
        _refresh_token_from(request, body), ip=client_ip(request)
    )
    _apply_refresh_cookie(response, tokens, runtime.settings)
    return Envelope(status="ok", data=_token_response(identity, tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    runtime = get_runtime()
    revoked = await runtime.auth.logout(_refresh_token_from(request, body))
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    response: Response,
    principal: AccessTokenClaims = Depends(get_principal),
):
    runtime = get_runtime()
    result = await runtime.auth.logout_all(principal.sub)
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(
        status="ok",
        data=GlobalLogoutResponse(
            identity_id=result.identity_id,
            token_version=result.token_version,
            refresh_revoked=result.refresh_revoked,
            complete=result.complete,
        ),
    )


@router.get("/auth/protected", response_model=Envelope, tags=["auth"])
async def protected(principal: AccessTokenClaims = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=ClaimsResponse(
            sub=principal.sub,
            roles=principal.roles,
            token_version=principal.token_version,
            exp=principal.exp,
            name=principal.name,
            picture=principal.picture,
        ),
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_identity(principal: AccessTokenClaims = Depends(get_principal)):
    runtime = get_runtime()
    identity = await runtime.auth.get_identity(principal.sub)
    return Envelope(status="ok", data=_identity_response(identity))


@router.get("/admin/identities/{identity_id}", response_model=Envelope, tags=["admin"])
async def admin_get_identity(
    identity_id: str = Path(..., max_length=64),
    principal: AccessTokenClaims = Depends(get_admin),
):
    runtime = get_runtime()
    identity = await runtime.auth.get_identity(identity_id)
    return Envelope(status="ok", data=_identity_response(identity))


@router.post("/admin/identities/{identity_id}/roles", response_model=Envelope, tags=["admin"])
async def admin_grant_roles(
    body: RoleGrantRequest,
    identity_id: str = Path(..., max_length=64),
    principal: AccessTokenClaims = Depends(get_admin),
):
    runtime = get_runtime()
    identity = await runtime.auth.grant_roles(identity_id, body.roles)
    logger.info("admin_roles_granted", actor=principal.sub, identity_id=identity_id, roles=identity.roles)
    return Envelope(status="ok", data=_identity_response(identity))


@router.post("/admin/identities/{identity_id}/revoke", response_model=Envelope, tags=["admin"])
async def admin_revoke_identity(
    identity_id: str = Path(..., max_length=64),
    principal: AccessTokenClaims = Depends(get_admin),
):
    runtime = get_runtime()
    result = await runtime.auth.logout_all(identity_id)
    logger.info("admin_sessions_revoked", actor=principal.sub, identity_id=identity_id)
    return Envelope(
        status="ok",
        data=GlobalLogoutResponse(
            identity_id=result.identity_id,
            token_version=result.token_version,
            refresh_revoked=result.refresh_revoked,
            complete=result.complete,
        ),
    )
