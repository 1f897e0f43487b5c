from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "csrf_rejected",
    "not_found",
    "rate_limited",
    "locked",
    "validation_error",
    "conflict",
    "server_error",
    "store_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class TokenResponse(BaseModel):
    identity_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime
    roles: List[str] = Field(default_factory=list)


class TokenRefreshRequest(BaseModel):
    # Browsers send the HTTP-only cookie instead
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class IdentityResponse(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    roles: List[str]
    providers: Dict[str, str] = Field(default_factory=dict)
    token_version: int
    created_at: datetime
    updated_at: datetime


class ClaimsResponse(BaseModel):
    sub: str
    roles: List[str]
    token_version: int
    exp: int
    name: Optional[str] = None
    picture: Optional[str] = None


class RoleGrantRequest(BaseModel):
    roles: List[str] = Field(..., min_length=1, max_length=32)

    @field_validator("roles")
    @classmethod
    def _validate_roles(cls, value: List[str]) -> List[str]:
        cleaned = []
        for role in value:
            role = role.strip().lower()
            if not role or len(role) > 64:
                raise ValueError("roles must be non-empty strings of at most 64 characters")
            cleaned.append(role)
        return cleaned


class GlobalLogoutResponse(BaseModel):
    identity_id: str
    token_version: int
    refresh_revoked: Optional[int] = None
    complete: bool


class LogoutResponse(BaseModel):
    message: str = "session revoked"
    revoked: bool = False
