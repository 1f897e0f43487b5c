from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from authpool.config import Settings
from authpool.logging import get_logger
from authpool.service.errors import AuthInvalidError
from authpool.storage.models import Identity

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    refresh_jti: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


def hash_token(raw: str) -> str:
    """One-way digest stored in place of the raw refresh secret."""
    return hashlib.sha256(raw.encode()).hexdigest()


def access_claims_for(identity: Identity) -> Dict[str, Any]:
    return {
        "sub": identity.id,
        "name": identity.name,
        "picture": identity.picture,
        "token_version": identity.token_version,
        "roles": list(identity.roles),
    }


def refresh_claims_for(identity: Identity) -> Dict[str, Any]:
    return {"sub": identity.id, "token_version": identity.token_version}


class TokenIssuer:
    """Mints and verifies compact HS256 tokens."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        clock_skew_seconds: int = 120,
    ) -> None:
        self.secret = settings.jwt_secret.encode()
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)
        self._clock = clock
        # Allowance for small clock skew across nodes
        self.clock_skew_seconds = clock_skew_seconds

    @staticmethod
    def new_jti() -> str:
        return str(uuid.uuid4())

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.secret, signing_input.encode("utf-8", "surrogatepass"), hashlib.sha256
            ).digest()
        )

    def _encode(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _stamp(self, claims: Dict[str, Any], token_type: str, ttl: timedelta, jti: str) -> Dict[str, Any]:
        now = int(self._clock())
        return {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + int(ttl.total_seconds()),
            "jti": jti,
            "token_type": token_type,
        }

    def sign_access(self, claims: Dict[str, Any]) -> str:
        return self._encode(self._stamp(claims, ACCESS, self.access_ttl, self.new_jti()))

    def sign_refresh(self, claims: Dict[str, Any], jti: str) -> str:
        return self._encode(self._stamp(claims, REFRESH, self.refresh_ttl, jti))

    def issue_pair(self, identity: Identity) -> IssuedTokens:
        jti = self.new_jti()
        access = self.sign_access(access_claims_for(identity))
        refresh = self.sign_refresh(refresh_claims_for(identity), jti)
        return IssuedTokens(
            access_token=access,
            refresh_token=refresh,
            refresh_jti=jti,
            access_expires_at=self._expiry_datetime(access),
            refresh_expires_at=self._expiry_datetime(refresh),
        )

    def _expiry_datetime(self, token: str) -> datetime:
        exp = self.decode_expiry(token)
        return datetime.fromtimestamp(exp or 0, tz=timezone.utc)

    def _unverified_payload(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError, UnicodeDecodeError):
            return None
        return payload if isinstance(payload, dict) else None

    def decode_expiry(self, token: str) -> Optional[int]:
        """Expiry claim for bookkeeping; the signature is not checked."""
        payload = self._unverified_payload(token) if token else None
        if not payload:
            return None
        try:
            return int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None

    def verify(self, token: str, expected_type: str) -> Dict[str, Any]:
        """Return the payload of a valid token or raise AuthInvalidError."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise AuthInvalidError("malformed token", detail={"reason": "format"})

        # Pin the algorithm to block alg-confusion tokens
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError, UnicodeDecodeError):
            raise AuthInvalidError("malformed token", detail={"reason": "header"})
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise AuthInvalidError("unsupported token algorithm", detail={"reason": "alg"})

        expected = self._sign(f"{header_b64}.{payload_b64}")
        # compare_digest rejects non-ASCII str operands
        if not hmac.compare_digest(expected.encode(), sig_b64.encode("utf-8", "surrogatepass")):
            raise AuthInvalidError("bad token signature", detail={"reason": "signature"})

        payload = self._unverified_payload(token)
        if payload is None:
            raise AuthInvalidError("malformed token", detail={"reason": "payload"})
        if payload.get("iss") != self.issuer:
            raise AuthInvalidError("wrong token issuer", detail={"reason": "issuer"})
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise AuthInvalidError("wrong token audience", detail={"reason": "audience"})
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise AuthInvalidError("token missing expiry", detail={"reason": "exp"})
        if exp_ts <= self._clock() - self.clock_skew_seconds:
            raise AuthInvalidError("token expired", detail={"reason": "expired"})
        if payload.get("token_type") != expected_type:
            raise AuthInvalidError("wrong token type", detail={"reason": "type"})
        if not payload.get("sub"):
            raise AuthInvalidError("token missing subject", detail={"reason": "sub"})
        return payload
