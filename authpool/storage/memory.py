from __future__ import annotations

import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from authpool.logging import get_logger
from authpool.storage.errors import ConstraintViolation
from authpool.storage.models import Identity, RefreshTokenRecord, utcnow


class MemoryStore:
    """In-process identity and refresh-token store.

    Used for tests and single-instance development. When ``fs_root`` is
    given, state is written to ``{fs_root}/state/authpool_store.json`` after
    every mutation and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        if self.fs_root is None:
            raise RuntimeError("persistence is disabled without fs_root")
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "authpool_store.json"

    @staticmethod
    def _email_key(email: Optional[str]) -> Optional[str]:
        return email.strip().lower() if email else None

    def _check_unique(self, identity: Identity) -> None:
        email_key = self._email_key(identity.email)
        for existing in self.identities.values():
            if existing.id == identity.id:
                continue
            if email_key and self._email_key(existing.email) == email_key:
                raise ConstraintViolation("email already exists", {"field": "email"})
            for provider, provider_id in identity.provider_ids.items():
                if existing.provider_ids.get(provider) == provider_id:
                    raise ConstraintViolation(
                        "provider id already linked",
                        {"field": "provider_ids", "provider": provider},
                    )

    # identities
    def create_identity(self, identity: Identity) -> Identity:
        with self._data_lock:
            if identity.id in self.identities:
                raise ConstraintViolation("identity already exists", {"field": "id"})
            self._check_unique(identity)
            self.identities[identity.id] = copy.deepcopy(identity)
            self._persist_state()
            return copy.deepcopy(identity)

    def save_identity(self, identity: Identity) -> Identity:
        with self._data_lock:
            current = self.identities.get(identity.id)
            if current is None:
                raise ConstraintViolation("identity not found", {"id": identity.id})
            self._check_unique(identity)
            stored = copy.deepcopy(identity)
            # token_version only moves through increment_token_version
            stored.token_version = current.token_version
            stored.updated_at = utcnow()
            self.identities[identity.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return copy.deepcopy(identity) if identity else None

    def get_identity_by_provider(
        self, provider: str, provider_id: str
    ) -> Optional[Identity]:
        with self._data_lock:
            for identity in self.identities.values():
                if identity.provider_ids.get(provider) == provider_id:
                    return copy.deepcopy(identity)
            return None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        email_key = self._email_key(email)
        if not email_key:
            return None
        with self._data_lock:
            for identity in self.identities.values():
                if self._email_key(identity.email) == email_key:
                    return copy.deepcopy(identity)
            return None

    def set_identity_roles(self, identity_id: str, roles: List[str]) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            identity.roles = list(roles)
            identity.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(identity)

    def increment_token_version(self, identity_id: str) -> Optional[int]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            identity.token_version += 1
            identity.updated_at = utcnow()
            self._persist_state()
            return identity.token_version

    # refresh tokens
    def _prune_expired_refresh(self, now: datetime) -> None:
        expired = [jti for jti, r in self.refresh_tokens.items() if r.expires_at <= now]
        for jti in expired:
            del self.refresh_tokens[jti]

    def save_refresh_record(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.jti in self.refresh_tokens:
                raise ConstraintViolation("jti already used", {"field": "jti"})
            self._prune_expired_refresh(utcnow())
            self.refresh_tokens[record.jti] = copy.deepcopy(record)
            self._persist_state()
            return record

    def get_refresh_record(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            return copy.deepcopy(record) if record else None

    def revoke_refresh_record(self, jti: str, revoked_at: Optional[datetime] = None) -> bool:
        """Revoke iff currently unrevoked; True only for the transitioning call."""
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            if record is None or record.revoked_at is not None:
                return False
            record.revoked_at = revoked_at or utcnow()
            self._persist_state()
            return True

    def revoke_refresh_records_for_owner(
        self, owner_id: str, revoked_at: Optional[datetime] = None
    ) -> int:
        with self._data_lock:
            stamp = revoked_at or utcnow()
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.owner_id == owner_id and record.revoked_at is None:
                    record.revoked_at = stamp
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # persistence
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_identity(self, identity: Identity) -> dict:
        return {
            "id": identity.id,
            "provider_ids": identity.provider_ids,
            "email": identity.email,
            "name": identity.name,
            "picture": identity.picture,
            "token_version": identity.token_version,
            "roles": identity.roles,
            "created_at": self._serialize_datetime(identity.created_at),
            "updated_at": self._serialize_datetime(identity.updated_at),
        }

    def _deserialize_identity(self, data: dict) -> Identity:
        return Identity(
            id=data["id"],
            provider_ids=dict(data.get("provider_ids") or {}),
            email=data.get("email"),
            name=data.get("name"),
            picture=data.get("picture"),
            token_version=int(data.get("token_version", 0)),
            roles=list(data.get("roles") or ["user"]),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_refresh(self, record: RefreshTokenRecord) -> dict:
        return {
            "jti": record.jti,
            "owner_id": record.owner_id,
            "token_hash": record.token_hash,
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            jti=data["jti"],
            owner_id=data["owner_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "identities": [self._serialize_identity(i) for i in self.identities.values()],
            "refresh_tokens": [
                self._serialize_refresh(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            i["id"]: self._deserialize_identity(i) for i in data.get("identities", [])
        }
        self.refresh_tokens = {
            r["jti"]: self._deserialize_refresh(r) for r in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            identities=len(self.identities),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True
