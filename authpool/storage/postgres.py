from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authpool.logging import get_logger
from authpool.storage.errors import ConstraintViolation
from authpool.storage.models import Identity, RefreshTokenRecord, utcnow

_SCHEMA_STATEMENTS = [
    "CREATE EXTENSION IF NOT EXISTS citext",
    """
    CREATE TABLE IF NOT EXISTS app_identity (
        id UUID PRIMARY KEY,
        email CITEXT UNIQUE,
        name TEXT,
        picture TEXT,
        token_version INTEGER NOT NULL DEFAULT 0,
        roles JSONB NOT NULL DEFAULT '["user"]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS identity_provider (
        identity_id UUID NOT NULL REFERENCES app_identity(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_uid TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (provider, provider_uid)
    )
    """,
    "CREATE INDEX IF NOT EXISTS identity_provider_identity_idx ON identity_provider (identity_id)",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        jti TEXT PRIMARY KEY,
        owner_id UUID NOT NULL REFERENCES app_identity(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_owner_idx ON refresh_token (owner_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
]


class PostgresStore:
    """Postgres-backed identity and refresh-token store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create identity and refresh-token tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # identities
    def _providers_for(self, conn, identity_id: str) -> Dict[str, str]:
        rows = conn.execute(
            "SELECT provider, provider_uid FROM identity_provider WHERE identity_id = %s",
            (identity_id,),
        ).fetchall()
        return {row["provider"]: row["provider_uid"] for row in rows}

    def _identity_from_row(self, conn, row: Dict[str, Any]) -> Identity:
        roles = row.get("roles")
        if isinstance(roles, str):
            roles = json.loads(roles)
        return Identity(
            id=str(row["id"]),
            provider_ids=self._providers_for(conn, str(row["id"])),
            email=row.get("email"),
            name=row.get("name"),
            picture=row.get("picture"),
            token_version=int(row.get("token_version") or 0),
            roles=list(roles or ["user"]),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def _link_providers(self, conn, identity: Identity) -> None:
        for provider, provider_uid in identity.provider_ids.items():
            row = conn.execute(
                """
                INSERT INTO identity_provider (identity_id, provider, provider_uid)
                VALUES (%s, %s, %s)
                ON CONFLICT (provider, provider_uid) DO NOTHING
                RETURNING identity_id
                """,
                (identity.id, provider, provider_uid),
            ).fetchone()
            if row is None:
                owner = conn.execute(
                    "SELECT identity_id FROM identity_provider WHERE provider = %s AND provider_uid = %s",
                    (provider, provider_uid),
                ).fetchone()
                if owner and str(owner["identity_id"]) != identity.id:
                    raise ConstraintViolation(
                        "provider id already linked",
                        {"field": "provider_ids", "provider": provider},
                    )

    def create_identity(self, identity: Identity) -> Identity:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_identity (id, email, name, picture, token_version, roles)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        identity.id,
                        identity.email,
                        identity.name,
                        identity.picture,
                        identity.token_version,
                        json.dumps(identity.roles),
                    ),
                )
                self._link_providers(conn, identity)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return identity

    def save_identity(self, identity: Identity) -> Identity:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_identity
                    SET email = %s, name = %s, picture = %s, roles = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        identity.email,
                        identity.name,
                        identity.picture,
                        json.dumps(identity.roles),
                        identity.id,
                    ),
                ).fetchone()
                if row is None:
                    raise ConstraintViolation("identity not found", {"id": identity.id})
                self._link_providers(conn, identity)
                return self._identity_from_row(conn, row)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_identity WHERE id = %s", (identity_id,)
            ).fetchone()
            return self._identity_from_row(conn, row) if row else None

    def get_identity_by_provider(
        self, provider: str, provider_id: str
    ) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT i.* FROM identity_provider p
                JOIN app_identity i ON i.id = p.identity_id
                WHERE p.provider = %s AND p.provider_uid = %s
                """,
                (provider, provider_id),
            ).fetchone()
            return self._identity_from_row(conn, row) if row else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        if not email:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_identity WHERE email = %s", (email.strip(),)
            ).fetchone()
            return self._identity_from_row(conn, row) if row else None

    def set_identity_roles(self, identity_id: str, roles: List[str]) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_identity SET roles = %s, updated_at = now() WHERE id = %s RETURNING *",
                (json.dumps(list(roles)), identity_id),
            ).fetchone()
            return self._identity_from_row(conn, row) if row else None

    def increment_token_version(self, identity_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_identity
                SET token_version = token_version + 1, updated_at = now()
                WHERE id = %s
                RETURNING token_version
                """,
                (identity_id,),
            ).fetchone()
        return int(row["token_version"]) if row else None

    # refresh tokens
    def save_refresh_record(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (jti, owner_id, token_hash, expires_at, revoked_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.jti,
                        record.owner_id,
                        record.token_hash,
                        record.expires_at,
                        record.revoked_at,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("jti already used", {"field": "jti"})
        return record

    def get_refresh_record(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE jti = %s", (jti,)
            ).fetchone()
        if not row:
            return None
        return RefreshTokenRecord(
            jti=row["jti"],
            owner_id=str(row["owner_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    def revoke_refresh_record(self, jti: str, revoked_at: Optional[datetime] = None) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s
                WHERE jti = %s AND revoked_at IS NULL
                RETURNING jti
                """,
                (revoked_at or utcnow(), jti),
            ).fetchone()
        return row is not None

    def revoke_refresh_records_for_owner(
        self, owner_id: str, revoked_at: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked_at = %s WHERE owner_id = %s AND revoked_at IS NULL",
                (revoked_at or utcnow(), owner_id),
            )
            return cur.rowcount or 0
