"""Tests for the in-process identity and refresh-token store."""

import json
from datetime import timedelta

import pytest

from authpool.storage.errors import ConstraintViolation
from authpool.storage.memory import MemoryStore
from authpool.storage.models import Identity, RefreshTokenRecord, utcnow


def _record(jti, owner_id, **kwargs):
    return RefreshTokenRecord(
        jti=jti,
        owner_id=owner_id,
        token_hash="h" * 64,
        expires_at=utcnow() + timedelta(days=30),
        **kwargs,
    )


class TestIdentities:
    def test_email_is_unique_ignoring_case(self, memory_store):
        memory_store.create_identity(Identity.new(email="Ada@Example.com"))

        with pytest.raises(ConstraintViolation):
            memory_store.create_identity(Identity.new(email="ada@example.com"))
        assert memory_store.get_identity_by_email("ADA@example.com") is not None

    def test_provider_id_is_unique_per_provider(self, memory_store):
        memory_store.create_identity(Identity.new(provider_ids={"google": "1"}))
        memory_store.create_identity(Identity.new(provider_ids={"github": "1"}))

        with pytest.raises(ConstraintViolation):
            memory_store.create_identity(Identity.new(provider_ids={"google": "1"}))

    def test_returned_objects_are_copies(self, memory_store):
        identity = memory_store.create_identity(Identity.new(email="a@x.com"))
        fetched = memory_store.get_identity(identity.id)
        fetched.roles.append("admin")

        assert memory_store.get_identity(identity.id).roles == ["user"]

    def test_save_never_moves_token_version(self, memory_store):
        identity = memory_store.create_identity(Identity.new(email="a@x.com"))
        memory_store.increment_token_version(identity.id)
        identity.name = "A"

        saved = memory_store.save_identity(identity)

        assert saved.name == "A"
        assert saved.token_version == 1

    def test_increment_unknown_identity(self, memory_store):
        assert memory_store.increment_token_version("missing") is None
        assert memory_store.set_identity_roles("missing", ["admin"]) is None

    def test_set_roles(self, memory_store):
        identity = memory_store.create_identity(Identity.new(email="a@x.com"))

        updated = memory_store.set_identity_roles(identity.id, ["admin", "user"])

        assert updated.roles == ["admin", "user"]


class TestRefreshRecords:
    def test_jti_cannot_be_reused(self, memory_store):
        memory_store.save_refresh_record(_record("j1", "owner"))

        with pytest.raises(ConstraintViolation):
            memory_store.save_refresh_record(_record("j1", "owner"))

    def test_conditional_revoke(self, memory_store):
        memory_store.save_refresh_record(_record("j1", "owner"))

        assert memory_store.revoke_refresh_record("j1") is True
        first_stamp = memory_store.get_refresh_record("j1").revoked_at
        assert memory_store.revoke_refresh_record("j1") is False
        assert memory_store.get_refresh_record("j1").revoked_at == first_stamp
        assert memory_store.revoke_refresh_record("missing") is False

    def test_revoke_for_owner_skips_other_owners(self, memory_store):
        memory_store.save_refresh_record(_record("j1", "a"))
        memory_store.save_refresh_record(_record("j2", "a"))
        memory_store.save_refresh_record(_record("j3", "b"))

        assert memory_store.revoke_refresh_records_for_owner("a") == 2
        assert memory_store.get_refresh_record("j3").revoked_at is None

    def test_expired_records_are_pruned_on_save(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        stale = _record("old", "owner")
        stale.expires_at = utcnow() - timedelta(seconds=1)
        store.save_refresh_record(stale)

        store.save_refresh_record(_record("new", "owner"))

        assert store.get_refresh_record("old") is None
        assert store.get_refresh_record("new") is not None
        data = json.loads((tmp_path / "state" / "authpool_store.json").read_text())
        assert [r["jti"] for r in data["refresh_tokens"]] == ["new"]


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        identity = store.create_identity(
            Identity.new(provider_ids={"google": "g1"}, email="a@x.com", name="A")
        )
        store.increment_token_version(identity.id)
        store.save_refresh_record(_record("j1", identity.id))
        store.revoke_refresh_record("j1")

        reloaded = MemoryStore(fs_root=str(tmp_path))

        restored = reloaded.get_identity_by_provider("google", "g1")
        assert restored.id == identity.id
        assert restored.token_version == 1
        assert restored.name == "A"
        record = reloaded.get_refresh_record("j1")
        assert record.revoked_at is not None
        assert record.expires_at.tzinfo is not None

    def test_state_file_holds_hashes_only(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        store.save_refresh_record(_record("j1", "owner"))

        data = json.loads((tmp_path / "state" / "authpool_store.json").read_text())

        assert data["refresh_tokens"][0]["token_hash"] == "h" * 64

    def test_no_fs_root_writes_nothing(self, tmp_path):
        store = MemoryStore()
        store.create_identity(Identity.new(email="a@x.com"))

        assert not (tmp_path / "state").exists()

    def test_state_path_requires_fs_root(self):
        with pytest.raises(RuntimeError, match="fs_root"):
            MemoryStore()._state_path()
