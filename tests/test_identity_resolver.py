"""Tests for identity resolution from verified provider profiles."""

from unittest.mock import patch

import pytest

from authpool.service.errors import StoreUnavailableError, ValidationError
from authpool.service.identity import IdentityResolver, default_transform, validate_candidate
from authpool.storage.errors import ConstraintViolation
from authpool.storage.memory import MemoryStore
from authpool.storage.models import Identity, ProviderCallback, VerifiedProfile


@pytest.fixture
def resolver(memory_store):
    return IdentityResolver(memory_store, timeout=1.0)


class TestResolveScenario:
    """First login creates; later logins merge onto the same record."""

    async def test_create_then_merge_name(self, resolver, memory_store):
        first = await resolver.resolve("google", VerifiedProfile(provider_id="g1", email="a@x.com"))

        assert first.roles == ["user"]
        assert first.name is None
        assert first.provider_ids == {"google": "g1"}

        second = await resolver.resolve(
            "google", VerifiedProfile(provider_id="g1", email="a@x.com", name="A")
        )

        assert second.id == first.id
        assert second.name == "A"
        assert second.email == "a@x.com"
        assert second.roles == ["user"]
        assert second.token_version == first.token_version
        assert len(memory_store.identities) == 1

    async def test_email_links_second_provider(self, resolver, memory_store):
        first = await resolver.resolve("google", VerifiedProfile(provider_id="g1", email="a@x.com"))
        second = await resolver.resolve(
            "github", VerifiedProfile(provider_id="gh-7", email="A@X.com", picture="https://p/a.png")
        )

        assert second.id == first.id
        assert second.provider_ids == {"google": "g1", "github": "gh-7"}
        assert second.picture == "https://p/a.png"
        assert len(memory_store.identities) == 1

    async def test_null_fields_never_overwrite(self, resolver):
        await resolver.resolve("google", VerifiedProfile(provider_id="g1", email="a@x.com", name="A"))
        again = await resolver.resolve("google", VerifiedProfile(provider_id="g1"))

        assert again.name == "A"
        assert again.email == "a@x.com"

    async def test_resolve_callback_uses_provider_tag(self, resolver):
        callback = ProviderCallback(provider="github", profile=VerifiedProfile(provider_id="99"))

        identity = await resolver.resolve_callback(callback)

        assert identity.provider_ids == {"github": "99"}

    async def test_provider_ids_are_scoped_by_provider(self, resolver, memory_store):
        google = await resolver.resolve("google", VerifiedProfile(provider_id="1"))
        github = await resolver.resolve("github", VerifiedProfile(provider_id="1"))

        assert google.id != github.id
        assert len(memory_store.identities) == 2


class TestTransform:
    """Pluggable transforms and the validation boundary."""

    async def test_async_transform_result_is_used(self, memory_store):
        async def transform(profile, provider):
            return {
                "provider_ids": {provider: profile.provider_id},
                "email": profile.email,
                "roles": ["user", "beta"],
            }

        resolver = IdentityResolver(memory_store, transform=transform)
        identity = await resolver.resolve("google", VerifiedProfile(provider_id="g1", email="b@x.com"))

        assert identity.roles == ["user", "beta"]

    async def test_invalid_output_aborts_without_write(self, memory_store):
        resolver = IdentityResolver(memory_store, transform=lambda p, prov: {"name": 12})

        with pytest.raises(ValidationError) as exc_info:
            await resolver.resolve("google", VerifiedProfile(provider_id="g1"))

        errors = exc_info.value.detail["errors"]
        assert any("provider id" in e for e in errors)
        assert any("'name'" in e for e in errors)
        assert memory_store.identities == {}

    async def test_raising_transform_becomes_validation_error(self, memory_store):
        def transform(profile, provider):
            raise KeyError("sub")

        resolver = IdentityResolver(memory_store, transform=transform)

        with patch("authpool.service.identity.logger") as mock_logger:
            with pytest.raises(ValidationError):
                await resolver.resolve("google", VerifiedProfile(provider_id="g1"))
        mock_logger.warning.assert_called_once()
        assert memory_store.identities == {}

    def test_default_transform_skips_empty_fields(self):
        candidate = default_transform(VerifiedProfile(provider_id="g1", email=" a@x.com ", name=""), "google")

        assert candidate == {"provider_ids": {"google": "g1"}, "email": "a@x.com"}

    @pytest.mark.parametrize(
        "candidate",
        [
            {"email": "a@x.com"},
            {"provider_ids": {"google": "g1"}},
            {"provider_ids": {"google": "g1"}, "roles": ["user"], "name": None},
        ],
    )
    def test_valid_candidates(self, candidate):
        assert validate_candidate(candidate) == []

    @pytest.mark.parametrize(
        "candidate",
        [
            None,
            {},
            {"email": "   "},
            {"provider_ids": "g1"},
            {"provider_ids": {"google": ""}},
            {"email": "a@x.com", "picture": 5},
            {"email": "a@x.com", "roles": "admin"},
            {"email": "a@x.com", "roles": ["admin", 1]},
        ],
    )
    def test_invalid_candidates(self, candidate):
        assert validate_candidate(candidate)


class RacingStore(MemoryStore):
    """Simulates a concurrent first login winning the insert."""

    def __init__(self):
        super().__init__()
        self.raced = False

    def create_identity(self, identity):
        if not self.raced:
            self.raced = True
            winner = Identity.new(provider_ids=dict(identity.provider_ids), email=identity.email)
            super().create_identity(winner)
            raise ConstraintViolation("provider id already linked", {"field": "provider_ids"})
        return super().create_identity(identity)


class BrokenStore(MemoryStore):
    def get_identity_by_provider(self, provider, provider_id):
        raise ConnectionError("db down")


class TestStoreBehaviour:
    async def test_lost_create_race_merges_into_winner(self):
        store = RacingStore()
        resolver = IdentityResolver(store)

        identity = await resolver.resolve(
            "google", VerifiedProfile(provider_id="g1", email="a@x.com", name="A")
        )

        assert len(store.identities) == 1
        assert identity.name == "A"

    async def test_store_outage_raises_store_unavailable(self):
        resolver = IdentityResolver(BrokenStore())

        with pytest.raises(StoreUnavailableError):
            await resolver.resolve("google", VerifiedProfile(provider_id="g1"))
