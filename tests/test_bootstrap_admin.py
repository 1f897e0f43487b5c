import importlib.util
from pathlib import Path

from authpool.service.runtime import get_runtime
from authpool.storage.models import Identity

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
_spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
bootstrap = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(bootstrap)


async def test_creates_admin_identity():
    result = await bootstrap.bootstrap_admin("ops@example.com", name="Ops")

    assert result["status"] == "created"
    identity = get_runtime().store.get_identity(result["identity_id"])
    assert identity.roles == ["user", "admin"]
    assert identity.name == "Ops"


async def test_second_run_is_noop():
    await bootstrap.bootstrap_admin("ops@example.com")
    result = await bootstrap.bootstrap_admin("OPS@example.com")
    assert result["status"] == "already_admin"


async def test_promotes_existing_identity():
    store = get_runtime().store
    existing = store.create_identity(Identity.new(email="member@example.com"))

    result = await bootstrap.bootstrap_admin("member@example.com")

    assert result == {"identity_id": existing.id, "email": "member@example.com", "status": "promoted"}
    assert store.get_identity(existing.id).roles == ["admin", "user"]


async def test_dry_run_changes_nothing():
    store = get_runtime().store
    existing = store.create_identity(Identity.new(email="member@example.com"))

    assert (await bootstrap.bootstrap_admin("member@example.com", dry_run=True))["status"] == "dry_run"
    assert (await bootstrap.bootstrap_admin("new@example.com", dry_run=True))["status"] == "dry_run"
    assert store.get_identity(existing.id).roles == ["user"]
    assert store.get_identity_by_email("new@example.com") is None


def test_main_requires_email(monkeypatch, capsys):
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    assert bootstrap.main([]) == 1
    assert "--email" in capsys.readouterr().out


def test_main_creates_admin(monkeypatch, capsys):
    monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "true")
    assert bootstrap.main(["--email", "cli@example.com"]) == 0
    assert "Admin identity created" in capsys.readouterr().out


def test_check_env_reports_missing(monkeypatch, capsys):
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.setenv("USE_MEMORY_STORE", "false")
    monkeypatch.delenv("DATABASE_URL", raising=False)

    assert bootstrap.main(["--check-env"]) == 1
    out = capsys.readouterr().out
    assert "[MISSING] JWT_SECRET" in out
    assert "[MISSING] DATABASE_URL" in out


def test_check_env_passes_when_configured(monkeypatch, capsys):
    monkeypatch.setenv("JWT_SECRET", "x" * 40)
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/authpool")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("OAUTH_PROVIDERS", "google")

    assert bootstrap.main(["--check-env"]) == 0
    assert "All required settings present." in capsys.readouterr().out
