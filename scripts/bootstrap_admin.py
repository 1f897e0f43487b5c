#!/usr/bin/env python3
"""Grant the admin role to an identity, creating it when absent.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --name "Ops Admin"

    # Report the deployment checklist and exit:
    python scripts/bootstrap_admin.py --check-env

Environment Variables:
    ADMIN_EMAIL: Email of the identity to promote
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def check_env() -> int:
    """Print the configuration checklist; non-zero when items are missing."""
    from authpool.config import Settings, env_checklist

    settings = Settings.from_env()
    missing = settings.missing_required()
    print("Deployment checklist:")
    for item in env_checklist():
        name = item.split(" ", 1)[0]
        mark = "MISSING" if name in missing else "ok"
        print(f"  [{mark:>7}] {item}")
    if missing:
        print(f"\n{len(missing)} required setting(s) missing: {', '.join(missing)}")
        return 1
    print("\nAll required settings present.")
    return 0


async def bootstrap_admin(email: str, name: str | None = None, dry_run: bool = False) -> dict:
    """Create or promote an admin identity.

    Returns:
        dict with identity_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from authpool.service.runtime import get_runtime
    from authpool.storage.models import Identity

    runtime = get_runtime()
    existing = runtime.store.get_identity_by_email(email)

    if existing:
        if "admin" in existing.roles:
            print(f"Identity {email} already has the admin role (id: {existing.id})")
            return {"identity_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would grant admin to existing identity {email}")
            return {"identity_id": existing.id, "email": email, "status": "dry_run"}

        roles = sorted(set(existing.roles) | {"admin"})
        await runtime.auth.grant_roles(existing.id, roles)
        print(f"Granted admin to existing identity {email} (id: {existing.id})")
        return {"identity_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin identity: {email}")
        return {"identity_id": None, "email": email, "status": "dry_run"}

    identity = runtime.store.create_identity(
        Identity.new(email=email, name=name, roles=["user", "admin"])
    )
    print(f"Created admin identity: {email} (id: {identity.id})")
    return {"identity_id": identity.id, "email": email, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for authpool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument("--name", default=None, help="Display name for a new identity")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    parser.add_argument(
        "--check-env",
        action="store_true",
        help="Print the configuration checklist and exit",
    )

    args = parser.parse_args(argv)

    if args.check_env:
        return check_env()

    if not args.email or "@" not in args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email.strip(), args.name, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "created":
        print("\nAdmin identity created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Identity ID: {result['identity_id']}")
    elif result["status"] == "promoted":
        print("\nExisting identity promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - identity is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
