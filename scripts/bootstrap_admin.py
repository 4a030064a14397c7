#!/usr/bin/env python3
"""Create an admin account, or grant the admin role to an existing one.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='long-passphrase' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'long-passphrase'

Without DATABASE_URL the in-memory store is used, persisted under SHARED_FS_ROOT.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "admin"


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Ensure ``email`` holds the admin role.

    Returns a dict with ``user_id``, ``email`` and ``status``, one of
    ``created``, ``promoted``, ``already_admin`` or ``dry_run``.
    """
    # config must not load before main() has filled in the environment
    from authcore.service.runtime import get_runtime
    from authcore.storage.models import normalize_email

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if ADMIN_ROLE in existing.roles:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_user(existing.id, roles=sorted(set(existing.roles) | {ADMIN_ROLE}))
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.register(email, password, roles=["user", ADMIN_ROLE])
    # bootstrap accounts skip the mailbox round-trip
    runtime.store.update_user(user.id, email_verified=True)
    return {"user_id": user.id, "email": email, "status": "created"}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        parser.error("--email or ADMIN_EMAIL environment variable required")
    if not args.password or len(args.password) < 12:
        parser.error("--password must be at least 12 characters")

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/authcore-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    messages = {
        "created": "Admin user created",
        "promoted": "Existing user promoted to admin",
        "already_admin": "No changes needed, user is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
