#!/usr/bin/env python3
"""Create or promote the first ADMIN account.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure!Passw0rd' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure!Passw0rd'

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (same strength rules as registration)
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


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create an ADMIN user, or promote an existing account to ADMIN.

    Returns:
        dict with user_id, email and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here so the environment defaults below apply to settings
    from taskgate.service.auth import normalize_email
    from taskgate.service.runtime import get_runtime
    from taskgate.storage.models import Role

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == Role.ADMIN.value:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        # Goes through the auth service so the cached permission set is dropped
        await runtime.auth.change_role(existing.id, Role.ADMIN.value)
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email, runtime.auth.hash_password(password), role=Role.ADMIN.value
    )
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for TaskGate",
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
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    from taskgate.service.auth import validate_password_strength
    from taskgate.service.errors import ServiceError
    from taskgate.storage.errors import ConstraintViolation

    try:
        validate_password_strength(args.password)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Without Redis the permission-cache drop falls back to a process-local cache
    os.environ.setdefault("ALLOW_CACHE_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except (ConstraintViolation, ServiceError, RuntimeError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Created admin user: {result['email']} (id: {result['user_id']})")
    elif status == "promoted":
        print(f"Promoted existing user {result['email']} to ADMIN (id: {result['user_id']})")
    elif status == "already_admin":
        print(f"User {result['email']} is already an admin; no changes made.")
    else:
        print(f"[DRY RUN] Would create or promote {result['email']}")


if __name__ == "__main__":
    main()
