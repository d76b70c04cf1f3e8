#!/usr/bin/env python3
"""Seed the permission catalogue and create the superadmin account.

Usage:
    # Using environment variables:
    ADMIN_PASSWORD='S3cure!Passw0rd' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username superadmin --email admin@example.com --password 'S3cure!Passw0rd'

Environment Variables:
    ADMIN_USERNAME: Username for the superadmin account (default: superadmin)
    ADMIN_EMAIL: Email for the superadmin account
    ADMIN_PASSWORD: Password (must pass the strength rules; Admin123! is refused when APP_ENV=production)
    DATABASE_URL: PostgreSQL connection string (memory store is used if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    username: str, email: str, password: str, dry_run: bool = False
) -> dict:
    """Seed the catalogue and ensure the superadmin user exists.

    Returns:
        dict with user_id, username and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from rbac_admin.service.runtime import Runtime
    from rbac_admin.service.seed import (
        catalogue,
        check_bootstrap_password,
        ensure_superadmin,
        seed_catalogue,
    )

    runtime = Runtime()
    check_bootstrap_password(password, production=runtime.settings.is_production)

    await runtime.store.open()
    try:
        existing = await runtime.store.get_user_by_username(username)
        if dry_run:
            print(f"[DRY RUN] Would ensure {len(catalogue())} permissions and the built-in roles")
            if existing:
                print(f"[DRY RUN] User {username} already exists (id: {existing.id})")
            else:
                print(f"[DRY RUN] Would create superadmin user: {username} <{email}>")
            return {
                "user_id": existing.id if existing else None,
                "username": username,
                "status": "dry_run",
            }

        summary = await seed_catalogue(runtime.store)
        print(
            f"Catalogue seeded: {summary['permissions_created']} permissions, "
            f"{summary['roles_created']} roles created"
        )
        user, created = await ensure_superadmin(
            runtime.store,
            runtime.passwords,
            username=username,
            email=email,
            password=password,
        )
    finally:
        await runtime.close()

    return {
        "user_id": user.id,
        "username": user.username,
        "status": "created" if created else "exists",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the RBAC admin catalogue and superadmin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "superadmin"),
        help="Superadmin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL", "superadmin@example.com"),
        help="Superadmin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Superadmin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        # Tokens are never issued here, but settings refuse to load without a secret
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from rbac_admin.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.email, args.password, args.dry_run)
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuperadmin created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - superadmin already exists.")


if __name__ == "__main__":
    main()
