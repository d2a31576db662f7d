#!/usr/bin/env python3
"""Create or promote the first PrismFlow administrator.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='...' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password '...'

Environment Variables:
    ADMIN_EMAIL: Email for the administrator account
    ADMIN_PASSWORD: Password for the administrator account
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Ensure ``email`` holds the Administrator system role.

    Returns:
        dict with account_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Deferred so the environment is prepared before settings load
    from prismflow.service.permissions import ADMINISTRATOR
    from prismflow.service.runtime import get_runtime

    runtime = get_runtime()
    admin_role = runtime.permissions.system_role(ADMINISTRATOR)

    existing = runtime.store.get_account_by_email(email)
    if existing:
        if await runtime.permissions.is_admin(existing.id):
            print(f"Account {email} is already an administrator (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to administrator")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        await runtime.permissions.assign_role(existing.id, admin_role.id)
        if not existing.is_active:
            await runtime.accounts.reactivate_account(existing.id)
        print(f"Promoted existing account {email} to administrator (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create administrator: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = await runtime.accounts.provision_account(
        email, password, role_ids=[admin_role.id]
    )
    print(f"Created administrator: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a PrismFlow administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Administrator email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Administrator password (or set ADMIN_PASSWORD env var)",
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from prismflow.service.errors import ServiceError

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdministrator created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to administrator!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an administrator.")


if __name__ == "__main__":
    main()
