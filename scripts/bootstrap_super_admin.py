#!/usr/bin/env python3
"""Create the first super admin out of band.

Usage:
    # Using environment variables:
    SUPER_ADMIN_EMAIL=ops@example.com SUPER_ADMIN_FIRST_NAME=Ops python scripts/bootstrap_super_admin.py

    # Or with command line args:
    python scripts/bootstrap_super_admin.py --email ops@example.com --first-name Ops --last-name Team

The admin id and a temporary password are printed once. The temporary
password expires after ADMIN_CREDENTIALS_TTL_HOURS and must be changed on the
first admin login before any other admin action is allowed.

Environment Variables:
    SUPER_ADMIN_EMAIL, SUPER_ADMIN_FIRST_NAME, SUPER_ADMIN_LAST_NAME, SUPER_ADMIN_PHONE
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
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


async def bootstrap_super_admin(
    email: str,
    first_name: str,
    last_name: str,
    phone: str | None,
    *,
    force: bool = False,
    dry_run: bool = False,
) -> dict:
    # Import here so config is read after the env defaults below are applied
    from tradegate.service.runtime import get_runtime

    runtime = get_runtime()

    if runtime.identities.find_by_email(email):
        print(f"Error: an account with email {email} already exists")
        return {"status": "exists", "email": email}

    if runtime.admin.super_admin_exists() and not force:
        print("Warning: a super admin already exists; re-run with --force to create another")
        return {"status": "super_admin_exists", "email": email}

    if dry_run:
        print(f"[DRY RUN] Would create super admin: {email}")
        return {"status": "dry_run", "email": email}

    identity, temp_password = await runtime.admin.bootstrap_super_admin(
        email=email, first_name=first_name, last_name=last_name, phone=phone
    )
    return {
        "status": "created",
        "email": identity.email,
        "identity_id": identity.id,
        "admin_id": identity.admin_id,
        "temp_password": temp_password,
        "expires_at": identity.credentials_expire_at,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a Tradegate super admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SUPER_ADMIN_EMAIL"),
        help="Super admin email (or set SUPER_ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--first-name",
        default=os.environ.get("SUPER_ADMIN_FIRST_NAME", ""),
        help="First name (or set SUPER_ADMIN_FIRST_NAME env var)",
    )
    parser.add_argument(
        "--last-name",
        default=os.environ.get("SUPER_ADMIN_LAST_NAME", ""),
        help="Last name (or set SUPER_ADMIN_LAST_NAME env var)",
    )
    parser.add_argument(
        "--phone",
        default=os.environ.get("SUPER_ADMIN_PHONE"),
        help="Optional phone number (or set SUPER_ADMIN_PHONE env var)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Create another super admin even when one already exists",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SUPER_ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.first_name:
        print("Error: --first-name or SUPER_ADMIN_FIRST_NAME environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_super_admin(
                args.email.strip().lower(),
                args.first_name,
                args.last_name,
                args.phone,
                force=args.force,
                dry_run=args.dry_run,
            )
        )
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper admin created. These credentials are shown only once:")
        print(f"  Admin ID:           {result['admin_id']}")
        print(f"  Temporary password: {result['temp_password']}")
        print(f"  Expires at:         {result['expires_at'].isoformat()}")
        print("\nSign in at /api/admin/auth/login and change the password immediately.")
    elif result["status"] != "dry_run":
        sys.exit(1)


if __name__ == "__main__":
    main()
