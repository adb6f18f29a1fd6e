#!/usr/bin/env python3
"""Create an account, or reset its password and roles, in the configured store.

Usage:
    # Using environment variables:
    ACCOUNT_EMAIL=owner@example.com ACCOUNT_PASSWORD='Secure-Passw0rd!' python scripts/bootstrap_account.py --admin

    # Or with command line args:
    python scripts/bootstrap_account.py --email owner@example.com --password 'Secure-Passw0rd!' --owner

Environment Variables:
    ACCOUNT_EMAIL: Email for the account
    ACCOUNT_PASSWORD: Password for the account (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (required)
    JWT_SECRET: Required; the same value the service runs with
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


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_account(
    email: str,
    password: str,
    *,
    is_admin: bool = False,
    is_owner: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create or update an account.

    Returns:
        dict with account_id, email, and status ('created', 'updated' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from campauth.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.use_memory_store:
        raise RuntimeError("USE_MEMORY_STORE is set; the account would not be persisted")
    store = runtime.store
    existing = store.get_account_by_email(email)

    if dry_run:
        action = "update" if existing else "create"
        print(f"[DRY RUN] Would {action} account {email}")
        return {"account_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    password_hash, algo = runtime.passwords.hash_password(password)
    if existing:
        store.save_password(existing.id, password_hash, algo)
        store.update_account_roles(
            existing.id,
            is_admin=is_admin or existing.is_admin,
            is_owner=is_owner or existing.is_owner,
        )
        # Old sessions were issued under the previous password
        revoked = await runtime.tokens.revoke_all(existing.id, reason="password_reset")
        print(f"Updated account {email} (id: {existing.id}, sessions revoked: {revoked})")
        return {"account_id": existing.id, "email": email, "status": "updated"}

    account = store.create_account(
        email,
        is_admin=is_admin,
        is_owner=is_owner,
        email_verified=True,
        is_active=True,
    )
    store.save_password(account.id, password_hash, algo)
    print(f"Created account {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an account for CampAuth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ACCOUNT_EMAIL"),
        help="Account email (or set ACCOUNT_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ACCOUNT_PASSWORD"),
        help="Account password (or set ACCOUNT_PASSWORD env var)",
    )
    parser.add_argument("--admin", action="store_true", help="Grant the admin role")
    parser.add_argument("--owner", action="store_true", help="Grant the owner role")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ACCOUNT_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ACCOUNT_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL must be set; an in-memory account would be lost on exit")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET must be set to the value the service runs with")
        sys.exit(1)

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_account(
                args.email.strip().lower(),
                args.password,
                is_admin=args.admin,
                is_owner=args.owner,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "updated":
        print("\nExisting account updated.")


if __name__ == "__main__":
    main()
