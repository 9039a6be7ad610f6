#!/usr/bin/env python3
"""Bootstrap the first platform administrator.

Admins cannot self-register, so the first one is created here. The account is
created through the self-hosted identity provider and granted the Admin role
directly; an existing account with the same email is promoted instead.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must meet complexity requirements)
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


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with subject_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from learnity.service.identity import LocalIdentityProvider
    from learnity.service.runtime import get_runtime
    from learnity.storage.models import Role

    runtime = get_runtime()
    if not isinstance(runtime.provider, LocalIdentityProvider):
        raise RuntimeError(
            "bootstrap_admin only manages the local identity provider; "
            "create the account at the remote provider and assign the role there"
        )

    try:
        existing = runtime.store.get_account_by_email(email)
        if existing:
            assignment = runtime.store.get_role_assignment(existing.subject_id)
            if assignment and assignment.role == Role.ADMIN:
                print(f"Account {email} is already an admin (id: {existing.subject_id})")
                return {
                    "subject_id": existing.subject_id,
                    "email": email,
                    "status": "already_admin",
                }

            if dry_run:
                print(f"[DRY RUN] Would promote existing account {email} to admin")
                return {"subject_id": existing.subject_id, "email": email, "status": "dry_run"}

            # Bootstrap bypasses the transition table; it is the root of trust
            await runtime.roles.assign_role(existing.subject_id, Role.ADMIN)
            print(f"Promoted existing account {email} to admin (id: {existing.subject_id})")
            return {
                "subject_id": existing.subject_id,
                "email": email,
                "status": "promoted",
            }

        if dry_run:
            print(f"[DRY RUN] Would create admin account: {email}")
            return {"subject_id": None, "email": email, "status": "dry_run"}

        account = await runtime.provider.create_account(email, password, display_name="Administrator")
        await runtime.provider.mark_email_verified(account.subject_id)
        await runtime.roles.assign_role(
            account.subject_id, Role.ADMIN, profile_complete=True, email_verified=True
        )
        print(f"Created admin account: {email} (id: {account.subject_id})")
        return {
            "subject_id": account.subject_id,
            "email": email,
            "status": "created",
        }
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Learnity",
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    # Use a persisted memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("MEMORY_STORE_PATH", "/tmp/learnity-bootstrap")
        print(
            "Note: Using the file-backed memory store at "
            f"{os.environ['MEMORY_STORE_PATH']} (set DATABASE_URL for Postgres)"
        )

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email.strip().lower(), args.password, args.dry_run))

        if result["status"] == "created":
            print("\nAdmin account created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  Subject ID: {result['subject_id']}")
        elif result["status"] == "promoted":
            print("\nExisting account promoted to admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - account is already an admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
