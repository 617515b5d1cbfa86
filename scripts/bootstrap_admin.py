#!/usr/bin/env python3
"""Bootstrap an admin account for initial setup.

Admins cannot self-register through the API, so the first one is created
here with its email pre-verified. Admin logins still require a two-factor
code on every sign-in.

Usage:
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD='Secure#Pass123' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email ops@example.com --password 'Secure#Pass123' --phone +15550100

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (memory store under STATE_DIR if not set)
"""
from __future__ import annotations

import argparse
import os
import sys


def bootstrap_admin(
    email: str, password: str, *, phone: str | None = None, dry_run: bool = False
) -> dict:
    """Create an admin account unless the address is already registered.

    Returns:
        dict with account_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Imported late so the environment defaults below apply to settings
    from rideauth.service.passwords import validate_password_strength
    from rideauth.service.runtime import get_runtime
    from rideauth.storage.models import Purpose, Role

    runtime = get_runtime()

    existing = runtime.store.get_account_by_email(email)
    if existing:
        print(f"Account {email} already exists with role {existing.role.value} (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "exists"}

    validate_password_strength(password)
    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.store.create_account(
        email, runtime.hasher.hash(password), phone=phone, role=Role.ADMIN
    )
    runtime.store.mark_contact_verified(account.id, Purpose.EMAIL)
    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for rideauth",
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
    parser.add_argument("--phone", default=os.environ.get("ADMIN_PHONE"), help="Admin phone number")
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
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from rideauth.service.errors import ServiceError

    try:
        result = bootstrap_admin(
            args.email, args.password, phone=args.phone, dry_run=args.dry_run
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for violation in exc.detail.get("violations", []):
            print(f"  - {violation}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "exists":
        print("\nNo changes made.")


if __name__ == "__main__":
    main()
