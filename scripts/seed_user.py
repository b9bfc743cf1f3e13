#!/usr/bin/env python3
"""Seed a user account for local testing and initial tenant setup.

Usage:
    # Using environment variables:
    SEED_EMAIL=owner@bistro.example SEED_PASSWORD=SecurePassword123 \
        python scripts/seed_user.py --role owner --tenant-id bistro

    # Or with command line args:
    python scripts/seed_user.py --email cook@bistro.example --password SecurePassword123 \
        --role staff --tenant-id bistro --name "Line Cook" --phone "+49 151 1234-5678"

Environment Variables:
    SEED_EMAIL: Email for the new user
    SEED_PASSWORD: Password (at least 8 characters with upper, lower and a digit)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ROLES = ("customer", "courier", "staff", "manager", "owner")


def seed_user(
    email: str,
    password: str,
    *,
    role: str,
    tenant_id: str | None,
    name: str | None,
    phone: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create the user unless it already exists in the tenant.

    Returns:
        dict with user_id, email, tenant_id and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tablesession.service.runtime import get_runtime

    runtime = get_runtime()
    tenant = tenant_id or runtime.settings.default_tenant_id

    existing = runtime.store.get_user_by_email(email.strip().lower(), tenant)
    if existing:
        print(f"User {email} already exists in tenant {tenant} (id: {existing.id}, role: {existing.role})")
        return {"user_id": existing.id, "email": email, "tenant_id": tenant, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} {email} in tenant {tenant}")
        return {"user_id": None, "email": email, "tenant_id": tenant, "status": "dry_run"}

    user = runtime.auth.create_user(
        email, password, name=name, role=role, tenant_id=tenant_id, phone=phone
    )
    print(f"Created {user.role} user: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "tenant_id": user.tenant_id, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed a user for the table session service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SEED_EMAIL"),
        help="User email (or set SEED_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SEED_PASSWORD"),
        help="User password (or set SEED_PASSWORD env var)",
    )
    parser.add_argument("--role", default="customer", choices=ROLES)
    parser.add_argument(
        "--tenant-id",
        default=None,
        help="Restaurant tenant; required for staff, manager, courier and owner",
    )
    parser.add_argument("--name", default=None)
    parser.add_argument("--phone", default=None, help="Phone number for one-time code login")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SEED_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or SEED_PASSWORD environment variable required")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store persisted under SHARED_FS_ROOT (set DATABASE_URL for Postgres)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from tablesession.service.errors import ServiceError

    try:
        result = seed_user(
            args.email,
            args.password,
            role=args.role,
            tenant_id=args.tenant_id,
            name=args.name,
            phone=args.phone,
            dry_run=args.dry_run,
        )
    except ServiceError as e:
        print(f"Error: {e.message}")
        if e.detail:
            print(f"       {e.detail}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Tenant: {result['tenant_id']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - user already exists.")


if __name__ == "__main__":
    main()
