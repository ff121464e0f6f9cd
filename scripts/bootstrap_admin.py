#!/usr/bin/env python3
"""Provision the first administrator in the credential store.

Usage:
    STATE_PATH=/srv/adminauth/state.json MFA_SECRET_KEY=... \\
    ACCESS_TOKEN_SECRET=... REFRESH_TOKEN_SECRET=... \\
        python scripts/bootstrap_admin.py --email ops@avigate.co --password 'S3cure!Passphrase'

Environment Variables:
    ADMIN_EMAIL: Email (login key) for the administrator
    ADMIN_PASSWORD: Password (12+ chars, upper, lower, digit, special character)
    STATE_PATH: JSON file the credential store persists to
    MFA_SECRET_KEY: Key used to encrypt TOTP secrets in STATE_PATH
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from adminauth.service.errors import ServiceError  # noqa: E402
from adminauth.service.passwords import validate_password_strength  # noqa: E402
from adminauth.storage.models import Role  # noqa: E402


async def bootstrap_admin(
    runtime, email: str, password: str, *, role: str = Role.SUPER_ADMIN.value, dry_run: bool = False
) -> dict:
    """Create an administrator unless one with this email already exists.

    Returns:
        dict with principal_id, email and status ('created', 'exists' or 'dry_run')
    """
    existing = runtime.store.find_by_key(email)
    if existing:
        print(f"Administrator {existing.email} already exists (id: {existing.id})")
        return {"principal_id": existing.id, "email": existing.email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} administrator: {email}")
        return {"principal_id": None, "email": email, "status": "dry_run"}

    principal = await runtime.engine.create_principal(email, password, role=role)
    print(f"Created {role} administrator: {principal.email} (id: {principal.id})")
    return {"principal_id": principal.id, "email": principal.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Provision an administrator account",
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
        "--role",
        default=Role.SUPER_ADMIN.value,
        choices=[r.value for r in Role],
        help="Role to assign (default: super_admin)",
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
    failures = validate_password_strength(args.password)
    if failures:
        print("Error: password " + "; ".join(failures))
        sys.exit(1)
    if not os.environ.get("STATE_PATH"):
        print("Error: STATE_PATH must point at the credential store file")
        sys.exit(1)

    # sessions are irrelevant here; never require Redis for provisioning
    os.environ["USE_MEMORY_CACHE"] = "true"

    from adminauth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        result = asyncio.run(
            bootstrap_admin(
                runtime, args.email, args.password, role=args.role, dry_run=args.dry_run
            )
        )
    except (ServiceError, RuntimeError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdministrator created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Principal ID: {result['principal_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
