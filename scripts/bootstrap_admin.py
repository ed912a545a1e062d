#!/usr/bin/env python3
"""Create the first ADMIN account, or promote an existing user to ADMIN.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass1' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass1' \\
        --first-name Site --last-name Admin --phone +15550001111

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    email: str,
    password: str,
    *,
    first_name: str = "Admin",
    last_name: str = "User",
    phone: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin; returns user_id, email and a status string."""
    # Imported late so the env defaults set in main() are seen by the settings
    from mentorauth.api.schemas import _validate_email, _validate_password_strength
    from mentorauth.service.auth import PasswordVerifier
    from mentorauth.service.runtime import get_runtime
    from mentorauth.storage.models import Role

    email = _validate_email(email)
    runtime = get_runtime()
    store = runtime.store
    now = datetime.now(timezone.utc)

    existing = store.get_user_by_email(email)
    if existing:
        if existing.role == Role.ADMIN.value:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        store.update_user_role(existing.id, Role.ADMIN.value)
        store.mark_user_verified(existing.id, now)
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    _validate_password_strength(password)
    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = store.create_user(
        email,
        first_name,
        last_name,
        phone_number=phone,
        role=Role.ADMIN.value,
        email_verified=True,
        phone_verified=True,
        verified_at=now,
        credential=PasswordVerifier(store).hash(password),
    )
    return {"user_id": user.id, "email": email, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the mentor platform",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--last-name", default="User")
    parser.add_argument("--phone", default=None)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(
            args.email,
            args.password,
            first_name=args.first_name,
            last_name=args.last_name,
            phone=args.phone,
            dry_run=args.dry_run,
        )
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1

    status = result["status"]
    if status == "created":
        print(f"Created admin user: {result['email']} (id: {result['user_id']})")
    elif status == "promoted":
        print(f"Promoted existing user {result['email']} to admin (id: {result['user_id']})")
    elif status == "already_admin":
        print(f"No changes needed - {result['email']} is already an admin.")
    else:
        print(f"[DRY RUN] Would create or promote admin user: {result['email']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
