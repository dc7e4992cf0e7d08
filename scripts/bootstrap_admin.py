#!/usr/bin/env python3
"""Create the first TestHub admin account, or promote an existing user.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng-Passphrase' \
        python scripts/bootstrap_admin.py --name "Ops Admin"

    python scripts/bootstrap_admin.py --email admin@example.com \
        --password 'Str0ng-Passphrase' --dry-run

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (12+ chars, 3 character classes)
    DATABASE_URL: PostgreSQL connection string; without it the in-memory store is used
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

_SPECIAL_CHARS = "!@#$%^&*()_+-=[]{}|;':\",./<>?"


def validate_password(password: str) -> bool:
    """Admin passwords are held to a stricter bar than self-registration."""
    if len(password) < 12:
        return False
    classes = [
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(c in _SPECIAL_CHARS for c in password),
    ]
    return sum(classes) >= 3


def bootstrap_admin(email: str, password: str, full_name: str, dry_run: bool = False) -> dict:
    """Ensure ``email`` belongs to an active admin.

    Returns:
        dict with user_id, email and status: created, promoted, already_admin or dry_run
    """
    # Imported late so the environment defaults below apply to Settings
    from testhub.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()
    existing = runtime.store.get_user_by_email(email)

    if existing is not None:
        if existing.role == "admin" and existing.is_active:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_user_role(existing.id, "admin")
        runtime.store.set_user_active(existing.id, True)
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        full_name,
        runtime.auth.hash_password(password),
        role="admin",
        is_active=True,
    )
    return {"user_id": user.id, "email": email, "status": "created"}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap a TestHub admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default="Administrator", help="Full name for a new account")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without writing anything",
    )
    args = parser.parse_args()

    if not args.email or not args.password:
        parser.error("--email and --password (or ADMIN_EMAIL/ADMIN_PASSWORD) are required")
    if not validate_password(args.password):
        parser.error("password needs 12+ characters from at least 3 character classes")

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: using the in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.password, args.name, args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    messages = {
        "created": "Created admin user",
        "promoted": "Promoted existing user to admin",
        "already_admin": "No changes needed, user is already an admin",
        "dry_run": "[DRY RUN] Would create or promote admin user",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
