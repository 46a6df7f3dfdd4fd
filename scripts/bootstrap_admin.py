#!/usr/bin/env python3
"""Create or promote an admin identity.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! --issue-token

Environment Variables:
    ADMIN_EMAIL: Email for the admin identity
    ADMIN_PASSWORD: Password for the admin identity
    DATABASE_URL: PostgreSQL connection string (memory store is used when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3 or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    email: str, password: str, *, dry_run: bool = False, issue_token: bool = False
) -> dict:
    # Imported late so the env defaults below are in place before settings load
    from sessionguard.service.runtime import Runtime

    runtime = Runtime()
    try:
        existing = runtime.store.get_identity_by_email(email)
        if existing and existing.role == "admin":
            return {"identity_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            action = "promote" if existing else "create"
            return {"identity_id": existing.id if existing else None, "email": email, "status": f"dry_run_{action}"}

        if existing:
            runtime.store.update_identity_role(existing.id, "admin")
            runtime.identities.save_password(existing.id, password)
            identity = runtime.store.get_identity(existing.id)
            status = "promoted"
        else:
            identity = runtime.identities.register(email, password, role="admin")
            status = "created"

        result = {"identity_id": identity.id, "email": identity.email, "status": status}
        if issue_token:
            login = await runtime.auth.issue_for_identity(identity)
            result["access_token"] = login.access_token
            result["session_id"] = login.session_id
        return result
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for sessionguard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument(
        "--issue-token",
        action="store_true",
        help="Open a session for the admin and print its access token",
    )
    args = parser.parse_args()

    if not args.email:
        parser.error("--email or ADMIN_EMAIL is required")
    if not args.password:
        parser.error("--password or ADMIN_PASSWORD is required")
    if not validate_password(args.password):
        parser.error("password must be at least 12 characters with 3+ character classes")

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/sessionguard-bootstrap")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: using the in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                dry_run=args.dry_run,
                issue_token=args.issue_token,
            )
        )
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    print(f"{result['status']}: {result['email']} (id: {result['identity_id']})")
    if result.get("access_token"):
        print(f"  session: {result['session_id']}")
        print(f"  access token: {result['access_token']}")


if __name__ == "__main__":
    main()
