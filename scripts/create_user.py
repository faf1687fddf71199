#!/usr/bin/env python3
"""Create an email/password user, optionally enrolled in TOTP.

Usage:
    python scripts/create_user.py --email user@example.com --password 'long enough pw'
    python scripts/create_user.py --email user@example.com --password '...' --enable-mfa

Environment Variables:
    USER_EMAIL / USER_PASSWORD: used when the flags are omitted
    SHARED_FS_ROOT: where the memory store keeps its state file
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_user(
    email: str,
    password: str,
    *,
    enable_mfa: bool = False,
    display_name: str | None = None,
    dry_run: bool = False,
) -> dict:
    from ticketgate.service.credentials import new_totp_secret, provisioning_uri
    from ticketgate.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()
    existing = runtime.store.get_user_by_email(email)
    if existing:
        print(f"User {email} already exists (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "exists"}

    await runtime.credentials.enforce_password_policy(password)
    if dry_run:
        print(f"[DRY RUN] Would create user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        password_hash=runtime.credentials.hash_password(password),
        display_name=display_name,
        locale=runtime.settings.default_locale,
        email_verified=True,
        default_role=runtime.settings.default_role,
    )
    result = {"user_id": user.id, "email": email, "status": "created"}
    if enable_mfa:
        secret = new_totp_secret()
        runtime.store.update_user(user.id, mfa_secret=secret, mfa_enabled=True)
        result["provisioning_uri"] = provisioning_uri(
            secret, email, issuer=runtime.settings.totp_issuer
        )
    print(f"Created user: {email} (id: {user.id})")
    return result


def main() -> int:
    parser = argparse.ArgumentParser(description="Create an email/password user")
    parser.add_argument("--email", default=os.getenv("USER_EMAIL"), help="User email")
    parser.add_argument("--password", default=os.getenv("USER_PASSWORD"), help="User password")
    parser.add_argument("--display-name", default=None, help="Display name")
    parser.add_argument("--enable-mfa", action="store_true", help="Enroll the user in TOTP")
    parser.add_argument("--dry-run", action="store_true", help="Validate without creating")
    args = parser.parse_args()

    if not args.email or not args.password:
        parser.error("--email and --password (or USER_EMAIL / USER_PASSWORD) are required")

    from ticketgate.service.errors import ServiceError

    try:
        result = asyncio.run(
            create_user(
                args.email,
                args.password,
                enable_mfa=args.enable_mfa,
                display_name=args.display_name,
                dry_run=args.dry_run,
            )
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    if result.get("provisioning_uri"):
        print(f"TOTP provisioning URI: {result['provisioning_uri']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
