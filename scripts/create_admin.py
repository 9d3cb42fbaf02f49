#!/usr/bin/env python3
"""Create or promote an administrator account.

Usage:
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD='S3cure!Passphrase#9' python scripts/create_admin.py

    python scripts/create_admin.py --email ops@example.com --name "Ops Team" --role SUPER_ADMIN

Uses the configured store, so point STORE_BACKEND/REDIS_URL (or
PERSIST_MEMORY_STORE with STATE_DIR) at the deployment's data first.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

from bastion.config import Settings
from bastion.service.credentials import RegistrationProfile
from bastion.service.errors import ValidationError
from bastion.service.runtime import Runtime
from bastion.storage.models import Role

_ADMIN_ROLES = (Role.ADMIN.value, Role.SUPER_ADMIN.value)


async def create_admin(
    runtime: Runtime, email: str, password: str, name: str, role: str, dry_run: bool = False
) -> dict:
    existing = await runtime.credentials.get_user_by_email(email)
    if existing:
        if existing.role == role:
            return {"user_id": existing.id, "email": existing.email, "status": "unchanged"}
        if dry_run:
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        await runtime.credentials.set_role(existing.id, role)
        # Outstanding tokens carry the old role and stop verifying on their own
        await runtime.sessions.invalidate_user(existing.id, reason="role changed")
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}
    profile = await runtime.credentials.register(
        RegistrationProfile(email=email, name=name, role=role), password
    )
    return {"user_id": profile["id"], "email": profile["email"], "status": "created"}


async def _run(args: argparse.Namespace) -> dict:
    settings = Settings.from_env()
    runtime = Runtime(settings.model_copy(update={"maintenance_enabled": False}))
    await runtime.init()
    try:
        return await create_admin(
            runtime, args.email, args.password, args.name, args.role, args.dry_run
        )
    finally:
        await runtime.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Create or promote a Bastion administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", "Administrator"))
    parser.add_argument("--role", choices=_ADMIN_ROLES, default=Role.SUPER_ADMIN.value)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email/--password or ADMIN_EMAIL/ADMIN_PASSWORD are required")
        sys.exit(1)

    try:
        result = asyncio.run(_run(args))
    except ValidationError as exc:
        print(f"Error: {exc.message}")
        for violation in exc.violations:
            print(f"  - {violation}")
        sys.exit(1)
    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
