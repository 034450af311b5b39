#!/usr/bin/env python3
"""Create the ROOT role and an initial administrator.

Usage:
    # Using environment variables:
    ROOT_USERNAME=admin1 ROOT_EMAIL=admin@example.com ROOT_PASSWORD=secret123 python scripts/bootstrap_root.py

    # Or with command line args:
    python scripts/bootstrap_root.py --username admin1 --email admin@example.com --password secret123

Environment Variables:
    ROOT_NAME: Display name for the administrator (default "Administrator")
    ROOT_USERNAME: Login handle for the administrator
    ROOT_EMAIL: Email for the administrator
    ROOT_PASSWORD: Password for the administrator
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_root(
    name: str, username: str, email: str, password: str, dry_run: bool = False
) -> dict:
    """Ensure the ROOT role exists and ``username`` holds it.

    Returns:
        dict with role_id, user_id, username and status
        ('created', 'promoted', 'already_root' or 'dry_run')
    """
    # imported late so the environment set up in main() is read
    from tenantguard.service.runtime import get_runtime
    from tenantguard.storage.models import ROOT_ROLE_NAME

    runtime = get_runtime()
    await runtime.open()
    try:
        role = await runtime.roles.find_by_name(ROOT_ROLE_NAME)
        existing = await runtime.users.find_by_username(username)

        if dry_run:
            action = "promote" if existing else "create"
            print(f"[DRY RUN] Would {action} {username} with role {ROOT_ROLE_NAME}")
            return {
                "role_id": role.id if role else None,
                "user_id": existing.id if existing else None,
                "username": username,
                "status": "dry_run",
            }

        if role is None:
            role = await runtime.role_service.create_role(name=ROOT_ROLE_NAME, permissions=[])
            print(f"Created role {ROOT_ROLE_NAME} (id: {role.id})")

        if existing is not None:
            if role.id in existing.role_ids:
                print(f"User {username} already holds {ROOT_ROLE_NAME} (id: {existing.id})")
                return {
                    "role_id": role.id,
                    "user_id": existing.id,
                    "username": username,
                    "status": "already_root",
                }
            await runtime.user_service.update_user(
                existing.id, role_ids=[*existing.role_ids, role.id]
            )
            print(f"Granted {ROOT_ROLE_NAME} to existing user {username} (id: {existing.id})")
            return {
                "role_id": role.id,
                "user_id": existing.id,
                "username": username,
                "status": "promoted",
            }

        user = await runtime.user_service.create_user(
            name=name, username=username, email=email, role_ids=[role.id]
        )
        await runtime.user_service.set_password(email, password, password)
        print(f"Created administrator {username} (id: {user.id})")
        return {
            "role_id": role.id,
            "user_id": user.id,
            "username": username,
            "status": "created",
        }
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the ROOT role and an administrator for TenantGuard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ROOT_NAME", "Administrator"),
        help="Display name (or set ROOT_NAME env var)",
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ROOT_USERNAME"),
        help="Login handle (or set ROOT_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ROOT_EMAIL"),
        help="Email (or set ROOT_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ROOT_PASSWORD"),
        help="Password (or set ROOT_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for option in ("username", "email", "password"):
        if not getattr(args, option):
            print(f"Error: --{option} or ROOT_{option.upper()} environment variable required")
            sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from tenantguard.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_root(args.name, args.username, args.email, args.password, args.dry_run)
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        if exc.detail:
            print(f"       {exc.detail}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdministrator created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user granted the ROOT role.")
    elif result["status"] == "already_root":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
