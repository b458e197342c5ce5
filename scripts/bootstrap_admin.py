#!/usr/bin/env python3
"""Grant the admin role record to a principal, out of band.

Usage:
    # Using environment variables:
    ADMIN_PRINCIPAL_ID=4f6c... REDIS_URL=redis://localhost:6379/0 python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --principal-id 4f6c... --organization-id acme

Environment Variables:
    ADMIN_PRINCIPAL_ID: Identity-provider id of the principal to promote
    REDIS_URL: Redis holding the sign-in state (required unless --dry-run)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    principal_id: str,
    permissions: Optional[List[str]] = None,
    organization_id: Optional[str] = None,
    dry_run: bool = False,
    store=None,
) -> dict:
    """Create the admin role record unless one exists.

    Returns:
        dict with principal_id, role, permissions and status
        ('created', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from deskgate.config import get_settings
    from deskgate.service.admin import AdminResolver
    from deskgate.storage.redis_store import RedisStore

    settings = get_settings()
    if store is None:
        store = RedisStore(
            settings.redis_url,
            socket_timeout=settings.redis_socket_timeout,
            history_seconds=settings.session_history_days * 24 * 3600,
        )

    try:
        existing = await store.get_admin_role(principal_id)
        if existing:
            print(f"Principal {principal_id} already holds role '{existing.role}'")
            return {
                "principal_id": principal_id,
                "role": existing.role,
                "permissions": list(existing.permissions),
                "status": "already_admin",
            }

        if dry_run:
            print(f"[DRY RUN] Would grant admin to principal {principal_id}")
            return {"principal_id": principal_id, "role": "admin", "status": "dry_run"}

        role = await AdminResolver(store).grant_admin(
            principal_id, permissions=permissions, organization_id=organization_id
        )
        print(f"Granted admin to principal {principal_id}")
        return {
            "principal_id": principal_id,
            "role": role.role,
            "permissions": list(role.permissions),
            "status": "created",
        }
    finally:
        await store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Grant the admin role to a principal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--principal-id",
        default=os.environ.get("ADMIN_PRINCIPAL_ID"),
        help="Principal id (or set ADMIN_PRINCIPAL_ID env var)",
    )
    parser.add_argument(
        "--permission",
        action="append",
        dest="permissions",
        help="Permission to grant; repeat for several (default: full admin set)",
    )
    parser.add_argument("--organization-id", default=None, help="Optional organization")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.principal_id:
        print("Error: --principal-id or ADMIN_PRINCIPAL_ID environment variable required")
        sys.exit(1)

    from deskgate.service.errors import StorageUnavailableError

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.principal_id,
                permissions=args.permissions,
                organization_id=args.organization_id,
                dry_run=args.dry_run,
            )
        )
    except StorageUnavailableError as e:
        print(f"Error: {e.message} (is REDIS_URL reachable?)")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin role created successfully!")
        print(f"  Principal ID: {result['principal_id']}")
        print(f"  Permissions: {', '.join(result['permissions'])}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - principal already has a role record.")


if __name__ == "__main__":
    main()
