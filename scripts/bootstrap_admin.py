#!/usr/bin/env python3
"""Create or promote a portal administrator.

Usage:
    ADMIN_EMAIL=dean@college.edu ADMIN_PASSWORD=changeme123 python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email dean@college.edu --password changeme123 --name "Dean"

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (at least 8 characters)
    STATE_DIR: Directory holding persisted principals and the signing secret
"""
from __future__ import annotations

import argparse
import os
import sys


def bootstrap_admin(email: str, password: str, name: str, dry_run: bool = False) -> dict:
    """Create an admin account, or promote an existing account to admin.

    Returns:
        dict with principal_id, email, and status
    """
    # Imported late so settings see the environment prepared by main()
    from admissions_portal.service.runtime import get_runtime
    from admissions_portal.storage.models import ROLE_ADMIN

    runtime = get_runtime()
    existing = runtime.store.get_principal_by_email(email)

    if existing:
        if existing.role == ROLE_ADMIN:
            return {"principal_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"principal_id": existing.id, "email": email, "status": "dry_run"}
        runtime.auth.set_role(existing.id, ROLE_ADMIN)
        return {"principal_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"principal_id": None, "email": email, "status": "dry_run"}

    principal, _token = runtime.auth.register(email, password, name)
    runtime.auth.set_role(principal.id, ROLE_ADMIN)
    return {"principal_id": principal.id, "email": email, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admissions portal administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default="Administrator")
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

    os.environ.setdefault("PERSIST_STATE", "true")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    # Registration must work even when self-service signup is turned off.
    os.environ["ALLOW_SIGNUP"] = "true"

    from admissions_portal.service.errors import ServiceError

    try:
        result = bootstrap_admin(args.email, args.password, args.name, args.dry_run)
    except (ServiceError, RuntimeError) as exc:
        print(f"Error: {exc}")
        return 1

    status = result["status"]
    if status == "created":
        print(f"Created admin account {result['email']} (id: {result['principal_id']})")
    elif status == "promoted":
        print(f"Promoted {result['email']} to admin; existing sessions were signed out")
    elif status == "already_admin":
        print(f"{result['email']} is already an admin; nothing to do")
    else:
        print(f"[DRY RUN] No changes made for {result['email']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
