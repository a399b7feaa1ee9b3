#!/usr/bin/env python3
"""Bootstrap a user and organization for local setup, or inspect an issued token.

Usage:
    # Create (or reuse) a GitHub user, give them an organization and a starter application:
    python scripts/bootstrap_org.py --github-id 12345 --username octocat --org "Acme" --app mail_service

    # Find which organization and key a raw service-key token belongs to:
    python scripts/bootstrap_org.py --lookup-token <raw token>

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    JWT_SECRET: Signing secret; must match the server's for the printed token to work
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_org(
    github_id: str,
    username: str,
    org_name: str,
    app_name: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create or reuse a user, create an organization, optionally an application.

    Returns:
        dict with user_id, organization_id, application_id and a JWT for the user
    """
    # Import here to avoid loading config before env vars are set
    from baluster.service.auth import AuthContext
    from baluster.service.runtime import get_runtime
    from baluster.storage.common import generate_id
    from baluster.storage.models import User

    runtime = get_runtime()

    user = runtime.store.get_user_by_github_id(github_id)
    if dry_run:
        action = "reuse" if user else "create"
        print(f"[DRY RUN] Would {action} user {username} and create organization {org_name!r}")
        return {"user_id": user.id if user else None, "status": "dry_run"}

    if user is None:
        user = runtime.store.upsert_user(
            User(id=generate_id(), github_id=github_id, username=username)
        )
        print(f"Created user {username} (id: {user.id})")
    else:
        print(f"Reusing existing user {user.username} (id: {user.id})")

    ctx = AuthContext(user_id=user.id, github_id=user.github_id, username=user.username)
    org = runtime.admin.create_organization(ctx, org_name)
    print(f"Created organization {org.name} (id: {org.id})")

    application_id = None
    if app_name:
        app = runtime.admin.create_application(
            ctx.for_organization(org.id), app_name, permissions=["read", "write"]
        )
        application_id = app.id
        print(f"Created application {app.name} (id: {app.id})")

    return {
        "user_id": user.id,
        "organization_id": org.id,
        "application_id": application_id,
        "token": runtime.auth.issue_token(user),
        "status": "created",
    }


def lookup_token(raw_token: str) -> dict | None:
    from baluster.service.runtime import get_runtime
    from baluster.service.tokens import hash_token

    runtime = get_runtime()
    key = runtime.store.find_service_key_by_hash(hash_token(raw_token))
    if key is None:
        return None
    return {
        "service_key_id": key.id,
        "organization_id": key.organization_id,
        "name": key.name,
        "applications": [grant.application_name for grant in key.applications],
        "expires_at": key.expires_at.isoformat() if key.expires_at else None,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an organization for Baluster",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--github-id", default=os.environ.get("BOOTSTRAP_GITHUB_ID"))
    parser.add_argument("--username", default=os.environ.get("BOOTSTRAP_USERNAME"))
    parser.add_argument("--org", default=os.environ.get("BOOTSTRAP_ORG"), help="Organization name")
    parser.add_argument("--app", default=None, help="Optional starter application name")
    parser.add_argument("--lookup-token", default=None, help="Raw service-key token to inspect")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not os.environ.get("JWT_SECRET"):
        print("Warning: JWT_SECRET not set; the printed token only works against this process")

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/baluster-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        if args.lookup_token:
            found = lookup_token(args.lookup_token)
            if found is None:
                print("No service key matches that token.")
                sys.exit(1)
            for field, value in found.items():
                print(f"  {field}: {value}")
            return

        if not args.github_id or not args.username or not args.org:
            print("Error: --github-id, --username and --org are required")
            sys.exit(1)

        result = bootstrap_org(args.github_id, args.username, args.org, args.app, args.dry_run)
        if result["status"] == "created":
            print("\nOrganization bootstrapped!")
            print(f"  Organization ID: {result['organization_id']}")
            print(f"  JWT: {result['token'][:50]}...")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
