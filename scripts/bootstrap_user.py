#!/usr/bin/env python3
"""Create the ledger schema and/or a login user for initial setup.

Usage:
    # Using environment variables:
    BOOTSTRAP_USERNAME=alice BOOTSTRAP_PASSWORD=SecurePassword123! python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --init-schema --username alice --password SecurePassword123!

Environment Variables:
    BOOTSTRAP_USERNAME: Username to create
    BOOTSTRAP_PASSWORD: Password for the user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def init_schema(database_url: str) -> None:
    from sessionguard.storage.postgres import PostgresStore

    store = PostgresStore(database_url, verify=False)
    try:
        store.ensure_schema()
        store.verify_schema()
    finally:
        store.close()
    print("Ledger schema is in place")


def bootstrap_user(username: str, password: str, dry_run: bool = False) -> dict:
    """Create a user unless one with that username exists.

    Returns:
        dict with user_id, username, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from sessionguard.service.runtime import get_runtime

    runtime = get_runtime()

    existing_user = runtime.store.get_user_by_username(username)
    if existing_user:
        print(f"User {username} already exists (id: {existing_user.id})")
        return {"user_id": existing_user.id, "username": username, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    pwd_hash, algo = runtime.verifier.hash(password)
    user = runtime.store.create_user(username, pwd_hash, password_algo=algo)
    print(f"Created user: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the SessionGuard ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("BOOTSTRAP_USERNAME"),
        help="Username (or set BOOTSTRAP_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="Password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create ledger tables in DATABASE_URL before anything else",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if args.init_schema:
        if not os.environ.get("DATABASE_URL"):
            print("Error: --init-schema requires DATABASE_URL")
            sys.exit(1)
        try:
            init_schema(os.environ["DATABASE_URL"])
        except Exception as e:
            print(f"Error: {e}")
            sys.exit(1)
        if not args.username:
            return

    if not args.username:
        print("Error: --username or BOOTSTRAP_USERNAME environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_user(args.username, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - user already exists.")


if __name__ == "__main__":
    main()
