#!/usr/bin/env python3
"""Seed confirmed demo accounts.

Usage:
    DATABASE_URL=postgresql://localhost:5432/starterauth python scripts/seed_users.py

    # Preview without writing:
    python scripts/seed_users.py --dry-run

Existing accounts are updated in place: their password is reset to the demo
password and they are marked confirmed.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEMO_USERS = [
    {"email": "admin@example.com", "password": "Admin123!", "name": "Admin User"},
    {"email": "user1@example.com", "password": "User123!", "name": "Regular User 1"},
    {"email": "user2@example.com", "password": "User123!", "name": "Regular User 2"},
]


def seed_users(dry_run: bool = False) -> list[dict]:
    """Create or refresh each demo user; returns one status row per account."""
    from starterauth.service.runtime import get_runtime

    runtime = get_runtime()
    results = []
    for demo in DEMO_USERS:
        existing = runtime.store.get_user_by_email(demo["email"])
        if dry_run:
            status = "would_update" if existing else "would_create"
            print(f"[DRY RUN] {status}: {demo['email']}")
            results.append({"email": demo["email"], "status": status})
            continue

        password_hash = runtime.auth.hash_password(demo["password"])
        if existing:
            user = runtime.store.update_user(
                existing.id,
                password_hash=password_hash,
                name=demo["name"],
                is_email_confirmed=True,
                email_confirmation_token=None,
                email_confirmation_expires=None,
            )
            status = "updated"
        else:
            user = runtime.store.create_user(
                demo["email"],
                password_hash,
                name=demo["name"],
                is_email_confirmed=True,
            )
            status = "created"
        print(f"{status.capitalize()} {demo['email']} (id: {user.id})")
        results.append({"email": demo["email"], "user_id": user.id, "status": status})
    return results


def main():
    parser = argparse.ArgumentParser(
        description="Seed demo users for starterauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        results = seed_users(args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"\nSeeded {len(results)} users.")


if __name__ == "__main__":
    main()
