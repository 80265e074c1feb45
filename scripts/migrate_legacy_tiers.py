#!/usr/bin/env python3
"""Rewrite legacy subscription tier spellings to canonical tier ids.

Usage:
    # Preview:
    python scripts/migrate_legacy_tiers.py --dry-run

    # Apply against the configured database:
    DATABASE_URL=postgresql://... python scripts/migrate_legacy_tiers.py

Mapping:
    anything containing "enterprise"        -> enterprise
    "premium" or anything containing "pro"  -> pro
    any other unknown value                 -> basic

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    TIER_CONFIG_PATH: Optional JSON tier table (defaults to the built-in tiers)
"""
from __future__ import annotations

import argparse
import os
import sys


def run(dry_run: bool) -> int:
    # Import here to avoid loading config before env vars are set
    from dealflow.config import get_settings
    from dealflow.service.audit import AuditSink
    from dealflow.service.tier_migration import migrate_legacy_tiers
    from dealflow.service.tiers import load_tier_config
    from dealflow.storage.memory import MemoryStore
    from dealflow.storage.postgres import PostgresStore

    settings = get_settings()
    secret_key = settings.mfa_secret_key or settings.jwt_secret
    if settings.use_memory_store:
        store = MemoryStore(fs_root=settings.shared_fs_root, secret_key=secret_key)
    else:
        store = PostgresStore(
            settings.database_url,
            secret_key=secret_key,
            connect_timeout=settings.database_connect_timeout_seconds,
        )
    tiers = load_tier_config(settings.tier_config_path)
    changes = migrate_legacy_tiers(store, tiers, audit=AuditSink(store), dry_run=dry_run)

    prefix = "[DRY RUN] Would migrate" if dry_run else "Migrated"
    for change in changes:
        print(f"{prefix} {change.account_id}: {change.previous!r} -> {change.tier}")
    print(f"\n{len(changes)} account(s) {'to update' if dry_run else 'updated'}.")
    if hasattr(store, "close"):
        store.close()
    return len(changes)


def main():
    parser = argparse.ArgumentParser(
        description="Migrate legacy subscription tier names",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL") and not os.environ.get("USE_MEMORY_STORE"):
        print("Error: DATABASE_URL environment variable required")
        sys.exit(1)

    try:
        run(args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
