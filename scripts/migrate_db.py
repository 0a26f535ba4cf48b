#!/usr/bin/env python3
"""
Database Migration — Create session, contact-ledger and automation tables.

Usage:
    # Create missing tables:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check

    # Create tables, then load Automations from a YAML/JSON file
    # (a list of Automation documents, or {"automations": [...]}):
    python scripts/migrate_db.py --seed config/automations.yaml
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(conn, dialect: str) -> list[str]:
    from sqlalchemy import text

    if dialect == "postgresql":
        query = "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
    elif dialect == "mysql":
        query = "SHOW TABLES"
    else:  # sqlite
        query = "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
    result = await conn.execute(text(query))
    return [row[0] for row in result.fetchall()]


async def seed_automations(path: str) -> int:
    """Validate and store every Automation in the file. Returns how many were saved."""
    import yaml
    from database.config_store import SqlConfigStore
    from models.schemas import Automation

    with open(path) as f:
        raw = yaml.safe_load(f) or []
    documents = raw.get("automations", []) if isinstance(raw, dict) else raw

    store = SqlConfigStore()
    for document in documents:
        automation = Automation.model_validate(document)
        await store.save(automation)
        print(f"  seeded {automation.id} ({automation.name}, active={automation.is_active})")
    return len(documents)


async def run_migration(check_only: bool = False, seed: str = None):
    from config.settings import load_settings
    load_settings()

    from database.models import Base
    from database.session import close_db, get_engine, init_db

    engine = get_engine()
    dialect = engine.dialect.name
    defined = set(Base.metadata.tables.keys())

    if check_only:
        url = str(engine.url)
        print(f"Database: {dialect}")
        print(f"URL: {url.split('@')[-1] if '@' in url else url}")
        print(f"Tables defined: {', '.join(sorted(defined))}")
        async with engine.connect() as conn:
            existing = await _existing_tables(conn, dialect)
        print(f"Tables existing: {', '.join(existing) or '(none)'}")
        missing = defined - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await close_db()
        return

    print("Running database migration...")
    await init_db()
    async with engine.connect() as conn:
        existing = await _existing_tables(conn, dialect)
    print(f"Tables created/verified: {', '.join(sorted(defined & set(existing)))}")

    if seed:
        print(f"Seeding automations from {seed}...")
        count = await seed_automations(seed)
        print(f"Seeded {count} automation(s).")

    await close_db()
    print("Migration complete. ✓")


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--seed", help="YAML/JSON file of Automations to load")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check, seed=args.seed))


if __name__ == "__main__":
    main()
