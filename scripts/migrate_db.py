#!/usr/bin/env python3
"""
Database Migration — Create IVR tables from the SQLAlchemy models.

Usage:
    python -m scripts.migrate_db            # create missing tables
    python -m scripts.migrate_db --check    # report status only (no changes)
    python -m scripts.migrate_db --url sqlite:///./other.db
"""
import argparse
import asyncio

from sqlalchemy import text

from config.settings import load_settings
from database.models import Base
from database.session import close_db, configure_engine, get_engine, init_db


def _list_tables_sql(dialect: str) -> str:
    if dialect == "postgresql":
        return "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
    if dialect == "mysql":
        return "SHOW TABLES"
    return "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"


async def existing_tables() -> list[str]:
    engine = get_engine()
    async with engine.connect() as conn:
        result = await conn.execute(text(_list_tables_sql(engine.dialect.name)))
        return sorted(row[0] for row in result.fetchall())


async def run_migration(check_only: bool = False, url: str = None) -> set[str]:
    """Returns the set of model tables still missing afterwards."""
    load_settings()
    if url:
        configure_engine(url)

    engine = get_engine()
    url_text = str(engine.url)
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {url_text.split('@')[-1] if '@' in url_text else url_text}")
    print(f"Tables defined: {', '.join(Base.metadata.tables.keys())}")

    try:
        if not check_only:
            print("Running database migration...")
            await init_db()

        existing = await existing_tables()
        print(f"Tables existing: {', '.join(existing) or '(none)'}")
        missing = set(Base.metadata.tables.keys()) - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        return missing
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="IVR database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--url", default=None, help="Database URL (defaults to settings)")
    args = parser.parse_args()

    missing = asyncio.run(run_migration(check_only=args.check, url=args.url))
    raise SystemExit(1 if missing else 0)


if __name__ == "__main__":
    main()
