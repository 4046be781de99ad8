#!/usr/bin/env python3
"""
Create the ChatFlow tables (chat store plus ``scheduled_jobs``) on the
configured database, or report which ones are missing.

Usage:
    python scripts/migrate_db.py                      # create missing tables
    python scripts/migrate_db.py --check              # report only; exit 1 if any missing
    python scripts/migrate_db.py --url sqlite:///./other.db
"""
import argparse
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def missing_tables(engine) -> set[str]:
    """Model tables that do not exist yet on ``engine``."""
    from sqlalchemy import inspect
    from database.models import Base

    async with engine.connect() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
    return set(Base.metadata.tables) - existing


async def run_migration(check_only: bool = False, url: str = None) -> int:
    from config.settings import load_settings
    load_settings()

    from database.session import configure_engine, get_engine, init_db, close_db, _safe_url

    engine = configure_engine(url) if url else get_engine()
    print(f"{engine.dialect.name}: {_safe_url(engine)}")

    try:
        missing = await missing_tables(engine)
        if check_only:
            if missing:
                print(f"Missing tables: {', '.join(sorted(missing))}")
                return 1
            print("Schema up to date.")
            return 0

        await init_db()
        still_missing = await missing_tables(engine)
    finally:
        await close_db()

    if still_missing:
        print(f"Could not create: {', '.join(sorted(still_missing))}")
        return 1
    created = sorted(missing)
    print(f"Created: {', '.join(created)}" if created else "Nothing to create.")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Create ChatFlow database tables")
    parser.add_argument("--check", action="store_true", help="report missing tables without creating them")
    parser.add_argument("--url", help="database URL (defaults to database.url in settings)")
    args = parser.parse_args()
    sys.exit(asyncio.run(run_migration(check_only=args.check, url=args.url)))


if __name__ == "__main__":
    main()
