#!/usr/bin/env python3
"""
Database Migration — Create the back-office tables from the SQLAlchemy models.

Usage:
    python -m scripts.migrate_db                  # create missing tables
    python -m scripts.migrate_db --check          # report status only
    python -m scripts.migrate_db --url sqlite:///./backoffice.db
"""
import argparse
import asyncio

from sqlalchemy import inspect

from database.models import Base
from database.session import _redact, close_db, configure_engine, init_db


async def existing_tables(engine) -> list[str]:
    async with engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


async def run_migration(url: str | None = None, check_only: bool = False) -> set[str]:
    """Return the set of model tables still missing after the run."""
    engine = configure_engine(url)
    defined = set(Base.metadata.tables.keys())
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {_redact(str(engine.url))}")

    try:
        if not check_only:
            print("Running database migration...")
            await init_db()

        existing = set(await existing_tables(engine))
        missing = defined - existing
        print(f"Tables defined: {', '.join(sorted(defined))}")
        print(f"Tables existing: {', '.join(sorted(existing & defined)) or '(none)'}")
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        return missing
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Back-office database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--url", default=None, help="Database URL (defaults to settings)")
    args = parser.parse_args()

    missing = asyncio.run(run_migration(args.url, check_only=args.check))
    raise SystemExit(1 if missing else 0)


if __name__ == "__main__":
    main()
