#!/usr/bin/env python3
"""
Queue table setup — create or check the follow-up tables.

    python scripts/migrate_db.py                # create what is missing
    python scripts/migrate_db.py --check        # report only, exit 1 if incomplete
    python scripts/migrate_db.py --url sqlite:///./other.db
"""
import argparse
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def ensure_tables(url: str = None, check_only: bool = False) -> int:
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    from database.session import QueueDatabase

    config = load_settings().database
    db = QueueDatabase(url or config.url, pool_size=config.pool_size, echo=config.echo_sql)
    try:
        if not check_only:
            created = await db.create_tables()
            print(f"Ensured tables: {', '.join(created)}")
        missing = await db.missing_tables()
        present = await db.existing_tables()
    finally:
        await db.dispose()

    print(f"Database: {db.url.split('@')[-1]}")
    print(f"Present: {', '.join(present) or '(none)'}")
    if missing:
        print(f"Missing: {', '.join(missing)}")
        return 1
    print("Queue tables are complete.")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Create follow-up queue tables")
    parser.add_argument("--check", action="store_true", help="Report only, change nothing")
    parser.add_argument("--url", default=None, help="Database URL (defaults to settings)")
    args = parser.parse_args()
    sys.exit(asyncio.run(ensure_tables(url=args.url, check_only=args.check)))


if __name__ == "__main__":
    main()
