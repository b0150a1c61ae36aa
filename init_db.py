"""Initialize database schema for runlist intake.

Creates the auction, runlist, vehicle, alias, buy box, reference data and
inspection tables. Run this before starting the API server.
"""

import argparse
import asyncio
import sys

from intake.config import settings
from intake.db import engine
from intake.models import Base


async def init_database(*, drop: bool = False):
    """Create all database tables."""
    print(f"Initializing database: {settings.db.url.split('@')[-1]}")

    async with engine.begin() as conn:
        if drop:
            await conn.run_sync(Base.metadata.drop_all)
            print("Dropped existing tables")

        await conn.run_sync(Base.metadata.create_all)
        print("Created all tables")

    await engine.dispose()
    print(f"Tables: {', '.join(Base.metadata.tables.keys())}")


async def main(argv: list[str] | None = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--drop", action="store_true", help="Drop existing tables first")
    args = parser.parse_args(argv)

    try:
        await init_database(drop=args.drop)
    except Exception as e:
        print(f"Error initializing database: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
