#!/usr/bin/env python3
"""Load the practice item catalog from YAML.

Usage:
    python scripts/seed_items.py [--catalog PATH]

Writes to the database configured in .env (DATABASE_URL or DATABASE_PATH).
Run the server (or `alembic upgrade head`) once first so the schema exists.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from practice_engine.db.catalog import load_catalog, seed_catalog
from practice_engine.db.database import close_db, connection
from practice_engine.errors import EngineError

DEFAULT_CATALOG = Path(__file__).resolve().parent.parent / "data" / "seed_items.yaml"


async def seed(catalog_path: Path) -> int:
    items = load_catalog(catalog_path)
    try:
        async with connection() as db:
            return await seed_catalog(db, items)
    finally:
        await close_db()


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s [%(name)s] %(message)s")
    parser = argparse.ArgumentParser(description="Load the practice item catalog from YAML")
    parser.add_argument(
        "--catalog",
        type=Path,
        default=DEFAULT_CATALOG,
        help="Path to the catalog YAML (default: data/seed_items.yaml)",
    )
    args = parser.parse_args()

    if not args.catalog.exists():
        print(f"ERROR: catalog not found: {args.catalog}")
        sys.exit(1)

    try:
        count = asyncio.run(seed(args.catalog))
    except EngineError as exc:
        print(f"ERROR: {exc.message}")
        sys.exit(1)
    print(f"Seeded {count} items from {args.catalog}")


if __name__ == "__main__":
    main()
