#!/usr/bin/env python3
"""Complete every practice session whose timer has run out.

Usage:
    python scripts/expire_sessions.py

Meant for a cron job. Sessions are also completed lazily whenever an
answer or an end request reaches them, so running this is optional.
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from practice_engine.db.database import close_db
from practice_engine.engine import PracticeEngine


async def sweep() -> list[str]:
    engine = PracticeEngine()
    try:
        async with engine.connect() as db:
            return await engine.sessions.expire(db)
    finally:
        await close_db()


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s [%(name)s] %(message)s")
    expired = asyncio.run(sweep())
    print(f"Expired {len(expired)} sessions")
    for session_id in expired:
        print(f"  {session_id}")


if __name__ == "__main__":
    main()
