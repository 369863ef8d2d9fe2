"""Shared fixtures: a throwaway SQLite database per test and a wired engine.

Settings are read at import time, so the environment is prepared here
before anything from practice_engine is imported.
"""

import asyncio
import os
import random

os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-at-least-32-chars-long")
os.environ["DATABASE_URL"] = ""

import aiosqlite
import pytest

from practice_engine.db import practice_store as ps
from practice_engine.db.database import SCHEMA_PATH
from practice_engine.engine import PracticeEngine
from practice_engine.routes.auth import create_token
from practice_engine.services.clock import FixedClock

USER = "user-1"
OTHER_USER = "user-2"


def make_item(item_id, difficulty=1500.0, lang="es", level="B1", exam="EOI",
              skill_scope=("W",), tags=("general",), active=True):
    return {
        "id": item_id,
        "term": f"term {item_id}",
        "lang": lang,
        "level": level,
        "exam": exam,
        "skill_scope": list(skill_scope),
        "tags": list(tags),
        "difficulty_elo": difficulty,
        "content_version": "1",
        "active": active,
    }


async def _create_schema(path):
    async with aiosqlite.connect(path) as db:
        await db.executescript(SCHEMA_PATH.read_text())
        await db.commit()


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "practice_test.db")
    asyncio.run(_create_schema(path))
    return path


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def engine(db_path, clock):
    return PracticeEngine(database_path=db_path, clock=clock, rng=random.Random(7))


@pytest.fixture
def seed(engine):
    """Insert catalog items: seed(make_item("a"), make_item("b", 1700))."""

    def _seed(*items):
        async def _go():
            async with engine.connect() as db:
                for item in items:
                    await ps.upsert_item(db, item)

        asyncio.run(_go())

    return _seed


@pytest.fixture
def run(engine):
    """Run a coroutine function against a fresh connection: run(lambda db: ...)."""

    def _run(fn):
        async def _go():
            async with engine.connect() as db:
                return await fn(db)

        return asyncio.run(_go())

    return _run


def auth_headers(user_id=USER, role="student"):
    return {"Authorization": f"Bearer {create_token(user_id, role)}"}
