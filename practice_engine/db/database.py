"""Database abstraction layer supporting both SQLite (aiosqlite) and PostgreSQL (asyncpg).

Backend is selected via the DATABASE_URL setting:
  - starts with "postgresql://" → asyncpg
  - absent / empty             → aiosqlite (uses DATABASE_PATH)

The PostgreSQL wrapper transparently converts:
  - ? placeholders → $1, $2, … (positional)
  - cursor.lastrowid → RETURNING id
  - cursor.rowcount → parsed from the command status
  - Row access by column name (dict-like)

Units of work go through connection() / transaction() and are bounded by
bounded(), which turns a hung storage call into StorageTimeout.
"""

import re
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, date
from pathlib import Path

from alembic import command
from alembic.config import Config

from practice_engine.config import settings
from practice_engine.errors import StorageTimeout, StorageUnavailable

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


def _is_postgres() -> bool:
    return settings.database_url.startswith("postgresql://")


# ── SQLite helpers ────────────────────────────────────────────────────

async def _connect_sqlite(database_path: str):
    import aiosqlite
    # Autocommit: transactions are only opened explicitly by transaction()
    db = await aiosqlite.connect(
        database_path, timeout=settings.storage_timeout_s, isolation_level=None
    )
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    # WAL keeps readers from blocking a writer's commit
    await db.execute("PRAGMA journal_mode = WAL")
    return db


# ── PostgreSQL wrapper ────────────────────────────────────────────────

_pg_pool = None


async def _get_pg_pool():
    global _pg_pool
    if _pg_pool is None:
        import asyncpg
        _pg_pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=2,
            max_size=10,
            command_timeout=settings.storage_timeout_s,
        )
    return _pg_pool


def _sqlite_compat(value):
    """Convert asyncpg-native types to SQLite-compatible Python types.

    SQLite always returns timestamps as strings; asyncpg returns datetime
    objects.  Converting here keeps every query helper working unchanged.
    """
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date) and not isinstance(value, datetime):
        return value.isoformat()
    return value


class PgRow:
    """Wraps an asyncpg Record to support dict-style access by column name.

    Mimics sqlite3.Row interface: keys() + __getitem__ enable dict(row).
    """

    __slots__ = ("_record",)

    def __init__(self, record):
        self._record = record

    def __getitem__(self, key):
        return _sqlite_compat(self._record[key])

    def __contains__(self, key):
        return key in self._record.keys()

    def __len__(self):
        return len(self._record)

    def keys(self):
        return self._record.keys()

    def values(self):
        return [_sqlite_compat(v) for v in self._record.values()]

    def items(self):
        return {k: _sqlite_compat(self._record[k]) for k in self._record.keys()}.items()

    def get(self, key, default=None):
        try:
            return _sqlite_compat(self._record[key])
        except (KeyError, IndexError):
            return default


def _to_pg_row(record):
    if record is None:
        return None
    return PgRow(record)


# Regex to replace ? placeholders with $1, $2, … while skipping quoted strings
_PARAM_RE = re.compile(r"'[^']*'|(\?)")


def _convert_placeholders(sql: str) -> str:
    """Replace ? with $1, $2, … for asyncpg, skipping ?s inside string literals."""
    counter = [0]

    def _replacer(match):
        if match.group(1) is None:
            # Matched a quoted string, leave unchanged
            return match.group(0)
        counter[0] += 1
        return f"${counter[0]}"

    return _PARAM_RE.sub(_replacer, sql)


def _is_insert(sql: str) -> bool:
    return sql.lstrip().upper().startswith("INSERT")


def _status_rowcount(status: str) -> int:
    """Parse the affected-row count from an asyncpg status like 'UPDATE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError, IndexError):
        return -1


class PgCursor:
    """Mimics aiosqlite cursor for the result of execute()."""

    __slots__ = ("_rows", "_lastrowid", "_idx", "rowcount")

    def __init__(self, rows=None, lastrowid=None, rowcount=-1):
        self._rows = rows or []
        self._lastrowid = lastrowid
        self._idx = 0
        self.rowcount = rowcount

    @property
    def lastrowid(self):
        return self._lastrowid

    async def fetchone(self):
        if self._idx < len(self._rows):
            row = self._rows[self._idx]
            self._idx += 1
            return _to_pg_row(row)
        return None

    async def fetchall(self):
        remaining = self._rows[self._idx:]
        self._idx = len(self._rows)
        return [PgRow(r) for r in remaining]


class PgConnection:
    """Wraps an asyncpg connection to present an aiosqlite-compatible interface.

    Statements run in autocommit mode unless begin() opened a transaction;
    commit() / rollback() then close it.
    """

    def __init__(self, conn):
        self._conn = conn
        self._tx = None

    async def execute(self, sql: str, params=None):
        pg_sql = _convert_placeholders(sql)
        args = tuple(params) if params else ()
        if _is_insert(pg_sql):
            # Append RETURNING id if not already present
            if "RETURNING" not in pg_sql.upper():
                pg_sql = pg_sql.rstrip().rstrip(";") + " RETURNING id"
            row = await self._conn.fetchrow(pg_sql, *args)
            lastrowid = row["id"] if row else None
            return PgCursor(rows=[row] if row else [], lastrowid=lastrowid, rowcount=1 if row else 0)
        stripped = pg_sql.lstrip().upper()
        if stripped.startswith("SELECT") or "RETURNING" in stripped:
            rows = await self._conn.fetch(pg_sql, *args)
            return PgCursor(rows=rows, rowcount=len(rows))
        status = await self._conn.execute(pg_sql, *args)
        return PgCursor(rowcount=_status_rowcount(status))

    async def begin(self):
        self._tx = self._conn.transaction()
        await self._tx.start()

    async def commit(self):
        if self._tx is not None:
            tx, self._tx = self._tx, None
            await tx.commit()

    async def rollback(self):
        if self._tx is not None:
            tx, self._tx = self._tx, None
            await tx.rollback()

    async def close(self):
        # Pool release is handled by connection()
        pass


def is_unique_violation(exc: BaseException) -> bool:
    """True for a primary-key / unique constraint failure on either backend."""
    name = type(exc).__name__
    if name == "UniqueViolationError":
        return True
    return name == "IntegrityError" and "UNIQUE" in str(exc).upper()


# ── Public API ────────────────────────────────────────────────────────

@asynccontextmanager
async def connection(database_path: str | None = None):
    """Yield a connection for one unit of work and release it afterwards.

    database_path overrides the configured SQLite file (tests point it at
    a temporary database).
    """
    try:
        if _is_postgres() and database_path is None:
            pool = await _get_pg_pool()
            conn = await pool.acquire()
        else:
            db = await _connect_sqlite(database_path or settings.database_path)
    except (OSError, ConnectionError) as exc:
        raise StorageUnavailable(f"Cannot open database: {exc}") from exc
    except Exception as exc:
        if type(exc).__name__ in ("OperationalError", "PostgresConnectionError", "InterfaceError"):
            raise StorageUnavailable(f"Cannot open database: {exc}") from exc
        raise

    if _is_postgres() and database_path is None:
        pg_conn = PgConnection(conn)
        try:
            yield pg_conn
        finally:
            await pg_conn.rollback()
            await pool.release(conn)
    else:
        try:
            yield db
        finally:
            await db.close()


@asynccontextmanager
async def transaction(db):
    """Run the enclosed statements atomically; roll back on any exception."""
    if isinstance(db, PgConnection):
        await db.begin()
    else:
        # IMMEDIATE takes the write lock up front so two writers never
        # deadlock upgrading from a shared lock
        await db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        await db.rollback()
        raise
    else:
        await db.commit()


async def bounded(awaitable, timeout: float | None = None):
    """Await a storage operation, failing with StorageTimeout instead of hanging."""
    limit = timeout if timeout is not None else settings.storage_timeout_s
    try:
        return await asyncio.wait_for(awaitable, limit)
    except asyncio.TimeoutError as exc:
        raise StorageTimeout(f"Storage operation exceeded {limit}s") from exc


def _run_alembic_upgrade():
    """Run Alembic migrations to head (synchronous, called once at startup)."""
    alembic_cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(PROJECT_ROOT / "migrations"))

    if _is_postgres():
        alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url)
    else:
        alembic_cfg.set_main_option(
            "sqlalchemy.url", f"sqlite:///{settings.database_path}"
        )

    command.upgrade(alembic_cfg, "head")


async def init_db():
    if _is_postgres():
        logger.info("Using PostgreSQL backend: %s", settings.database_url.split("@")[-1])
    else:
        # Ensure parent directory exists (for Docker volume mounts)
        db_path = Path(settings.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Using SQLite backend: %s", settings.database_path)

    # Alembic handles all schema creation and migrations
    _run_alembic_upgrade()


async def close_db():
    """Shutdown hook: close the connection pool if using PostgreSQL."""
    global _pg_pool
    if _pg_pool is not None:
        await _pg_pool.close()
        _pg_pool = None
