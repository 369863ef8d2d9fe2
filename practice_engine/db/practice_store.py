"""
practice_store.py - Database helper queries for practice sessions

Provides insert/fetch functions for:
- items (the practice catalog) and item_stats
- practice_sessions
- practice_answers

Ratings live in rating_store.py; nothing here touches a rating column
except the catalog seeding in upsert_item.
"""

import json
from typing import Optional, List, Dict, Any

import aiosqlite


SESSION_CREATED = "created"
SESSION_IN_PROGRESS = "in_progress"
SESSION_COMPLETED = "completed"

ANSWER_ANSWERED = "answered"
ANSWER_FINALIZED = "finalized"


# ══════════════════════════════════════════════════════════════════════════════
# ITEMS
# ══════════════════════════════════════════════════════════════════════════════

async def upsert_item(db: aiosqlite.Connection, item: Dict[str, Any]) -> str:
    """Insert or replace a catalog item. Returns the item ID.

    An existing item keeps its calibrated difficulty_elo unless the payload
    carries one explicitly.
    """
    cursor = await db.execute("SELECT id FROM items WHERE id = ?", (item["id"],))
    existing = await cursor.fetchone()

    if existing:
        fields = {
            "term": item.get("term", ""),
            "lang": item["lang"],
            "level": item["level"],
            "exam": item["exam"],
            "skill_scope": json.dumps(list(item.get("skill_scope", []))),
            "tags": json.dumps(list(item.get("tags", []))),
            "content_version": item.get("content_version"),
            "active": int(item.get("active", True)),
        }
        if "difficulty_elo" in item:
            fields["difficulty_elo"] = float(item["difficulty_elo"])
        assignments = ", ".join(f"{name} = ?" for name in fields)
        await db.execute(
            f"UPDATE items SET {assignments}, version = version + 1 WHERE id = ?",
            (*fields.values(), item["id"]),
        )
    else:
        await db.execute(
            """INSERT INTO items (id, term, lang, level, exam, skill_scope, tags,
                                  difficulty_elo, content_version, active)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                item["id"],
                item.get("term", ""),
                item["lang"],
                item["level"],
                item["exam"],
                json.dumps(list(item.get("skill_scope", []))),
                json.dumps(list(item.get("tags", []))),
                float(item.get("difficulty_elo", 1500.0)),
                item.get("content_version"),
                int(item.get("active", True)),
            ),
        )
    await db.commit()
    return item["id"]


async def get_item(db: aiosqlite.Connection, item_id: str) -> Optional[Dict[str, Any]]:
    """Get a catalog item by ID."""
    cursor = await db.execute("SELECT * FROM items WHERE id = ?", (item_id,))
    row = await cursor.fetchone()
    if not row:
        return None
    return _row_to_dict(row, parse_json_fields=["skill_scope", "tags"], bool_fields=["active"])


async def list_active_items(
    db: aiosqlite.Connection, lang: str, level: str, exam: str
) -> List[Dict[str, Any]]:
    """Active items for a (lang, level, exam) slice of the catalog.

    skill_scope is a JSON list, so the skill filter is applied by the caller.
    """
    cursor = await db.execute(
        """SELECT * FROM items
           WHERE lang = ? AND level = ? AND exam = ? AND active = 1
           ORDER BY id""",
        (lang, level, exam),
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r, parse_json_fields=["skill_scope", "tags"], bool_fields=["active"]) for r in rows]


async def bump_item_stats(
    db: aiosqlite.Connection,
    item_id: str,
    correct: bool,
    latency_ms: int,
    played_at: str,
) -> None:
    """Fold one answer into the item's aggregate play statistics.

    Runs inside the caller's transaction, no commit.
    """
    hit = 1 if correct else 0
    await db.execute(
        """INSERT INTO item_stats (item_id, plays, correct, incorrect, avg_latency_ms, last_played)
           VALUES (?, 1, ?, ?, ?, ?)
           ON CONFLICT (item_id) DO UPDATE SET
               avg_latency_ms = (item_stats.avg_latency_ms * item_stats.plays + excluded.avg_latency_ms)
                                / (item_stats.plays + 1),
               plays = item_stats.plays + 1,
               correct = item_stats.correct + excluded.correct,
               incorrect = item_stats.incorrect + excluded.incorrect,
               last_played = excluded.last_played""",
        (item_id, hit, 1 - hit, float(latency_ms), played_at),
    )


async def get_item_stats(db: aiosqlite.Connection, item_id: str) -> Optional[Dict[str, Any]]:
    cursor = await db.execute("SELECT * FROM item_stats WHERE item_id = ?", (item_id,))
    row = await cursor.fetchone()
    return _row_to_dict(row) if row else None


# ══════════════════════════════════════════════════════════════════════════════
# SESSIONS
# ══════════════════════════════════════════════════════════════════════════════

async def create_session(db: aiosqlite.Connection, session: Dict[str, Any]) -> str:
    """Create a practice session row. Returns the session ID."""
    await db.execute(
        """INSERT INTO practice_sessions (id, user_id, lang, level, exam, skill,
                                          requested_duration_seconds, state, started_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            session["id"],
            session["user_id"],
            session["lang"],
            session["level"],
            session["exam"],
            session["skill"],
            session["requested_duration_seconds"],
            session.get("state", SESSION_CREATED),
            session["started_at"],
        ),
    )
    await db.commit()
    return session["id"]


async def get_session(db: aiosqlite.Connection, session_id: str) -> Optional[Dict[str, Any]]:
    """Get a practice session by ID."""
    cursor = await db.execute("SELECT * FROM practice_sessions WHERE id = ?", (session_id,))
    row = await cursor.fetchone()
    if not row:
        return None
    return _row_to_dict(row, parse_json_fields=["summary"])


async def list_open_sessions(
    db: aiosqlite.Connection, user_id: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Sessions not yet completed, optionally for a single user."""
    if user_id is None:
        cursor = await db.execute(
            "SELECT * FROM practice_sessions WHERE state != ? ORDER BY started_at",
            (SESSION_COMPLETED,),
        )
    else:
        cursor = await db.execute(
            """SELECT * FROM practice_sessions
               WHERE user_id = ? AND state != ?
               ORDER BY started_at""",
            (user_id, SESSION_COMPLETED),
        )
    rows = await cursor.fetchall()
    return [_row_to_dict(r, parse_json_fields=["summary"]) for r in rows]


async def advance_session(db: aiosqlite.Connection, session_id: str) -> bool:
    """Count one more accepted answer and move a created session to in_progress.

    Runs inside the caller's transaction. Returns False when the session
    was completed concurrently.
    """
    cursor = await db.execute(
        """UPDATE practice_sessions
           SET state = ?, answers_count = answers_count + 1
           WHERE id = ? AND state != ?""",
        (SESSION_IN_PROGRESS, session_id, SESSION_COMPLETED),
    )
    return cursor.rowcount > 0


async def complete_session(
    db: aiosqlite.Connection,
    session_id: str,
    ended_at: str,
    summary: Dict[str, Any],
) -> bool:
    """Mark a session completed with its summary. Returns False if it already was.

    Runs inside the caller's transaction.
    """
    cursor = await db.execute(
        """UPDATE practice_sessions
           SET state = ?, ended_at = ?, summary = ?
           WHERE id = ? AND state != ?""",
        (SESSION_COMPLETED, ended_at, json.dumps(summary), session_id, SESSION_COMPLETED),
    )
    return cursor.rowcount > 0


async def get_user_session_stats(db: aiosqlite.Connection, user_id: str) -> Dict[str, Any]:
    """Totals over a user's sessions, plus the parsed summaries of completed ones."""
    cursor = await db.execute(
        "SELECT state, summary FROM practice_sessions WHERE user_id = ?",
        (user_id,),
    )
    rows = await cursor.fetchall()
    summaries = []
    for row in rows:
        if row["state"] == SESSION_COMPLETED and row["summary"]:
            summaries.append(json.loads(row["summary"]))
    return {"total_sessions": len(rows), "completed_summaries": summaries}


# ══════════════════════════════════════════════════════════════════════════════
# ANSWERS
# ══════════════════════════════════════════════════════════════════════════════

async def next_answer_seq(db: aiosqlite.Connection, session_id: str) -> int:
    cursor = await db.execute(
        "SELECT COALESCE(MAX(seq), 0) + 1 FROM practice_answers WHERE session_id = ?",
        (session_id,),
    )
    row = await cursor.fetchone()
    return row[0] if row else 1


async def insert_answer(db: aiosqlite.Connection, answer: Dict[str, Any]) -> str:
    """Insert an answer row. Runs inside the caller's transaction, no commit.

    The id is the client idempotency key, so a duplicate raises the
    backend's unique-violation error.
    """
    await db.execute(
        """INSERT INTO practice_answers (
               id, session_id, user_id, item_id, seq, tags, user_choice, correct,
               score_delta, shown_at, answered_at, latency_ms, item_difficulty_at_time,
               content_version, app_version, suspicious, elo_user_delta, elo_item_delta,
               user_rating_after, item_rating_after, state, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            answer["id"],
            answer["session_id"],
            answer["user_id"],
            answer["item_id"],
            answer["seq"],
            json.dumps(list(answer.get("tags", []))),
            answer["user_choice"],
            int(answer["correct"]),
            float(answer["score_delta"]),
            answer["shown_at"],
            answer["answered_at"],
            int(answer["latency_ms"]),
            answer.get("item_difficulty_at_time"),
            answer.get("content_version"),
            answer.get("app_version"),
            int(answer.get("suspicious", False)),
            float(answer["elo_user_delta"]),
            float(answer["elo_item_delta"]),
            answer.get("user_rating_after"),
            answer.get("item_rating_after"),
            ANSWER_ANSWERED,
            answer["created_at"],
        ),
    )
    return answer["id"]


async def get_answer(db: aiosqlite.Connection, answer_id: str) -> Optional[Dict[str, Any]]:
    cursor = await db.execute("SELECT * FROM practice_answers WHERE id = ?", (answer_id,))
    row = await cursor.fetchone()
    if not row:
        return None
    return _row_to_dict(row, parse_json_fields=["tags"], bool_fields=["correct", "suspicious"])


async def get_session_answers(db: aiosqlite.Connection, session_id: str) -> List[Dict[str, Any]]:
    """All answers of a session in acceptance order."""
    cursor = await db.execute(
        "SELECT * FROM practice_answers WHERE session_id = ? ORDER BY seq",
        (session_id,),
    )
    rows = await cursor.fetchall()
    return [
        _row_to_dict(r, parse_json_fields=["tags"], bool_fields=["correct", "suspicious"])
        for r in rows
    ]


async def finalize_session_answers(db: aiosqlite.Connection, session_id: str) -> int:
    """Move every answered row of a session to finalized. Returns the count."""
    cursor = await db.execute(
        "UPDATE practice_answers SET state = ? WHERE session_id = ? AND state = ?",
        (ANSWER_FINALIZED, session_id, ANSWER_ANSWERED),
    )
    return cursor.rowcount


async def get_recent_item_ids(db: aiosqlite.Connection, user_id: str, limit: int) -> List[str]:
    """Item IDs from the user's latest answers, newest first, without duplicates."""
    cursor = await db.execute(
        """SELECT item_id FROM practice_answers
           WHERE user_id = ?
           ORDER BY created_at DESC
           LIMIT ?""",
        (user_id, limit),
    )
    rows = await cursor.fetchall()
    seen: List[str] = []
    for row in rows:
        if row["item_id"] not in seen:
            seen.append(row["item_id"])
    return seen


async def get_user_answer_stats(db: aiosqlite.Connection, user_id: str) -> Dict[str, Any]:
    cursor = await db.execute(
        """SELECT COUNT(*) AS total, COALESCE(SUM(correct), 0) AS correct
           FROM practice_answers WHERE user_id = ?""",
        (user_id,),
    )
    row = await cursor.fetchone()
    return {"total_answers": row["total"] or 0, "correct_answers": row["correct"] or 0}


# ══════════════════════════════════════════════════════════════════════════════
# HELPER FUNCTIONS
# ══════════════════════════════════════════════════════════════════════════════

def _row_to_dict(
    row: aiosqlite.Row,
    parse_json_fields: List[str] = None,
    bool_fields: List[str] = None,
) -> Dict[str, Any]:
    """Convert a database row to a dictionary, parsing JSON and 0/1 boolean columns."""
    if row is None:
        return None

    result = dict(row)

    if parse_json_fields:
        for field in parse_json_fields:
            if field in result and isinstance(result[field], str):
                result[field] = json.loads(result[field])

    if bool_fields:
        for field in bool_fields:
            if field in result and result[field] is not None:
                result[field] = bool(result[field])

    return result
