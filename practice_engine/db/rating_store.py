"""
rating_store.py - Persistent user skill ratings and item difficulty ratings

Provides:
- get_user_rating / get_item_rating - read with defaults, nothing written
- apply_deltas - compare-and-swap both ratings inside a transaction
- apply_outcome - the retrying unit of work used for every answer
- list_user_ratings - per-skill ratings for the stats endpoint

Every row carries a version counter. A write names the version it read and
fails with Conflict when another writer got there first, which is what
keeps concurrent answers on one item from losing updates across processes.
Within one process the user-key and item locks serialize writers so
conflicts only show up between processes.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from practice_engine.config import settings
from practice_engine.db.database import bounded, is_unique_violation, transaction
from practice_engine.errors import Conflict, ItemNotFound, RatingUpdateFailed
from practice_engine.services.clock import SystemClock, to_iso
from practice_engine.services.elo import EloDeltas, clamp_rating, compute_deltas
from practice_engine.services.keyed_lock import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserKey:
    user_id: str
    lang: str
    exam: str
    skill: str
    tag: str = ""


@dataclass(frozen=True)
class Rating:
    rating: float
    rating_deviation: float
    version: int
    persisted: bool
    answers_count: int = 0
    last_update: Optional[str] = None


@dataclass(frozen=True)
class RatingUpdate:
    """Result of one applied answer: the deltas and both ratings after the write."""
    deltas: EloDeltas
    user_before: Rating
    item_before: Rating
    user: Rating
    item: Rating


RecordHook = Callable[[RatingUpdate], Awaitable[Any]]


def default_rating() -> Rating:
    return Rating(
        rating=settings.default_rating,
        rating_deviation=settings.default_rating_deviation,
        version=0,
        persisted=False,
    )


class RatingStore:
    def __init__(self, locks: Optional[KeyedLocks] = None, clock=None):
        self.locks = locks or KeyedLocks()
        self.clock = clock or SystemClock()

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_user_rating(self, db, key: UserKey) -> Rating:
        cursor = await db.execute(
            """SELECT rating, rating_deviation, version, answers_count, last_update
               FROM user_skill_ratings
               WHERE user_id = ? AND lang = ? AND exam = ? AND skill = ? AND tag = ?""",
            (key.user_id, key.lang, key.exam, key.skill, key.tag),
        )
        row = await cursor.fetchone()
        if not row:
            return default_rating()
        return Rating(
            rating=row["rating"],
            rating_deviation=row["rating_deviation"],
            version=row["version"],
            persisted=True,
            answers_count=row["answers_count"],
            last_update=row["last_update"],
        )

    async def get_item_rating(self, db, item_id: str) -> Rating:
        cursor = await db.execute(
            "SELECT difficulty_elo, version, updated_at FROM items WHERE id = ?",
            (item_id,),
        )
        row = await cursor.fetchone()
        if not row:
            return default_rating()
        return Rating(
            rating=row["difficulty_elo"],
            rating_deviation=settings.default_rating_deviation,
            version=row["version"],
            persisted=True,
            last_update=row["updated_at"],
        )

    async def list_user_ratings(self, db, user_id: str) -> List[Dict[str, Any]]:
        cursor = await db.execute(
            """SELECT lang, exam, skill, tag, rating, rating_deviation, answers_count, last_update
               FROM user_skill_ratings
               WHERE user_id = ?
               ORDER BY lang, exam, skill, tag""",
            (user_id,),
        )
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    # ── Writes ────────────────────────────────────────────────────────

    async def apply_deltas(
        self,
        db,
        user_key: UserKey,
        user_delta: float,
        item_id: str,
        item_delta: float,
        *,
        expected_user_version: int,
        expected_item_version: int,
    ) -> Tuple[Rating, Rating]:
        """Write both ratings if neither changed since it was read.

        Must run inside transaction(db). Raises Conflict on a version
        mismatch so the caller's transaction rolls back as a whole.
        """
        now = to_iso(self.clock.now())
        user_after = await self._swap_user(db, user_key, user_delta, expected_user_version, now)
        item_after = await self._swap_item(db, item_id, item_delta, expected_item_version, now)
        return user_after, item_after

    async def _swap_user(self, db, key: UserKey, delta: float, expected_version: int, now: str) -> Rating:
        current = await self.get_user_rating(db, key)
        if current.version != expected_version:
            raise Conflict(f"User rating {key} changed (version {current.version}, expected {expected_version})")

        new_rating = clamp_rating(current.rating + delta)
        if not current.persisted:
            try:
                await db.execute(
                    """INSERT INTO user_skill_ratings (user_id, lang, exam, skill, tag, rating,
                                                       rating_deviation, answers_count, version, last_update)
                       VALUES (?, ?, ?, ?, ?, ?, ?, 1, 1, ?)""",
                    (key.user_id, key.lang, key.exam, key.skill, key.tag,
                     new_rating, current.rating_deviation, now),
                )
            except Exception as exc:
                if is_unique_violation(exc):
                    raise Conflict(f"User rating {key} was created concurrently") from exc
                raise
        else:
            cursor = await db.execute(
                """UPDATE user_skill_ratings
                   SET rating = ?, answers_count = answers_count + 1,
                       version = version + 1, last_update = ?
                   WHERE user_id = ? AND lang = ? AND exam = ? AND skill = ? AND tag = ?
                     AND version = ?""",
                (new_rating, now, key.user_id, key.lang, key.exam, key.skill, key.tag, expected_version),
            )
            if cursor.rowcount == 0:
                raise Conflict(f"User rating {key} changed during update")

        return replace(
            current,
            rating=new_rating,
            version=expected_version + 1,
            persisted=True,
            answers_count=current.answers_count + 1,
            last_update=now,
        )

    async def _swap_item(self, db, item_id: str, delta: float, expected_version: int, now: str) -> Rating:
        current = await self.get_item_rating(db, item_id)
        if not current.persisted:
            raise ItemNotFound(f"Item {item_id} not found")
        if current.version != expected_version:
            raise Conflict(f"Item {item_id} changed (version {current.version}, expected {expected_version})")

        new_rating = clamp_rating(current.rating + delta)
        cursor = await db.execute(
            """UPDATE items SET difficulty_elo = ?, version = version + 1, updated_at = ?
               WHERE id = ? AND version = ?""",
            (new_rating, now, item_id, expected_version),
        )
        if cursor.rowcount == 0:
            raise Conflict(f"Item {item_id} changed during update")
        return replace(current, rating=new_rating, version=expected_version + 1, last_update=now)

    async def apply_outcome(
        self,
        db,
        user_key: UserKey,
        item_id: str,
        outcome: float,
        record: Optional[RecordHook] = None,
    ) -> RatingUpdate:
        """Update both ratings for one answer, all or nothing.

        record runs in the same transaction after both ratings were
        swapped, so the answer row and its rating changes commit together.
        A Conflict rolls everything back and the whole unit is retried with
        exponential backoff. Once the attempts are spent the caller gets
        RatingUpdateFailed.
        """
        async with self.locks.hold(("user", user_key)):
            async with self.locks.hold(("item", item_id)):
                try:
                    async for attempt in AsyncRetrying(
                        stop=stop_after_attempt(settings.rating_retry_attempts),
                        wait=wait_exponential(
                            multiplier=settings.rating_retry_min_wait_s,
                            min=settings.rating_retry_min_wait_s,
                            max=settings.rating_retry_max_wait_s,
                        ),
                        retry=retry_if_exception_type(Conflict),
                        before_sleep=lambda retry_state: logger.warning(
                            "Rating update conflict for %s / %s (attempt %d), retrying: %s",
                            user_key.user_id,
                            item_id,
                            retry_state.attempt_number,
                            retry_state.outcome.exception(),
                        ),
                        reraise=True,
                    ):
                        with attempt:
                            return await bounded(self._apply_once(db, user_key, item_id, outcome, record))
                except Conflict as exc:
                    raise RatingUpdateFailed(
                        f"Rating update for item {item_id} failed after "
                        f"{settings.rating_retry_attempts} attempts: {exc.message}"
                    ) from exc

    async def _apply_once(
        self,
        db,
        user_key: UserKey,
        item_id: str,
        outcome: float,
        record: Optional[RecordHook],
    ) -> RatingUpdate:
        async with transaction(db):
            user_before = await self.get_user_rating(db, user_key)
            item_before = await self.get_item_rating(db, item_id)
            if not item_before.persisted:
                raise ItemNotFound(f"Item {item_id} not found")

            deltas = compute_deltas(user_before.rating, item_before.rating, outcome)
            user_after, item_after = await self.apply_deltas(
                db,
                user_key,
                deltas.user_delta,
                item_id,
                deltas.item_delta,
                expected_user_version=user_before.version,
                expected_item_version=item_before.version,
            )
            update = RatingUpdate(
                deltas=deltas,
                user_before=user_before,
                item_before=item_before,
                user=user_after,
                item=item_after,
            )
            if record is not None:
                await record(update)

        logger.debug(
            "Rating update %s/%s/%s user %s: %.1f -> %.1f, item %s: %.1f -> %.1f",
            user_key.lang, user_key.exam, user_key.skill, user_key.user_id,
            user_before.rating, user_after.rating,
            item_id, item_before.rating, item_after.rating,
        )
        return update
