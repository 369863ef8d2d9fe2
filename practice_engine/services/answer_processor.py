"""Accepts swipe answers and turns them into rating updates.

The answer_id is chosen by the client and is the idempotency key: a
retried submission gets the stored answer back and changes nothing.

Order of work for a new answer:
  1. validate the payload, no storage touched yet
  2. look the answer id up (replay fast path)
  3. under the session lock, look it up again, then run the rating
     store's unit of work whose record hook writes the answer row, item
     stats and session counters in the same transaction as the ratings
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from practice_engine.config import settings
from practice_engine.db import practice_store as ps
from practice_engine.db.database import bounded, is_unique_violation
from practice_engine.db.rating_store import RatingStore, RatingUpdate, UserKey
from practice_engine.errors import (
    Conflict,
    Forbidden,
    InvalidAnswerFormat,
    ItemNotFound,
    SessionCompleted,
)
from practice_engine.models.practice import AnswerSubmission
from practice_engine.services.clock import SystemClock, as_utc, to_iso
from practice_engine.services.score_aggregator import points_for
from practice_engine.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

USER_CHOICES = ("apta", "no_apta")

# Fields a replayed submission must agree on with the stored answer
_IDENTITY_FIELDS = ("session_id", "user_id", "item_id", "user_choice", "correct")


@dataclass
class AnswerOutcome:
    answer: Dict[str, Any]
    replayed: bool = False
    expected_score: Optional[float] = None


class AnswerProcessor:
    def __init__(self, sessions: SessionManager, ratings: RatingStore, clock=None):
        self.sessions = sessions
        self.ratings = ratings
        self.clock = clock or SystemClock()

    def validate(self, submission: AnswerSubmission, caller_user_id: str) -> None:
        if submission.user_id != caller_user_id:
            raise Forbidden("Cannot submit answers for another user")
        if submission.user_choice not in USER_CHOICES:
            raise InvalidAnswerFormat(f"user_choice must be one of {', '.join(USER_CHOICES)}")
        if as_utc(submission.answered_at) < as_utc(submission.shown_at):
            raise InvalidAnswerFormat("answered_at is before shown_at")
        if not 0 <= submission.latency_ms <= settings.max_latency_ms:
            raise InvalidAnswerFormat(f"latency_ms must be between 0 and {settings.max_latency_ms}")
        if submission.score_delta is not None and not math.isfinite(submission.score_delta):
            raise InvalidAnswerFormat("score_delta must be a finite number")

    def _replay(self, stored: Dict[str, Any], submission: AnswerSubmission) -> AnswerOutcome:
        for name in _IDENTITY_FIELDS:
            if stored[name] != getattr(submission, name):
                raise Conflict(f"Answer {submission.answer_id} was already recorded with a different {name}")
        logger.warning("Replayed answer %s for session %s", stored["id"], stored["session_id"])
        return AnswerOutcome(answer=stored, replayed=True)

    async def submit(self, db, submission: AnswerSubmission, caller_user_id: str) -> AnswerOutcome:
        self.validate(submission, caller_user_id)

        stored = await bounded(ps.get_answer(db, submission.answer_id))
        if stored:
            return self._replay(stored, submission)

        item = await bounded(ps.get_item(db, submission.item_id))
        if not item:
            raise ItemNotFound(f"Item {submission.item_id} not found")

        try:
            async with self.sessions.accepting(db, submission.session_id, submission.user_id) as session:
                stored = await bounded(ps.get_answer(db, submission.answer_id))
                if stored:
                    return self._replay(stored, submission)
                self._check_matches_session(submission, session, item)
                return await self._apply(db, submission, item)
        except Exception as exc:
            if not is_unique_violation(exc):
                raise
            # Same answer id accepted concurrently through another session
            stored = await bounded(ps.get_answer(db, submission.answer_id))
            if not stored:
                raise
            return self._replay(stored, submission)

    def _check_matches_session(self, submission: AnswerSubmission, session, item) -> None:
        for name in ("lang", "exam", "skill"):
            if getattr(submission, name) != session[name]:
                raise InvalidAnswerFormat(f"Answer {name} does not match the session")
        if submission.level is not None and submission.level != session["level"]:
            raise InvalidAnswerFormat("Answer level does not match the session")
        if item["lang"] != session["lang"] or item["exam"] != session["exam"]:
            raise InvalidAnswerFormat(f"Item {item['id']} does not belong to this session's catalog")

    async def _apply(self, db, submission: AnswerSubmission, item) -> AnswerOutcome:
        key = UserKey(submission.user_id, submission.lang, submission.exam, submission.skill)
        seq = await bounded(ps.next_answer_seq(db, submission.session_id))
        suspicious = submission.suspicious or submission.latency_ms < settings.suspicious_latency_ms
        score_delta = (
            submission.score_delta if submission.score_delta is not None else points_for(submission.correct)
        )
        answer: Dict[str, Any] = {}

        async def record(update: RatingUpdate):
            answer.clear()
            answer.update({
                "id": submission.answer_id,
                "session_id": submission.session_id,
                "user_id": submission.user_id,
                "item_id": submission.item_id,
                "seq": seq,
                "tags": submission.tags or item["tags"],
                "user_choice": submission.user_choice,
                "correct": submission.correct,
                "score_delta": score_delta,
                "shown_at": to_iso(submission.shown_at),
                "answered_at": to_iso(submission.answered_at),
                "latency_ms": submission.latency_ms,
                "item_difficulty_at_time": update.item_before.rating,
                "content_version": submission.content_version or item["content_version"],
                "app_version": submission.app_version,
                "suspicious": suspicious,
                "elo_user_delta": update.deltas.user_delta,
                "elo_item_delta": update.deltas.item_delta,
                "user_rating_after": update.user.rating,
                "item_rating_after": update.item.rating,
                "state": ps.ANSWER_ANSWERED,
                "created_at": to_iso(self.clock.now()),
            })
            await ps.insert_answer(db, answer)
            await ps.bump_item_stats(
                db, submission.item_id, submission.correct, submission.latency_ms, answer["created_at"]
            )
            if not await ps.advance_session(db, submission.session_id):
                raise SessionCompleted(f"Session {submission.session_id} was completed concurrently")

        update = await self.ratings.apply_outcome(
            db, key, submission.item_id, 1.0 if submission.correct else 0.0, record=record
        )
        if suspicious:
            logger.warning("Suspicious answer %s from %s (%d ms)",
                           submission.answer_id, submission.user_id, submission.latency_ms)
        return AnswerOutcome(answer=dict(answer), expected_score=update.deltas.expected)
