"""Timed practice session lifecycle: created -> in_progress -> completed.

A session accepts answers until its requested duration (plus a short
grace period for answers already in flight) has run out. There is no
timer task: an expired session is completed lazily the next time anyone
touches it, or by the expire() sweep.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from practice_engine.config import settings
from practice_engine.db import practice_store as ps
from practice_engine.db.database import bounded, transaction
from practice_engine.errors import (
    Conflict,
    Forbidden,
    InvalidConfig,
    SessionCompleted,
    SessionNotFound,
)
from practice_engine.services.clock import SystemClock, as_utc, parse_iso, to_iso
from practice_engine.services.keyed_lock import KeyedLocks
from practice_engine.services.score_aggregator import summarize_swipe, validate_supplied_summary

logger = logging.getLogger(__name__)


def expires_at(session: Dict[str, Any]) -> datetime:
    """When the session's own timer runs out."""
    return parse_iso(session["started_at"]) + timedelta(seconds=session["requested_duration_seconds"])


def accepts_until(session: Dict[str, Any]) -> datetime:
    return expires_at(session) + timedelta(seconds=settings.session_grace_s)


def validate_slice(lang: str, level: str, exam: str, skill: str) -> None:
    """Check a (lang, level, exam, skill) combination against the supported catalogs."""
    if lang not in settings.supported_languages:
        raise InvalidConfig(f"Invalid language: {lang}")
    if level not in settings.supported_levels:
        raise InvalidConfig(f"Invalid level: {level}")
    if exam not in settings.supported_exams:
        raise InvalidConfig(f"Invalid exam provider: {exam}")
    if skill not in settings.supported_skills:
        raise InvalidConfig(f"Invalid skill: {skill}")


class SessionManager:
    def __init__(self, locks: Optional[KeyedLocks] = None, clock=None):
        self.locks = locks or KeyedLocks()
        self.clock = clock or SystemClock()

    def _validate_config(self, user_id, lang, level, exam, skill, duration_s) -> None:
        if not user_id or not str(user_id).strip():
            raise InvalidConfig("User ID is required")
        validate_slice(lang, level, exam, skill)
        if duration_s not in settings.session_durations:
            allowed = ", ".join(str(d) for d in settings.session_durations)
            raise InvalidConfig(f"Invalid session duration {duration_s}, expected one of {allowed}")

    async def start(
        self,
        db,
        user_id: str,
        lang: str,
        level: str,
        exam: str,
        skill: str,
        duration_s: int,
    ) -> Dict[str, Any]:
        """Create a session. Any other open session of the user is abandoned first."""
        self._validate_config(user_id, lang, level, exam, skill, duration_s)

        for stale in await bounded(ps.list_open_sessions(db, user_id)):
            async with self.locks.hold(("session", stale["id"])):
                current = await bounded(ps.get_session(db, stale["id"]))
                if current and current["state"] != ps.SESSION_COMPLETED:
                    logger.warning("Abandoning open session %s of user %s", current["id"], user_id)
                    await self._complete(db, current, self.clock.now(), None)

        session_id = str(uuid.uuid4())
        await bounded(ps.create_session(db, {
            "id": session_id,
            "user_id": user_id,
            "lang": lang,
            "level": level,
            "exam": exam,
            "skill": skill,
            "requested_duration_seconds": duration_s,
            "state": ps.SESSION_CREATED,
            "started_at": to_iso(self.clock.now()),
        }))
        logger.info("Session %s started for %s (%s/%s/%s/%s, %ds)",
                    session_id, user_id, lang, level, exam, skill, duration_s)
        return await bounded(ps.get_session(db, session_id))

    async def _load_owned(self, db, session_id: str, user_id: str) -> Dict[str, Any]:
        session = await bounded(ps.get_session(db, session_id))
        if not session:
            raise SessionNotFound(f"Session {session_id} not found")
        if session["user_id"] != user_id:
            raise Forbidden("Session belongs to another user")
        return session

    async def get(self, db, session_id: str, user_id: str) -> Dict[str, Any]:
        return await self._load_owned(db, session_id, user_id)

    @asynccontextmanager
    async def accepting(self, db, session_id: str, user_id: str):
        """Hold the session open for one answer.

        Answers to one session are applied one at a time, in the order
        they get here.
        """
        async with self.locks.hold(("session", session_id)):
            session = await self._load_owned(db, session_id, user_id)
            if session["state"] == ps.SESSION_COMPLETED:
                raise SessionCompleted(f"Session {session_id} is already completed")
            if self.clock.now() > accepts_until(session):
                logger.info("Session %s ran out of time, completing it", session_id)
                await self._complete(db, session, expires_at(session), None)
                raise SessionCompleted(f"Session {session_id} has expired")
            yield session

    async def end(
        self,
        db,
        session_id: str,
        user_id: str,
        summary: Optional[Dict[str, Any]] = None,
        ended_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Complete a session. Ending it again with the same (or no) summary is a no-op."""
        if summary:
            validate_supplied_summary(summary)

        async with self.locks.hold(("session", session_id)):
            session = await self._load_owned(db, session_id, user_id)

            if session["state"] == ps.SESSION_COMPLETED:
                stored = session["summary"] or {}
                if summary and any(stored.get(k) != v for k, v in summary.items()):
                    raise Conflict(f"Session {session_id} was already completed with a different summary")
                return session

            ended = as_utc(ended_at) if ended_at else self.clock.now()
            # Past its deadline a session ends at the deadline
            ended = min(ended, expires_at(session))
            if ended < parse_iso(session["started_at"]):
                raise InvalidConfig("ended_at is before the session started")
            return await self._complete(db, session, ended, summary)

    async def expire(self, db, now: Optional[datetime] = None) -> List[str]:
        """Complete every open session whose timer ran out. Returns their IDs."""
        now = now or self.clock.now()
        expired = []
        for candidate in await bounded(ps.list_open_sessions(db)):
            if now <= accepts_until(candidate):
                continue
            async with self.locks.hold(("session", candidate["id"])):
                session = await bounded(ps.get_session(db, candidate["id"]))
                if not session or session["state"] == ps.SESSION_COMPLETED:
                    continue
                await self._complete(db, session, expires_at(session), None)
                expired.append(session["id"])
        if expired:
            logger.info("Expired %d sessions", len(expired))
        return expired

    async def _complete(
        self,
        db,
        session: Dict[str, Any],
        ended_at: datetime,
        supplied: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """Summarize, mark completed and finalize the answers in one transaction."""

        async def _unit():
            async with transaction(db):
                answers = await ps.get_session_answers(db, session["id"])
                summary = summarize_swipe(answers, parse_iso(session["started_at"]), ended_at)
                if supplied:
                    summary.update(supplied)
                if not await ps.complete_session(db, session["id"], to_iso(ended_at), summary):
                    raise Conflict(f"Session {session['id']} was completed concurrently")
                await ps.finalize_session_answers(db, session["id"])
            return summary

        summary = await bounded(_unit())
        logger.info(
            "Session %s completed: %d answers, accuracy %s%%",
            session["id"], summary.get("answers_total", 0), summary.get("accuracy_pct"),
        )
        return await bounded(ps.get_session(db, session["id"]))
