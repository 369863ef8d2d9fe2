"""Tests for the session lifecycle."""

import asyncio

import pytest

from conftest import OTHER_USER, USER
from practice_engine.db import practice_store as ps
from practice_engine.errors import (
    Conflict,
    Forbidden,
    InvalidConfig,
    SessionCompleted,
    SessionNotFound,
)


def _start(engine, run, user_id=USER, duration_s=60, **overrides):
    params = {"lang": "es", "level": "B1", "exam": "EOI", "skill": "W"}
    params.update(overrides)
    return run(lambda db: engine.sessions.start(
        db, user_id, params["lang"], params["level"], params["exam"], params["skill"], duration_s
    ))


async def _enter(engine, db, session_id, user_id=USER):
    async with engine.sessions.accepting(db, session_id, user_id) as session:
        return session


class TestStart:

    def test_new_session_is_created(self, engine, run):
        session = _start(engine, run)
        assert session["state"] == "created"
        assert session["requested_duration_seconds"] == 60
        assert session["ended_at"] is None

    @pytest.mark.parametrize("duration_s", [0, 45, 121, -20])
    def test_unsupported_duration(self, engine, run, duration_s):
        with pytest.raises(InvalidConfig):
            _start(engine, run, duration_s=duration_s)

    @pytest.mark.parametrize("override", [
        {"lang": "fr"}, {"level": "D1"}, {"exam": "TOEFL"}, {"skill": "reading"},
    ])
    def test_unsupported_slice(self, engine, run, override):
        with pytest.raises(InvalidConfig):
            _start(engine, run, **override)

    def test_missing_user(self, engine, run):
        with pytest.raises(InvalidConfig):
            _start(engine, run, user_id="  ")

    def test_previous_open_session_is_abandoned(self, engine, run):
        first = _start(engine, run)
        second = _start(engine, run)

        old = run(lambda db: ps.get_session(db, first["id"]))
        assert old["state"] == "completed"
        assert old["summary"]["answers_total"] == 0
        assert second["state"] == "created"

    def test_other_users_sessions_untouched(self, engine, run):
        mine = _start(engine, run)
        _start(engine, run, user_id=OTHER_USER)
        assert run(lambda db: ps.get_session(db, mine["id"]))["state"] == "created"


class TestAccepting:

    def test_open_session_accepts(self, engine, run):
        session = _start(engine, run)
        entered = run(lambda db: _enter(engine, db, session["id"]))
        assert entered["id"] == session["id"]

    def test_unknown_session(self, engine, run):
        with pytest.raises(SessionNotFound):
            run(lambda db: _enter(engine, db, "missing"))

    def test_someone_elses_session(self, engine, run):
        session = _start(engine, run)
        with pytest.raises(Forbidden):
            run(lambda db: _enter(engine, db, session["id"], OTHER_USER))

    def test_completed_session_rejects(self, engine, run):
        session = _start(engine, run)
        run(lambda db: engine.sessions.end(db, session["id"], USER))
        with pytest.raises(SessionCompleted):
            run(lambda db: _enter(engine, db, session["id"]))

    def test_grace_period_still_accepts(self, engine, run, clock):
        session = _start(engine, run, duration_s=20)
        clock.advance(25)
        run(lambda db: _enter(engine, db, session["id"]))

    def test_expired_session_is_completed_on_access(self, engine, run, clock):
        session = _start(engine, run, duration_s=20)
        clock.advance(31)
        with pytest.raises(SessionCompleted):
            run(lambda db: _enter(engine, db, session["id"]))

        stored = run(lambda db: ps.get_session(db, session["id"]))
        assert stored["state"] == "completed"
        assert stored["ended_at"].startswith("2025-01-06T09:00:20")


class TestEnd:

    def test_end_computes_summary(self, engine, run, clock):
        session = _start(engine, run)
        clock.advance(30)
        ended = run(lambda db: engine.sessions.end(db, session["id"], USER))

        assert ended["state"] == "completed"
        assert ended["ended_at"] is not None
        assert ended["summary"]["answers_total"] == 0
        assert ended["summary"]["accuracy_pct"] == 0.0

    def test_late_end_is_capped_at_the_deadline(self, engine, run, clock):
        session = _start(engine, run, duration_s=20)
        clock.advance(25)
        ended = run(lambda db: engine.sessions.end(db, session["id"], USER))
        assert ended["ended_at"].startswith("2025-01-06T09:00:20")

    def test_supplied_summary_overlays_computed_one(self, engine, run):
        session = _start(engine, run)
        ended = run(lambda db: engine.sessions.end(db, session["id"], USER, summary={"score_total": 4.0}))
        assert ended["summary"]["score_total"] == 4.0
        assert "streak_max" in ended["summary"]

    def test_end_twice_is_a_no_op(self, engine, run, clock):
        session = _start(engine, run)
        first = run(lambda db: engine.sessions.end(db, session["id"], USER, summary={"score_total": 4.0}))
        clock.advance(10)
        again = run(lambda db: engine.sessions.end(db, session["id"], USER, summary={"score_total": 4.0}))
        bare = run(lambda db: engine.sessions.end(db, session["id"], USER))

        assert again["ended_at"] == first["ended_at"]
        assert bare["summary"] == first["summary"]

    def test_end_again_with_different_summary_conflicts(self, engine, run):
        session = _start(engine, run)
        run(lambda db: engine.sessions.end(db, session["id"], USER, summary={"score_total": 4.0}))
        with pytest.raises(Conflict):
            run(lambda db: engine.sessions.end(db, session["id"], USER, summary={"score_total": 9.0}))

    def test_invalid_supplied_summary(self, engine, run):
        session = _start(engine, run)
        with pytest.raises(InvalidConfig):
            run(lambda db: engine.sessions.end(db, session["id"], USER, summary={"accuracy_pct": 140}))
        assert run(lambda db: ps.get_session(db, session["id"]))["state"] == "created"

    def test_concurrent_ends_complete_once(self, engine, run):
        session = _start(engine, run)

        async def end_once():
            async with engine.connect() as db:
                return await engine.sessions.end(db, session["id"], USER)

        async def main():
            return await asyncio.gather(*(end_once() for _ in range(4)))

        results = asyncio.run(main())
        assert len({r["ended_at"] for r in results}) == 1


class TestExpire:

    def test_sweep_completes_only_overdue_sessions(self, engine, run, clock):
        short = _start(engine, run, user_id="a", duration_s=20)
        long = _start(engine, run, user_id="b", duration_s=120)
        clock.advance(60)

        expired = run(lambda db: engine.sessions.expire(db))

        assert expired == [short["id"]]
        assert run(lambda db: ps.get_session(db, long["id"]))["state"] == "created"
        assert run(lambda db: engine.sessions.expire(db)) == []
