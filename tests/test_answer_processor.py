"""Tests for answer submission: validation, idempotency and atomicity."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import OTHER_USER, USER, make_item
from practice_engine.db import practice_store as ps
from practice_engine.db.rating_store import UserKey
from practice_engine.errors import (
    Conflict,
    Forbidden,
    InvalidAnswerFormat,
    ItemNotFound,
    RatingUpdateFailed,
    SessionCompleted,
)
from practice_engine.models.practice import AnswerSubmission

SHOWN = datetime(2025, 1, 6, 9, 0, 5, tzinfo=timezone.utc)
KEY = UserKey(USER, "es", "EOI", "W")


def submission(session_id, answer_id="a1", item_id="i1", correct=True, latency_ms=1200, **overrides):
    data = {
        "answer_id": answer_id,
        "session_id": session_id,
        "user_id": USER,
        "item_id": item_id,
        "lang": "es",
        "level": "B1",
        "exam": "EOI",
        "skill": "W",
        "tags": ["subjuntivo"],
        "user_choice": "apta" if correct else "no_apta",
        "correct": correct,
        "shown_at": SHOWN,
        "answered_at": SHOWN + timedelta(milliseconds=latency_ms),
        "latency_ms": latency_ms,
        "item_difficulty": 1500,
        "content_version": "1",
        "app_version": "2.4.0",
    }
    data.update(overrides)
    return AnswerSubmission(**data)


@pytest.fixture
def session_id(engine, run, seed):
    seed(make_item("i1"), make_item("i2", 1600))
    session = run(lambda db: engine.sessions.start(db, USER, "es", "B1", "EOI", "W", 60))
    return session["id"]


def _submit(engine, run, sub, caller=USER):
    return run(lambda db: engine.answers.submit(db, sub, caller))


class TestSubmit:

    def test_new_answer_updates_everything_together(self, engine, run, session_id):
        outcome = _submit(engine, run, submission(session_id))

        assert outcome.replayed is False
        assert outcome.answer["seq"] == 1
        assert outcome.answer["elo_user_delta"] == pytest.approx(10.0)
        assert outcome.answer["elo_item_delta"] == pytest.approx(-10.0)
        assert outcome.expected_score == pytest.approx(0.5)

        stored = run(lambda db: ps.get_answer(db, "a1"))
        assert stored["state"] == "answered"
        assert stored["correct"] is True
        assert stored["score_delta"] == 1.0
        assert stored["user_rating_after"] == pytest.approx(1510.0)

        session = run(lambda db: ps.get_session(db, session_id))
        assert session["state"] == "in_progress"
        assert session["answers_count"] == 1

        stats = run(lambda db: ps.get_item_stats(db, "i1"))
        assert stats["plays"] == 1
        assert stats["correct"] == 1
        assert stats["avg_latency_ms"] == 1200

        assert run(lambda db: engine.ratings.get_user_rating(db, KEY)).rating == pytest.approx(1510.0)

    def test_incorrect_answer_default_penalty(self, engine, run, session_id):
        outcome = _submit(engine, run, submission(session_id, correct=False))
        assert outcome.answer["score_delta"] == pytest.approx(-1.33)
        assert outcome.answer["elo_user_delta"] < 0

    def test_answers_get_sequence_numbers(self, engine, run, session_id):
        _submit(engine, run, submission(session_id, "a1", "i1"))
        second = _submit(engine, run, submission(session_id, "a2", "i2", correct=False))
        assert second.answer["seq"] == 2

    def test_fast_answers_are_flagged(self, engine, run, session_id):
        outcome = _submit(engine, run, submission(session_id, latency_ms=120))
        assert outcome.answer["suspicious"] is True
        assert run(lambda db: engine.ratings.get_user_rating(db, KEY)).persisted is True

    def test_client_suspicious_flag_kept(self, engine, run, session_id):
        outcome = _submit(engine, run, submission(session_id, suspicious=True))
        assert outcome.answer["suspicious"] is True


class TestIdempotency:

    def test_resubmission_returns_stored_answer(self, engine, run, session_id):
        first = _submit(engine, run, submission(session_id))
        again = _submit(engine, run, submission(session_id))

        assert again.replayed is True
        assert again.answer["id"] == first.answer["id"]
        assert again.answer["elo_user_delta"] == pytest.approx(first.answer["elo_user_delta"])

        rating = run(lambda db: engine.ratings.get_user_rating(db, KEY))
        assert rating.rating == pytest.approx(1510.0)
        assert rating.version == 1
        assert run(lambda db: ps.get_session(db, session_id))["answers_count"] == 1

    def test_resubmission_after_session_end_still_replays(self, engine, run, session_id):
        _submit(engine, run, submission(session_id))
        run(lambda db: engine.sessions.end(db, session_id, USER))
        assert _submit(engine, run, submission(session_id)).replayed is True

    def test_reused_id_with_different_content_conflicts(self, engine, run, session_id):
        _submit(engine, run, submission(session_id))
        with pytest.raises(Conflict):
            _submit(engine, run, submission(session_id, correct=False))

    def test_concurrent_duplicates_apply_once(self, engine, session_id):
        async def send():
            async with engine.connect() as db:
                return await engine.answers.submit(db, submission(session_id), USER)

        async def main():
            outcomes = await asyncio.gather(*(send() for _ in range(5)))
            async with engine.connect() as db:
                answers = await ps.get_session_answers(db, session_id)
                rating = await engine.ratings.get_user_rating(db, KEY)
                item = await engine.ratings.get_item_rating(db, "i1")
            return outcomes, answers, rating, item

        outcomes, answers, rating, item = asyncio.run(main())

        assert sum(1 for o in outcomes if not o.replayed) == 1
        assert len(answers) == 1
        assert rating.version == 1
        assert item.version == 1


class TestRejections:

    def test_other_users_answer(self, engine, run, session_id):
        with pytest.raises(Forbidden):
            _submit(engine, run, submission(session_id), caller=OTHER_USER)

    @pytest.mark.parametrize("overrides", [
        {"latency_ms": -1},
        {"latency_ms": 300001},
        {"user_choice": "maybe"},
        {"answered_at": SHOWN - timedelta(seconds=1)},
        {"score_delta": float("inf")},
    ])
    def test_malformed_answers(self, engine, run, session_id, overrides):
        with pytest.raises(InvalidAnswerFormat):
            _submit(engine, run, submission(session_id, **overrides))
        assert run(lambda db: ps.get_answer(db, "a1")) is None

    def test_answer_for_a_different_skill(self, engine, run, session_id):
        with pytest.raises(InvalidAnswerFormat):
            _submit(engine, run, submission(session_id, skill="S"))

    def test_unknown_item(self, engine, run, session_id):
        with pytest.raises(ItemNotFound):
            _submit(engine, run, submission(session_id, item_id="ghost"))

    def test_completed_session(self, engine, run, session_id):
        run(lambda db: engine.sessions.end(db, session_id, USER))
        with pytest.raises(SessionCompleted):
            _submit(engine, run, submission(session_id))
        assert run(lambda db: ps.get_answer(db, "a1")) is None

    def test_failed_rating_update_leaves_no_trace(self, engine, run, session_id, monkeypatch):
        async def always_conflict(*args, **kwargs):
            raise Conflict("lost the race")

        monkeypatch.setattr(engine.ratings, "apply_deltas", always_conflict)
        with pytest.raises(RatingUpdateFailed):
            _submit(engine, run, submission(session_id))

        assert run(lambda db: ps.get_answer(db, "a1")) is None
        assert run(lambda db: ps.get_item_stats(db, "i1")) is None
        assert run(lambda db: ps.get_session(db, session_id))["answers_count"] == 0
