"""End-to-end tests through the HTTP API."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import OTHER_USER, USER, auth_headers, make_item
from practice_engine.server import create_app

SHOWN = datetime(2025, 1, 6, 9, 0, 5, tzinfo=timezone.utc)


@pytest.fixture
def client(engine, seed):
    seed(
        make_item("i1", 1480),
        make_item("i2", 1500),
        make_item("i3", 1530),
        make_item("i4", 1900),
    )
    return TestClient(create_app(engine, migrate=False))


def _start(client, user_id=USER, duration_s=60):
    res = client.post(
        "/api/swipe/session/start",
        json={"user_id": user_id, "lang": "es", "level": "B1", "exam": "EOI", "skill": "W",
              "duration_s": duration_s},
        headers=auth_headers(user_id),
    )
    return res


def _answer_payload(session_id, answer_id, item_id, correct=True):
    return {
        "answer_id": answer_id,
        "session_id": session_id,
        "user_id": USER,
        "item_id": item_id,
        "lang": "es",
        "level": "B1",
        "exam": "EOI",
        "skill": "W",
        "tags": ["registro"],
        "user_choice": "apta" if correct else "no_apta",
        "correct": correct,
        "shown_at": SHOWN.isoformat(),
        "answered_at": (SHOWN + timedelta(milliseconds=1500)).isoformat(),
        "latency_ms": 1500,
        "item_difficulty": 1500,
        "content_version": "1",
        "app_version": "2.4.0",
        "suspicious": False,
    }


class TestAuth:

    def test_health_is_public(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_missing_token(self, client):
        res = client.get("/api/swipe/stats/user")
        assert res.status_code == 401

    def test_garbage_token(self, client):
        res = client.get("/api/swipe/stats/user", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401
        assert res.json()["code"] == "unauthenticated"

    def test_start_for_someone_else(self, client):
        res = client.post(
            "/api/swipe/session/start",
            json={"user_id": OTHER_USER, "lang": "es", "level": "B1", "exam": "EOI", "skill": "W",
                  "duration_s": 60},
            headers=auth_headers(USER),
        )
        assert res.status_code == 403
        assert res.json()["code"] == "forbidden"


class TestSwipeFlow:

    def test_three_correct_answers_raise_the_rating(self, client):
        res = _start(client)
        assert res.status_code == 201
        body = res.json()
        session_id = body["session_id"]
        assert body["state"] == "created"
        assert body["deck_size"] == 4

        deck = client.get(
            "/api/swipe/deck",
            params={"lang": "es", "level": "B1", "exam": "EOI", "skill": "W", "size": 3},
            headers=auth_headers(),
        ).json()
        assert [i["id"] for i in deck["items"]] == ["i2", "i1", "i3"]
        assert deck["user_rating"] == 1500

        by_difficulty = sorted(deck["items"], key=lambda i: i["difficulty_elo"])
        for n, item in enumerate(by_difficulty, start=1):
            res = client.post(
                "/api/swipe/answer",
                json=_answer_payload(session_id, f"ans-{n}", item["id"]),
                headers=auth_headers(),
            )
            assert res.status_code == 201
            elo = res.json()["elo_updates"]
            assert elo["user_rating_change"] > 0
            assert elo["item_rating_change"] < 0

        res = client.post("/api/swipe/session/end", json={"session_id": session_id}, headers=auth_headers())
        assert res.status_code == 200
        summary = res.json()["summary"]
        assert res.json()["state"] == "completed"
        assert summary["answers_total"] == 3
        assert summary["correct"] == 3
        assert summary["accuracy_pct"] == 100.0

        stats = client.get("/api/swipe/stats/user", headers=auth_headers()).json()
        assert stats["total_answers"] == 3
        assert stats["completed_sessions"] == 1
        assert stats["best_streak"] == 3
        [rating] = stats["ratings"]
        assert rating["skill"] == "W"
        assert rating["rating"] > 1500

    def test_replayed_answer(self, client):
        session_id = _start(client).json()["session_id"]
        payload = _answer_payload(session_id, "dup", "i1")
        first = client.post("/api/swipe/answer", json=payload, headers=auth_headers())
        second = client.post("/api/swipe/answer", json=payload, headers=auth_headers())

        assert first.status_code == 201
        assert second.status_code == 201
        assert second.json()["replayed"] is True
        assert second.json()["elo_updates"]["user_rating_change"] == first.json()["elo_updates"]["user_rating_change"]

    def test_answer_after_end_is_rejected(self, client):
        session_id = _start(client).json()["session_id"]
        client.post("/api/swipe/session/end", json={"session_id": session_id}, headers=auth_headers())

        res = client.post(
            "/api/swipe/answer", json=_answer_payload(session_id, "late", "i1"), headers=auth_headers()
        )
        assert res.status_code == 400
        assert res.json()["code"] == "session_completed"

    def test_end_with_conflicting_summary(self, client):
        session_id = _start(client).json()["session_id"]
        ok = client.post(
            "/api/swipe/session/end",
            json={"session_id": session_id, "summary": {"score_total": 2.0}},
            headers=auth_headers(),
        )
        again = client.post(
            "/api/swipe/session/end",
            json={"session_id": session_id, "summary": {"score_total": 2.0}},
            headers=auth_headers(),
        )
        clash = client.post(
            "/api/swipe/session/end",
            json={"session_id": session_id, "summary": {"score_total": 7.0}},
            headers=auth_headers(),
        )
        assert ok.status_code == 200
        assert again.status_code == 200
        assert clash.status_code == 409

    def test_unknown_session(self, client):
        res = client.get("/api/swipe/session/nope", headers=auth_headers())
        assert res.status_code == 404
        assert res.json()["code"] == "session_not_found"

    def test_invalid_duration(self, client):
        res = _start(client, duration_s=45)
        assert res.status_code == 400
        assert res.json()["code"] == "invalid_config"

    def test_bad_answer_format(self, client):
        session_id = _start(client).json()["session_id"]
        payload = _answer_payload(session_id, "x", "i1")
        payload["latency_ms"] = 999999
        res = client.post("/api/swipe/answer", json=payload, headers=auth_headers())
        assert res.status_code == 400
        assert res.json()["code"] == "invalid_answer_format"

    @pytest.mark.parametrize("duration", [None, "sixty"])
    def test_malformed_start_body(self, client, duration):
        body = {"user_id": USER, "lang": "es", "level": "B1", "exam": "EOI", "skill": "W"}
        if duration is not None:
            body["duration_s"] = duration
        res = client.post("/api/swipe/session/start", json=body, headers=auth_headers())
        assert res.status_code == 400
        assert res.json()["code"] == "invalid_config"
        assert "duration_s" in res.json()["detail"]

    def test_incomplete_answer_body(self, client):
        res = client.post("/api/swipe/answer", json={"answer_id": "lonely"}, headers=auth_headers())
        assert res.status_code == 400
        assert res.json()["code"] == "invalid_answer_format"

    def test_malformed_end_body(self, client):
        res = client.post("/api/swipe/session/end", json={}, headers=auth_headers())
        assert res.status_code == 400
        assert res.json()["code"] == "invalid_config"


class TestDeck:

    def test_recently_answered_items_are_skipped(self, client):
        session_id = _start(client).json()["session_id"]
        client.post("/api/swipe/answer", json=_answer_payload(session_id, "r1", "i2"), headers=auth_headers())

        deck = client.get(
            "/api/swipe/deck",
            params={"lang": "es", "level": "B1", "exam": "EOI", "skill": "W", "size": 10},
            headers=auth_headers(),
        ).json()
        assert "i2" not in [i["id"] for i in deck["items"]]
        assert deck["session_suggested_size"] == 3

    def test_explicit_exclusions(self, client):
        deck = client.get(
            "/api/swipe/deck",
            params={"lang": "es", "level": "B1", "exam": "EOI", "skill": "W", "exclude": "i1,i2"},
            headers=auth_headers(),
        ).json()
        assert sorted(i["id"] for i in deck["items"]) == ["i3", "i4"]

    def test_size_too_large(self, client):
        res = client.get(
            "/api/swipe/deck",
            params={"lang": "es", "level": "B1", "exam": "EOI", "skill": "W", "size": 500},
            headers=auth_headers(),
        )
        assert res.status_code == 400

    def test_other_users_deck(self, client):
        res = client.get(
            "/api/swipe/deck",
            params={"lang": "es", "level": "B1", "exam": "EOI", "skill": "W", "user_id": OTHER_USER},
            headers=auth_headers(),
        )
        assert res.status_code == 403


class TestAdmin:

    def test_expire_requires_admin(self, client):
        res = client.post("/api/swipe/sessions/expire", headers=auth_headers())
        assert res.status_code == 403

    def test_expire_sweep(self, client, clock):
        session_id = _start(client, duration_s=20).json()["session_id"]
        clock.advance(120)
        res = client.post("/api/swipe/sessions/expire", headers=auth_headers("ops", role="admin"))
        assert res.status_code == 200
        assert res.json()["expired"] == [session_id]


class TestExamScoring:

    def test_score_mixed_exam(self, client):
        res = client.post(
            "/api/exams/score",
            json={
                "exam_session_id": "exam-1",
                "questions": [
                    {"id": "q1", "type": "multiple_choice", "correct_answer": "b"},
                    {"id": "q2", "type": "multiple_choice", "correct_answer": "c"},
                    {"id": "q3", "type": "true_false", "correct_answer": False},
                    {"id": "q4", "type": "essay", "points": 5},
                ],
                "answers": {"q1": "b", "q2": "a", "q3": "falso", "q4": "Texto"},
            },
            headers=auth_headers(),
        )
        assert res.status_code == 200
        body = res.json()
        assert body["percentage"] == 67
        assert body["pending_manual_count"] == 1
        assert body["pending_manual_points"] == 5

    def test_unknown_question_type_is_a_validation_error(self, client):
        res = client.post(
            "/api/exams/score",
            json={"questions": [{"id": "q1", "type": "crossword"}], "answers": {}},
            headers=auth_headers(),
        )
        assert res.status_code == 422

    def test_answer_for_unknown_question(self, client):
        res = client.post(
            "/api/exams/score",
            json={"questions": [{"id": "q1", "type": "essay"}], "answers": {"zzz": "?"}},
            headers=auth_headers(),
        )
        assert res.status_code == 400
