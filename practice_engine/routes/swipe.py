import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from practice_engine.config import settings
from practice_engine.db import practice_store as ps
from practice_engine.db.database import bounded
from practice_engine.errors import Forbidden
from practice_engine.models.practice import (
    AnswerResponse,
    AnswerSubmission,
    DeckItem,
    DeckResponse,
    EloUpdates,
    ExpireResponse,
    SessionEndRequest,
    SessionResponse,
    SessionStartRequest,
    SessionStartResponse,
    SkillRating,
    UserStatsResponse,
)
from practice_engine.routes.auth import get_current_user, require_role
from practice_engine.services.clock import to_iso
from practice_engine.services.deck_builder import suggested_deck_size
from practice_engine.services.session_manager import expires_at, validate_slice

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/swipe", tags=["swipe"])


def _engine(request: Request):
    return request.app.state.engine


def _session_response(session: dict) -> SessionResponse:
    return SessionResponse(
        session_id=session["id"],
        user_id=session["user_id"],
        lang=session["lang"],
        level=session["level"],
        exam=session["exam"],
        skill=session["skill"],
        state=session["state"],
        duration_s=session["requested_duration_seconds"],
        started_at=session["started_at"],
        ended_at=session["ended_at"],
        answers_count=session["answers_count"],
        summary=session["summary"],
    )


@router.post("/session/start", status_code=201, response_model=SessionStartResponse)
async def start_session(body: SessionStartRequest, request: Request):
    user = get_current_user(request)
    if body.user_id != user["id"]:
        raise Forbidden("Cannot start a session for another user")

    engine = _engine(request)
    async with engine.connect() as db:
        session = await engine.sessions.start(
            db, body.user_id, body.lang, body.level, body.exam, body.skill, body.duration_s
        )
        recent = await bounded(ps.get_recent_item_ids(db, body.user_id, settings.deck_recent_window))
        deck = await engine.decks.build_deck(
            db, body.user_id, body.lang, body.level, body.exam, body.skill,
            suggested_deck_size(body.duration_s), recent,
        )

    return SessionStartResponse(
        session_id=session["id"],
        state=session["state"],
        started_at=session["started_at"],
        expires_at=to_iso(expires_at(session)),
        duration_s=session["requested_duration_seconds"],
        deck_size=deck.session_suggested_size,
        estimated_difficulty=deck.estimated_difficulty,
    )


@router.post("/answer", status_code=201, response_model=AnswerResponse)
async def submit_answer(body: AnswerSubmission, request: Request):
    user = get_current_user(request)
    engine = _engine(request)
    async with engine.connect() as db:
        outcome = await engine.answers.submit(db, body, user["id"])

    answer = outcome.answer
    return AnswerResponse(
        answer_id=answer["id"],
        session_id=answer["session_id"],
        item_id=answer["item_id"],
        seq=answer["seq"],
        correct=answer["correct"],
        score_delta=answer["score_delta"],
        suspicious=answer["suspicious"],
        state=answer["state"],
        replayed=outcome.replayed,
        elo_updates=EloUpdates(
            user_rating_change=answer["elo_user_delta"],
            item_rating_change=answer["elo_item_delta"],
            user_rating=answer["user_rating_after"],
            item_rating=answer["item_rating_after"],
            expected_score=outcome.expected_score,
        ),
    )


@router.post("/session/end", response_model=SessionResponse)
async def end_session(body: SessionEndRequest, request: Request):
    user = get_current_user(request)
    engine = _engine(request)
    async with engine.connect() as db:
        session = await engine.sessions.end(
            db, body.session_id, user["id"], summary=body.summary, ended_at=body.ended_at
        )
    return _session_response(session)


@router.get("/session/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, request: Request):
    user = get_current_user(request)
    engine = _engine(request)
    async with engine.connect() as db:
        session = await engine.sessions.get(db, session_id, user["id"])
    return _session_response(session)


@router.get("/deck", response_model=DeckResponse)
async def get_deck(
    request: Request,
    lang: str,
    level: str,
    exam: str,
    skill: str,
    size: Optional[int] = None,
    user_id: Optional[str] = None,
    exclude: Optional[str] = Query(default=None, description="Comma-separated item IDs to leave out"),
):
    user = get_current_user(request)
    if user_id is not None and user_id != user["id"]:
        raise Forbidden("Cannot build a deck for another user")
    validate_slice(lang, level, exam, skill)

    excluded = [i.strip() for i in exclude.split(",") if i.strip()] if exclude else []
    engine = _engine(request)
    async with engine.connect() as db:
        excluded += await bounded(ps.get_recent_item_ids(db, user["id"], settings.deck_recent_window))
        deck = await engine.decks.build_deck(
            db, user["id"], lang, level, exam, skill,
            size if size is not None else settings.default_deck_size,
            excluded,
        )

    return DeckResponse(
        items=[
            DeckItem(
                id=item["id"],
                term=item["term"],
                difficulty_elo=item["difficulty_elo"],
                tags=item["tags"],
                content_version=item["content_version"],
            )
            for item in deck.items
        ],
        user_rating=deck.user_rating,
        estimated_difficulty=deck.estimated_difficulty,
        session_suggested_size=deck.session_suggested_size,
    )


@router.get("/stats/user", response_model=UserStatsResponse)
async def user_stats(request: Request):
    user = get_current_user(request)
    engine = _engine(request)
    async with engine.connect() as db:
        sessions = await bounded(ps.get_user_session_stats(db, user["id"]))
        answers = await bounded(ps.get_user_answer_stats(db, user["id"]))
        ratings = await bounded(engine.ratings.list_user_ratings(db, user["id"]))

    summaries = sessions["completed_summaries"]
    total_answers = answers["total_answers"]
    return UserStatsResponse(
        user_id=user["id"],
        total_sessions=sessions["total_sessions"],
        completed_sessions=len(summaries),
        total_answers=total_answers,
        correct_answers=answers["correct_answers"],
        overall_accuracy=round(answers["correct_answers"] / total_answers * 100, 2) if total_answers else 0.0,
        average_score=(
            round(sum(s.get("score_total", 0) for s in summaries) / len(summaries), 2) if summaries else 0.0
        ),
        best_streak=max((s.get("streak_max", 0) for s in summaries), default=0),
        ratings=[SkillRating(**r) for r in ratings],
    )


@router.post("/sessions/expire", response_model=ExpireResponse)
async def expire_sessions(request: Request, admin=Depends(require_role("admin"))):
    engine = _engine(request)
    async with engine.connect() as db:
        expired = await engine.sessions.expire(db)
    logger.info("Expiry sweep requested by %s: %d sessions", admin["id"], len(expired))
    return ExpireResponse(expired=expired)
