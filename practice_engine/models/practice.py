from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class SessionStartRequest(BaseModel):
    user_id: str
    lang: str
    level: str
    exam: str
    skill: str
    duration_s: int


class SessionStartResponse(BaseModel):
    session_id: str
    state: str
    started_at: str
    expires_at: str
    duration_s: int
    deck_size: int = 0
    estimated_difficulty: Optional[float] = None


class AnswerSubmission(BaseModel):
    # Client-generated, doubles as the idempotency key
    answer_id: str = Field(min_length=1)
    session_id: str
    user_id: str
    item_id: str
    lang: str
    level: Optional[str] = None
    exam: str
    skill: str
    tags: list[str] = []
    user_choice: str
    correct: bool
    score_delta: Optional[float] = None
    shown_at: datetime
    answered_at: datetime
    latency_ms: int
    item_difficulty: Optional[float] = None
    content_version: Optional[str] = None
    app_version: Optional[str] = None
    suspicious: bool = False


class EloUpdates(BaseModel):
    user_rating_change: float
    item_rating_change: float
    user_rating: Optional[float] = None
    item_rating: Optional[float] = None
    expected_score: Optional[float] = None


class AnswerResponse(BaseModel):
    answer_id: str
    session_id: str
    item_id: str
    seq: int
    correct: bool
    score_delta: float
    suspicious: bool
    state: str
    replayed: bool = False
    elo_updates: EloUpdates


class SessionEndRequest(BaseModel):
    session_id: str
    ended_at: Optional[datetime] = None
    summary: Optional[dict[str, Any]] = None


class SessionResponse(BaseModel):
    session_id: str
    user_id: str
    lang: str
    level: str
    exam: str
    skill: str
    state: str
    duration_s: int
    started_at: str
    ended_at: Optional[str] = None
    answers_count: int = 0
    summary: Optional[dict[str, Any]] = None


class DeckItem(BaseModel):
    id: str
    term: str
    difficulty_elo: float
    tags: list[str] = []
    content_version: Optional[str] = None


class DeckResponse(BaseModel):
    items: list[DeckItem] = []
    user_rating: float
    estimated_difficulty: float
    session_suggested_size: int


class SkillRating(BaseModel):
    lang: str
    exam: str
    skill: str
    tag: str = ""
    rating: float
    rating_deviation: float
    answers_count: int = 0
    last_update: Optional[str] = None


class UserStatsResponse(BaseModel):
    user_id: str
    total_sessions: int = 0
    completed_sessions: int = 0
    total_answers: int = 0
    correct_answers: int = 0
    overall_accuracy: float = 0.0
    average_score: float = 0.0
    best_streak: int = 0
    ratings: list[SkillRating] = []


class ExpireResponse(BaseModel):
    expired: list[str] = []


class CatalogItem(BaseModel):
    """One entry of the YAML item catalog."""
    id: str = Field(min_length=1)
    term: str = Field(min_length=1)
    lang: str
    level: str
    exam: str
    skill_scope: list[str] = Field(min_length=1)
    tags: list[str] = []
    difficulty_elo: Optional[float] = None
    content_version: str = "1"
    active: bool = True
