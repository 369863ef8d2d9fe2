from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


OBJECTIVE_TYPES = ("multiple_choice", "true_false", "fill_blank", "matching")
SUBJECTIVE_TYPES = ("essay", "open_ended", "speaking_task")


class ObjectiveQuestion(BaseModel):
    """Auto-scored: full points iff the answer matches the canonical one."""
    id: str
    type: Literal["multiple_choice", "true_false", "fill_blank", "matching"]
    points: float = Field(default=1.0, ge=0)
    correct_answer: Union[bool, str, dict[str, str]]
    prompt: str = ""


class SubjectiveQuestion(BaseModel):
    """Needs a human grader. Counted as pending manual review."""
    id: str
    type: Literal["essay", "open_ended", "speaking_task"]
    points: float = Field(default=1.0, ge=0)
    prompt: str = ""
    rubric: Optional[str] = None


Question = Annotated[Union[ObjectiveQuestion, SubjectiveQuestion], Field(discriminator="type")]


class ExamScoreRequest(BaseModel):
    exam_session_id: Optional[str] = None
    questions: list[Question]
    # question id -> submitted answer (string, boolean or a pairs mapping for matching)
    answers: dict[str, Any] = {}


class QuestionResult(BaseModel):
    question_id: str
    type: str
    state: str
    answer: Any = None
    points: float
    score: Optional[float] = None
    correct: Optional[bool] = None
    is_final: bool = False
    pending_manual: bool = False


class ExamResult(BaseModel):
    exam_session_id: Optional[str] = None
    status: Literal["scored", "pending_manual_review"]
    correct_points: float = 0.0
    total_objective_points: float = 0.0
    # None when nothing could be scored automatically
    percentage: Optional[int] = None
    pending_manual_count: int = 0
    pending_manual_points: float = 0.0
    questions: list[QuestionResult] = []
