import logging

from fastapi import APIRouter, Request

from practice_engine.models.exam import ExamResult, ExamScoreRequest
from practice_engine.routes.auth import get_current_user
from practice_engine.services.score_aggregator import score_exam

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/exams", tags=["exams"])


@router.post("/score", response_model=ExamResult)
async def score_exam_attempt(body: ExamScoreRequest, request: Request):
    """Auto-score the objective questions and count what needs a human grader."""
    user = get_current_user(request)
    result = score_exam(body.questions, body.answers, exam_session_id=body.exam_session_id)
    logger.info(
        "Exam %s scored for %s: %s%% objective, %d pending manual",
        body.exam_session_id or "-", user["id"], result.percentage, result.pending_manual_count,
    )
    return result
