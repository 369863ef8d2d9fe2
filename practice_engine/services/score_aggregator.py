"""
score_aggregator.py - Session summaries and exam scoring

Provides:
- summarize_swipe(answers, started_at, ended_at) - totals for a swipe session
- validate_supplied_summary(summary) - sanity checks on a client-side summary
- ExamScorer - objective auto-scoring plus pending-manual bookkeeping
- score_exam(questions, answers) - one-shot ExamScorer run
"""

import re
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from practice_engine.errors import AlreadyFinalized, InvalidAnswerFormat, InvalidConfig
from practice_engine.models.exam import ExamResult, ObjectiveQuestion, QuestionResult, SubjectiveQuestion

CORRECT_POINTS = 1.0
INCORRECT_POINTS = -1.33

ANSWER_UNANSWERED = "unanswered"
ANSWER_ANSWERED = "answered"
ANSWER_FINALIZED = "finalized"

SUMMARY_COUNT_FIELDS = ("answers_total", "correct", "incorrect")

# Spanish / Valencian / English spellings accepted for true/false questions
TRUE_VARIANTS = {"true", "t", "yes", "y", "1", "verdadero", "v", "si", "sí", "cert"}
FALSE_VARIANTS = {"false", "f", "no", "n", "0", "falso", "fals"}


def points_for(correct: bool) -> float:
    """Default score_delta of a swipe answer."""
    return CORRECT_POINTS if correct else INCORRECT_POINTS


# ══════════════════════════════════════════════════════════════════════════════
# SWIPE SESSIONS
# ══════════════════════════════════════════════════════════════════════════════

def summarize_swipe(
    answers: List[Dict[str, Any]],
    started_at: datetime,
    ended_at: datetime,
) -> Dict[str, Any]:
    """Summarize the answers of a swipe session, in acceptance order."""
    total = len(answers)
    correct = sum(1 for a in answers if a["correct"])
    incorrect = total - correct

    streak = streak_max = 0
    errors: Counter = Counter()
    for a in answers:
        if a["correct"]:
            streak += 1
            streak_max = max(streak_max, streak)
        else:
            streak = 0
            for tag in a.get("tags") or []:
                errors[tag] += 1

    elapsed_s = max((ended_at - started_at).total_seconds(), 0.0)
    items_per_min = round(total / (elapsed_s / 60.0), 2) if elapsed_s > 0 else 0.0
    avg_latency = round(sum(a["latency_ms"] for a in answers) / total) if total else 0

    return {
        "score_total": round(sum(a["score_delta"] for a in answers), 2),
        "answers_total": total,
        "correct": correct,
        "incorrect": incorrect,
        "accuracy_pct": round(correct / total * 100, 2) if total else 0.0,
        "items_per_min": items_per_min,
        "streak_max": streak_max,
        "avg_latency_ms": avg_latency,
        "error_buckets": dict(errors),
        "suspicious_count": sum(1 for a in answers if a.get("suspicious")),
    }


def validate_supplied_summary(summary: Dict[str, Any]) -> None:
    """Reject a client summary whose numbers cannot be right."""
    for name in SUMMARY_COUNT_FIELDS:
        if name in summary:
            value = summary[name]
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise InvalidConfig(f"Summary field {name} must be a non-negative integer")

    if "accuracy_pct" in summary:
        accuracy = summary["accuracy_pct"]
        if not isinstance(accuracy, (int, float)) or isinstance(accuracy, bool) or not 0 <= accuracy <= 100:
            raise InvalidConfig("Summary accuracy_pct must be between 0 and 100")

    if all(name in summary for name in SUMMARY_COUNT_FIELDS):
        if summary["correct"] + summary["incorrect"] != summary["answers_total"]:
            raise InvalidConfig("Summary correct + incorrect must equal answers_total")


# ══════════════════════════════════════════════════════════════════════════════
# EXAMS
# ══════════════════════════════════════════════════════════════════════════════

def normalize_answer(answer: Any) -> str:
    """Normalize an answer for comparison."""
    if answer is None:
        return ""
    if isinstance(answer, bool):
        return "true" if answer else "false"
    return re.sub(r"\s+", " ", str(answer)).strip().lower()


def _normalize_punctuation(text: str) -> str:
    """Remove trailing punctuation and collapse whitespace."""
    text = re.sub(r"[.,!?;:¡¿]+$", "", text)
    text = re.sub(r"\s+", " ", text).strip()
    return text


def _as_bool(text: str) -> Optional[bool]:
    if text in TRUE_VARIANTS:
        return True
    if text in FALSE_VARIANTS:
        return False
    return None


def score_objective(question: ObjectiveQuestion, answer: Any) -> bool:
    """True iff the submitted answer matches the canonical one."""
    if answer is None:
        return False

    if question.type == "matching":
        if not isinstance(answer, dict) or not isinstance(question.correct_answer, dict):
            return False
        expected = {normalize_answer(k): normalize_answer(v) for k, v in question.correct_answer.items()}
        given = {normalize_answer(k): normalize_answer(v) for k, v in answer.items()}
        return given == expected

    if isinstance(answer, dict):
        return False

    student_norm = normalize_answer(answer)
    correct_norm = normalize_answer(question.correct_answer)

    if question.type == "true_false":
        student_bool = _as_bool(student_norm)
        return student_bool is not None and student_bool == _as_bool(correct_norm)

    if question.type == "fill_blank":
        if student_norm == correct_norm:
            return True
        return _normalize_punctuation(student_norm) == _normalize_punctuation(correct_norm)

    # multiple_choice: exact match on the option
    return student_norm == correct_norm


class ExamScorer:
    """Scores one exam attempt.

    Each question moves unanswered -> answered -> finalized. Answers can be
    replaced until finalize(), which happens exactly once.
    """

    def __init__(self, questions: Iterable[Any], exam_session_id: Optional[str] = None):
        self.exam_session_id = exam_session_id
        self._questions = {}
        for q in questions:
            if q.id in self._questions:
                raise InvalidAnswerFormat(f"Duplicate question id {q.id}")
            self._questions[q.id] = q
        self._answers: Dict[str, Any] = {}
        self._states = {qid: ANSWER_UNANSWERED for qid in self._questions}
        self._result: Optional[ExamResult] = None

    @property
    def finalized(self) -> bool:
        return self._result is not None

    def state_of(self, question_id: str) -> str:
        return self._states[question_id]

    def answer(self, question_id: str, value: Any) -> None:
        if question_id not in self._questions:
            raise InvalidAnswerFormat(f"Unknown question id {question_id}")
        if self.finalized:
            raise AlreadyFinalized(f"Exam already finalized, cannot answer {question_id}")
        self._answers[question_id] = value
        self._states[question_id] = ANSWER_ANSWERED

    def finalize(self) -> ExamResult:
        if self.finalized:
            raise AlreadyFinalized("Exam already finalized")

        records = []
        correct_points = 0.0
        total_objective = 0.0
        pending_count = 0
        pending_points = 0.0

        for qid, question in self._questions.items():
            answered = self._states[qid] == ANSWER_ANSWERED
            value = self._answers.get(qid)
            if answered:
                self._states[qid] = ANSWER_FINALIZED

            if isinstance(question, SubjectiveQuestion):
                pending_count += 1
                pending_points += question.points
                records.append(QuestionResult(
                    question_id=qid,
                    type=question.type,
                    state=self._states[qid],
                    answer=value,
                    points=question.points,
                    pending_manual=True,
                ))
                continue

            is_correct = answered and score_objective(question, value)
            score = question.points if is_correct else 0.0
            total_objective += question.points
            correct_points += score
            records.append(QuestionResult(
                question_id=qid,
                type=question.type,
                state=self._states[qid],
                answer=value,
                points=question.points,
                score=score,
                correct=is_correct,
                is_final=True,
            ))

        if total_objective > 0:
            percentage = round(correct_points / total_objective * 100)
            status = "scored"
        else:
            percentage = None
            status = "pending_manual_review"

        self._result = ExamResult(
            exam_session_id=self.exam_session_id,
            status=status,
            correct_points=correct_points,
            total_objective_points=total_objective,
            percentage=percentage,
            pending_manual_count=pending_count,
            pending_manual_points=pending_points,
            questions=records,
        )
        return self._result


def score_exam(
    questions: Iterable[Any],
    answers: Dict[str, Any],
    exam_session_id: Optional[str] = None,
) -> ExamResult:
    scorer = ExamScorer(questions, exam_session_id=exam_session_id)
    for question_id, value in answers.items():
        scorer.answer(question_id, value)
    return scorer.finalize()
