"""
Exam attempt router.
Student-facing endpoints for starting/resuming an exam, autosave, single
answer save and submission, plus review/result reads and the staff-only
abandon action.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from database.database import get_db
from database.models import AttemptStatus, ExamResult, User
from routers.auth import get_current_student, get_current_user, require_staff
from routers.deps import get_lifecycle, get_progress_store, rate_limited
from services.attempt_guards import load_attempt, require_owner_or_staff
from services.attempt_lifecycle import AttemptLifecycle
from services.errors import ForbiddenError, InvalidStateError
from services.progress_store import AttemptProgressStore
from services import scoring
from services.scoring import ScoringService, result_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/exam-attempts", tags=["exam-attempts"])

# ─── Schemas ───────────────────────────────────────────────────────────────────

class StartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    exam_id: int = Field(..., alias="examId")

class AutosaveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    attempt_id: str = Field(..., alias="attemptId")
    answers: Dict[str, Any] = Field(default_factory=dict)
    current_question_index: int = Field(0, alias="currentQuestionIndex", ge=0)
    flagged_questions: List[Union[int, str]] = Field(default_factory=list, alias="flaggedQuestions")
    time_spent: Optional[int] = Field(None, alias="timeSpent", ge=0)

class AnswerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    attempt_id: str = Field(..., alias="attemptId")
    question_id: int = Field(..., alias="questionId")
    answer_text: Optional[str] = Field(None, alias="answerText")
    selected_option: Optional[int] = Field(None, alias="selectedOption")
    is_flagged: bool = Field(False, alias="isFlagged")
    time_spent: Optional[int] = Field(None, alias="timeSpent", ge=0)

class SubmitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    attempt_id: str = Field(..., alias="attemptId")
    answers: Optional[Dict[str, Any]] = None
    time_spent: Optional[int] = Field(None, alias="timeSpent", ge=0)

class AbandonRequest(BaseModel):
    reason: Optional[str] = None


# ─── Helpers ───────────────────────────────────────────────────────────────────

def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else None)


def _attempt_summary(attempt) -> dict:
    return {
        "attemptId": attempt.id,
        "examId": attempt.exam_id,
        "attemptNumber": attempt.attempt_number,
        "status": attempt.status,
        "startTime": attempt.start_time.isoformat() if attempt.start_time else None,
        "submittedAt": attempt.submitted_at.isoformat() if attempt.submitted_at else None,
        "isAutoSubmitted": attempt.is_auto_submitted,
        "totalTimeSpent": attempt.total_time_spent,
    }


# ─── Routes ────────────────────────────────────────────────────────────────────

@router.post("/start")
def start_exam(
    body: StartRequest,
    request: Request,
    student: User = Depends(get_current_student),
    _limit=Depends(rate_limited("exam_start")),
    lifecycle: AttemptLifecycle = Depends(get_lifecycle),
):
    """Start a new attempt, or resume the ongoing one with its saved progress."""
    started = lifecycle.start(
        body.exam_id,
        student,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    attempt = started.attempt
    now = lifecycle.clock()
    return {
        **_attempt_summary(attempt),
        "exam": {
            "id": attempt.exam.id,
            "title": attempt.exam.title,
            "duration_minutes": attempt.exam.duration_minutes,
        },
        "examControls": started.exam_controls,
        "questions": started.questions,
        "progress": started.progress,
        "isResume": started.is_resume,
        "deadline": started.deadline.isoformat(),
        "remainingSeconds": max(0, int((started.deadline - now).total_seconds())),
    }


@router.get("/{attempt_id}/progress")
def get_progress(
    attempt_id: str,
    user: User = Depends(get_current_user),
    store: AttemptProgressStore = Depends(get_progress_store),
):
    """Saved session for resume."""
    return {"progressData": store.load(attempt_id, user).to_dict()}


@router.post("/autosave")
def autosave(
    body: AutosaveRequest,
    student: User = Depends(get_current_student),
    _limit=Depends(rate_limited("autosave")),
    lifecycle: AttemptLifecycle = Depends(get_lifecycle),
):
    """Heartbeat save of the client's full in-memory state."""
    lifecycle.load_ongoing(body.attempt_id, student.id)
    saved_at = lifecycle.progress_store.save(
        body.attempt_id,
        student.id,
        body.current_question_index,
        body.answers,
        body.flagged_questions,
        time_spent=body.time_spent,
    )
    return {"success": True, "message": "Progress saved", "timestamp": saved_at.isoformat()}


@router.post("/answer")
def save_answer(
    body: AnswerRequest,
    student: User = Depends(get_current_student),
    _limit=Depends(rate_limited("autosave")),
    lifecycle: AttemptLifecycle = Depends(get_lifecycle),
):
    lifecycle.load_ongoing(body.attempt_id, student.id)
    answer = {"answerText": body.answer_text, "selectedOption": body.selected_option}
    row = lifecycle.progress_store.save_answer(
        body.attempt_id,
        student.id,
        body.question_id,
        answer,
        is_flagged=body.is_flagged,
        time_spent=body.time_spent,
    )
    return {"success": True, "answerId": row.id, "message": "Answer saved successfully"}


@router.post("/submit")
def submit_exam(
    body: SubmitRequest,
    student: User = Depends(get_current_student),
    _limit=Depends(rate_limited("exam_submit")),
    lifecycle: AttemptLifecycle = Depends(get_lifecycle),
):
    """
    Finalize the attempt. With AUTO_EVALUATE the result is computed right away.
    A retried submit of an already evaluated attempt gets the existing result back.
    """
    prior = lifecycle.prior_submission(body.attempt_id, student.id)
    if prior is not None:
        return _submission_response(prior.attempt, prior, already_submitted=True)

    attempt = lifecycle.submit(body.attempt_id, student.id, answers=body.answers, time_spent=body.time_spent)
    if not scoring.AUTO_EVALUATE:
        return _submission_response(attempt, None)
    return _submission_response(attempt, ScoringService(lifecycle).evaluate(attempt))


def _submission_response(attempt, result: Optional[ExamResult], already_submitted: bool = False) -> dict:
    response = {"success": True, **_attempt_summary(attempt), "showResults": False}
    if already_submitted:
        response["alreadySubmitted"] = True
    if result is not None:
        response["resultId"] = result.id
        if attempt.exam.show_results:
            response["showResults"] = True
            response["result"] = result_dict(result)
    if not response["showResults"]:
        response["message"] = "Exam submitted successfully. Results will be published later."
    elif already_submitted:
        response["message"] = "Exam was already submitted."
    return response


@router.post("/{attempt_id}/abandon")
def abandon_attempt(
    attempt_id: str,
    body: Optional[AbandonRequest] = None,
    staff: User = Depends(require_staff),
    lifecycle: AttemptLifecycle = Depends(get_lifecycle),
):
    attempt = lifecycle.abandon(attempt_id, staff, reason=body.reason if body else None)
    return {"success": True, **_attempt_summary(attempt), "reason": attempt.abandon_reason}


@router.get("/{attempt_id}/review")
def review_attempt(
    attempt_id: str,
    user: User = Depends(get_current_user),
    lifecycle: AttemptLifecycle = Depends(get_lifecycle),
):
    """Read-only answers in the same option order the student saw."""
    return lifecycle.review(attempt_id, user)


@router.get("/{attempt_id}/result")
def get_result(
    attempt_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    attempt = load_attempt(db, attempt_id)
    require_owner_or_staff(attempt, user)

    if attempt.status != AttemptStatus.EVALUATED.value:
        raise InvalidStateError("Result is not available yet", current_status=attempt.status)
    if user.id == attempt.student_id and not attempt.exam.show_results:
        raise ForbiddenError("Results for this exam have not been published")

    result = db.query(ExamResult).filter(ExamResult.attempt_id == attempt.id).first()
    return {**_attempt_summary(attempt), "result": result_dict(result) if result else None}
