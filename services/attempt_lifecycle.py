"""
Attempt lifecycle controller.

    ongoing ──submit──▶ submitted ──evaluate──▶ evaluated
       │
       └──abandon / timeout──▶ abandoned

Every mutation of progress, answers or (for students) anti-cheat events
requires the attempt to be ongoing. Submission is one-way: after it the
presented option order is frozen and only read back for review and scoring.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from database.models import (
    Answer, AttemptProgress, AttemptStatus, Exam, ExamAttempt, ExamResult, ExamStatus, Question,
    QuestionType, User, UserRole,
)
from services import shuffle
from services.anti_cheat import AntiCheatRecorder
from services.attempt_guards import (
    as_utc, is_staff, load_attempt, require_ongoing, require_owner, require_owner_or_staff,
)
from services.errors import ForbiddenError, InvalidStateError, NotFoundError, TransientStoreFailure
from services.progress_store import AttemptProgressStore

logger = logging.getLogger(__name__)

# ─── Config ────────────────────────────────────────────────────────────────────

ATTEMPT_GRACE_SECONDS = int(os.getenv("ATTEMPT_GRACE_SECONDS", "60"))
VIOLATION_AUTO_SUBMIT_THRESHOLD = int(os.getenv("VIOLATION_AUTO_SUBMIT_THRESHOLD", "5"))

ALLOWED_TRANSITIONS = {
    AttemptStatus.ONGOING.value: {AttemptStatus.SUBMITTED.value, AttemptStatus.ABANDONED.value},
    AttemptStatus.SUBMITTED.value: {AttemptStatus.EVALUATED.value},
    AttemptStatus.EVALUATED.value: set(),
    AttemptStatus.ABANDONED.value: set(),
}

COMPLETED_STATUSES = (AttemptStatus.SUBMITTED.value, AttemptStatus.EVALUATED.value)

__all__ = ["AttemptLifecycle", "StartedAttempt", "ALLOWED_TRANSITIONS", "require_ongoing"]


def _now():
    return datetime.now(timezone.utc)


@dataclass
class StartedAttempt:
    attempt: ExamAttempt
    questions: List[dict]
    is_resume: bool
    progress: Optional[dict] = None
    exam_controls: Dict[str, Any] = field(default_factory=dict)
    deadline: Optional[datetime] = None


class AttemptLifecycle:
    def __init__(
        self,
        db: Session,
        clock: Optional[Callable[[], datetime]] = None,
        grace_seconds: int = ATTEMPT_GRACE_SECONDS,
        violation_threshold: int = VIOLATION_AUTO_SUBMIT_THRESHOLD,
        seed_reducer: Optional[Callable[[str], int]] = None,
    ):
        self.db = db
        self.clock = clock or _now
        self.grace_seconds = grace_seconds
        self.violation_threshold = violation_threshold
        self.seed_reducer = seed_reducer
        self.progress_store = AttemptProgressStore(db, clock=self.clock)

    # ─── Start / resume ────────────────────────────────────────────────────────

    def start(
        self,
        exam_id: int,
        student: User,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> StartedAttempt:
        if student.role != UserRole.STUDENT.value:
            raise ForbiddenError("Only students can take exams")

        exam = self.db.get(Exam, exam_id)
        if exam is None:
            raise NotFoundError("Exam not found", extra={"exam_id": exam_id})
        if exam.status != ExamStatus.PUBLISHED.value:
            raise InvalidStateError("Exam is not open for attempts", extra={"exam_status": exam.status})

        now = self.clock()
        if exam.start_time and now < as_utc(exam.start_time):
            raise InvalidStateError("Exam has not started yet")
        if exam.end_time and now > as_utc(exam.end_time):
            raise InvalidStateError("Exam has ended")

        ongoing = (
            self.db.query(ExamAttempt)
            .filter(
                ExamAttempt.exam_id == exam_id,
                ExamAttempt.student_id == student.id,
                ExamAttempt.status == AttemptStatus.ONGOING.value,
            )
            .first()
        )
        if ongoing is not None and not self.expire_if_overdue(ongoing):
            logger.info("Resuming attempt %s for student %s", ongoing.id, student.id)
            return self._started(ongoing, is_resume=True)

        completed = (
            self.db.query(ExamAttempt)
            .filter(
                ExamAttempt.exam_id == exam_id,
                ExamAttempt.student_id == student.id,
                ExamAttempt.status.in_(COMPLETED_STATUSES),
            )
            .order_by(ExamAttempt.submitted_at.desc())
            .all()
        )
        if len(completed) >= exam.max_attempts:
            raise ForbiddenError(
                f"Maximum attempts ({exam.max_attempts}) reached for this exam",
                extra={"max_attempts": exam.max_attempts},
            )
        if completed and exam.retake_cooldown_days and completed[0].submitted_at:
            elapsed_days = (now - as_utc(completed[0].submitted_at)).days
            if elapsed_days < exam.retake_cooldown_days:
                remaining = exam.retake_cooldown_days - elapsed_days
                raise ForbiddenError(f"You must wait {remaining} more day(s) before retaking this exam")

        # Abandoned attempts keep their number; numbering counts every prior row
        attempt_number = (
            self.db.query(ExamAttempt)
            .filter(ExamAttempt.exam_id == exam_id, ExamAttempt.student_id == student.id)
            .count()
        ) + 1

        attempt = ExamAttempt(
            exam_id=exam_id,
            student_id=student.id,
            attempt_number=attempt_number,
            status=AttemptStatus.ONGOING.value,
            start_time=now,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:500] or None,
        )
        try:
            self.db.add(attempt)
            self.db.flush()
            self.db.add(AttemptProgress(
                attempt_id=attempt.id,
                current_question_index=0,
                answers={},
                flagged_questions=[],
            ))
            self.db.commit()
        except IntegrityError:
            # A concurrent start won the one-ongoing-attempt index
            self.db.rollback()
            raise InvalidStateError("An attempt for this exam is already in progress")
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to create attempt for exam %s student %s", exam_id, student.id)
            raise TransientStoreFailure("start exam")

        self.db.refresh(attempt)
        logger.info("Started attempt %s (#%d) on exam %s for student %s", attempt.id, attempt_number, exam_id, student.id)
        return self._started(attempt, is_resume=False)

    def _started(self, attempt: ExamAttempt, is_resume: bool) -> StartedAttempt:
        exam = attempt.exam
        progress = attempt.progress
        return StartedAttempt(
            attempt=attempt,
            questions=self.presented_questions(attempt),
            is_resume=is_resume,
            progress={
                "currentQuestion": progress.current_question_index,
                "answers": progress.answers or {},
                "flaggedQuestions": progress.flagged_questions or [],
            } if progress else None,
            exam_controls={
                "allow_answer_change": exam.allow_answer_change,
                "allow_answer_review": exam.allow_answer_review,
                "max_attempts": exam.max_attempts,
            },
            deadline=self.deadline(attempt),
        )

    # ─── Presentation ──────────────────────────────────────────────────────────

    def should_shuffle(self, exam: Exam, question: Question) -> bool:
        return bool(shuffle.SHUFFLE_ENABLED and exam.shuffle_options and question.randomize_options)

    def presented_options(self, attempt: ExamAttempt, question: Question) -> list:
        return shuffle.shuffle_question_options(
            list(question.options),
            attempt.student_id,
            question.id,
            self.should_shuffle(attempt.exam, question),
            attempt.id,
            reducer=self.seed_reducer,
        )

    def presented_questions(self, attempt: ExamAttempt, include_correct: bool = False) -> List[dict]:
        """Questions in exam order with options in this attempt's shuffled order."""
        questions = []
        for question in attempt.exam.questions:
            options = []
            for position, option in enumerate(self.presented_options(attempt, question)):
                item = {
                    "id": option.id,
                    "index": position,
                    "option_label": option.option_label,
                    "option_text": option.option_text,
                }
                if include_correct:
                    item["is_correct"] = option.is_correct
                options.append(item)
            questions.append({
                "id": question.id,
                "sequence": question.sequence,
                "question_text": question.question_text,
                "question_type": question.question_type,
                "marks": question.marks,
                "options": options if question.question_type == QuestionType.MCQ.value else [],
            })
        return questions

    # ─── Guards ────────────────────────────────────────────────────────────────

    def deadline(self, attempt: ExamAttempt) -> datetime:
        personal_end = as_utc(attempt.start_time) + timedelta(minutes=attempt.exam.duration_minutes)
        if attempt.exam.end_time:
            return min(personal_end, as_utc(attempt.exam.end_time))
        return personal_end

    def expire_if_overdue(self, attempt: ExamAttempt) -> bool:
        """Abandon an ongoing attempt whose time ran out. Returns True if it did."""
        if attempt.status != AttemptStatus.ONGOING.value:
            return False
        cutoff = self.deadline(attempt) + timedelta(seconds=self.grace_seconds)
        if self.clock() <= cutoff:
            return False
        logger.info("Attempt %s passed its deadline; marking abandoned", attempt.id)
        self._transition(attempt, AttemptStatus.ABANDONED.value)
        attempt.abandon_reason = "timeout"
        attempt.end_time = self.clock()
        self._commit("expire attempt")
        return True

    def load_ongoing(self, attempt_id: str, student_id: int) -> ExamAttempt:
        """Owner + ongoing + not overdue: the precondition of every student write."""
        attempt = load_attempt(self.db, attempt_id)
        require_owner(attempt, student_id)
        self.expire_if_overdue(attempt)
        require_ongoing(attempt)
        return attempt

    # ─── Transitions ───────────────────────────────────────────────────────────

    def _transition(self, attempt: ExamAttempt, new_status: str) -> None:
        if new_status not in ALLOWED_TRANSITIONS.get(attempt.status, set()):
            raise InvalidStateError(
                f"Cannot move exam attempt from {attempt.status} to {new_status}",
                current_status=attempt.status,
            )
        attempt.status = new_status

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to %s", operation)
            raise TransientStoreFailure(operation)

    def submit(
        self,
        attempt_id: str,
        student_id: int,
        answers: Optional[Dict[str, Any]] = None,
        time_spent: Optional[int] = None,
    ) -> ExamAttempt:
        attempt = load_attempt(self.db, attempt_id)
        require_owner(attempt, student_id)
        # Late submissions still count; the grace window only matters for autosave
        require_ongoing(attempt)

        if answers:
            self.progress_store.upsert_answers(attempt, answers)
        self._finalize(attempt, time_spent, is_auto=False)
        logger.info("Attempt %s submitted by student %s", attempt.id, student_id)
        return attempt

    def prior_submission(self, attempt_id: str, student_id: int) -> Optional[ExamResult]:
        """Result of an attempt this student already finished; lets a retried submit succeed."""
        attempt = load_attempt(self.db, attempt_id)
        require_owner(attempt, student_id)
        if attempt.status not in COMPLETED_STATUSES or attempt.result is None:
            return None
        logger.info("Repeated submit for attempt %s; returning result %s", attempt.id, attempt.result.id)
        return attempt.result

    def auto_submit(self, attempt: ExamAttempt) -> ExamAttempt:
        require_ongoing(attempt)
        self._finalize(attempt, None, is_auto=True)
        logger.info("Attempt %s auto-submitted", attempt.id)
        return attempt

    def _finalize(self, attempt: ExamAttempt, time_spent: Optional[int], is_auto: bool) -> None:
        now = self.clock()
        self._transition(attempt, AttemptStatus.SUBMITTED.value)
        attempt.submitted_at = now
        attempt.end_time = now
        attempt.is_auto_submitted = is_auto
        if time_spent is not None:
            attempt.total_time_spent = int(time_spent)
        else:
            attempt.total_time_spent = max(0, int((now - as_utc(attempt.start_time)).total_seconds()))
        self._commit("submit exam")

    def abandon(self, attempt_id: str, actor: User, reason: Optional[str] = None) -> ExamAttempt:
        if not is_staff(actor):
            raise ForbiddenError("Only proctors and admins can abandon an attempt")
        attempt = load_attempt(self.db, attempt_id)
        self._transition(attempt, AttemptStatus.ABANDONED.value)
        attempt.abandon_reason = (reason or f"abandoned by {actor.role}")[:255]
        attempt.end_time = self.clock()
        self._commit("abandon attempt")
        logger.info("Attempt %s abandoned by %s %s: %s", attempt.id, actor.role, actor.id, attempt.abandon_reason)
        return attempt

    def mark_evaluated(self, attempt: ExamAttempt) -> None:
        """submitted -> evaluated; the caller commits together with the result row."""
        self._transition(attempt, AttemptStatus.EVALUATED.value)

    def enforce_violation_limit(self, attempt: ExamAttempt, recorder: Optional[AntiCheatRecorder] = None) -> bool:
        """Auto-submit once serious anti-cheat events reach the threshold."""
        if self.violation_threshold <= 0 or attempt.status != AttemptStatus.ONGOING.value:
            return False
        recorder = recorder or AntiCheatRecorder(self.db, clock=self.clock)
        serious = recorder.count_serious(attempt.id)
        if serious < self.violation_threshold:
            return False
        logger.warning("Attempt %s reached %d serious violations; auto-submitting", attempt.id, serious)
        self.auto_submit(attempt)
        return True

    # ─── Review ────────────────────────────────────────────────────────────────

    def review(self, attempt_id: str, actor: User) -> dict:
        attempt = load_attempt(self.db, attempt_id)
        require_owner_or_staff(attempt, actor)

        if attempt.status not in COMPLETED_STATUSES:
            raise InvalidStateError("Answers can be reviewed only after submission", current_status=attempt.status)
        if not is_staff(actor) and not attempt.exam.allow_answer_review:
            raise ForbiddenError("Answer review is disabled for this exam")

        evaluated = attempt.status == AttemptStatus.EVALUATED.value
        answers = {
            row.question_id: row
            for row in self.db.query(Answer).filter(Answer.attempt_id == attempt.id).all()
        }
        questions = self.presented_questions(attempt, include_correct=evaluated)
        for question in questions:
            row = answers.get(question["id"])
            question["your_answer"] = {
                "answer_text": row.answer_text if row else None,
                "selected_option": row.selected_option if row else None,
                "is_marked_for_review": row.is_marked_for_review if row else False,
            }
            if evaluated:
                question["is_correct"] = row.is_correct if row else False
                question["marks_obtained"] = row.marks_obtained if row else 0

        return {
            "attempt_id": attempt.id,
            "exam_id": attempt.exam_id,
            "status": attempt.status,
            "submitted_at": attempt.submitted_at.isoformat() if attempt.submitted_at else None,
            "questions": questions,
        }
