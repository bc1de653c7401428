"""
Attempt progress store: autosave, single-answer save and resume.

An autosave replaces the whole progress document (no merge), then upserts
one exam_answers row per answered question. Both happen in one transaction,
so a failed save leaves the previous state untouched. Replaying the same
payload adds no rows; only timestamps move.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database.models import Answer, AttemptProgress, ExamAttempt, Question, User
from services.attempt_guards import (
    load_attempt, require_ongoing, require_owner, require_owner_or_staff,
)
from services.errors import BadRequestError, InvalidStateError, NotFoundError, TransientStoreFailure

logger = logging.getLogger(__name__)


def _now():
    return datetime.now(timezone.utc)


@dataclass
class NormalizedAnswer:
    answer_text: Optional[str] = None
    selected_option: Optional[int] = None
    is_marked_for_review: bool = False
    time_spent: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.selected_option is None and not self.answer_text

    def same_value(self, row: Answer) -> bool:
        return row.answer_text == self.answer_text and row.selected_option == self.selected_option


@dataclass
class ProgressSnapshot:
    attempt_id: str
    status: str
    current_question_index: int = 0
    answers: Dict[str, Any] = field(default_factory=dict)
    flagged_questions: List[str] = field(default_factory=list)
    last_saved_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "attemptId": self.attempt_id,
            "status": self.status,
            "currentQuestion": self.current_question_index,
            "answers": self.answers,
            "flaggedQuestions": self.flagged_questions,
            "lastSavedAt": self.last_saved_at.isoformat() if self.last_saved_at else None,
        }


def _as_option_index(value) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise BadRequestError("Selected option must be an option index")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    raise BadRequestError("Selected option must be an option index", extra={"value": value})


def _as_seconds(value) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise BadRequestError("Time spent must be a number of seconds")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        value = int(value)
    if not isinstance(value, int) or value < 0:
        raise BadRequestError("Time spent must be a non-negative number of seconds", extra={"value": value})
    return value


def normalize_answer(value) -> NormalizedAnswer:
    """
    Accept the shapes the exam client sends: an option index, free text,
    a {answerText, selectedOption, ...} object, or null for a cleared answer.
    """
    if value is None:
        return NormalizedAnswer()
    if isinstance(value, dict):
        text = value.get("answerText", value.get("answer_text"))
        return NormalizedAnswer(
            answer_text=str(text) if text is not None else None,
            selected_option=_as_option_index(value.get("selectedOption", value.get("selected_option"))),
            is_marked_for_review=bool(value.get("isMarkedForReview", value.get("is_marked_for_review", False))),
            time_spent=_as_seconds(value.get("timeSpent", value.get("time_spent"))),
        )
    if isinstance(value, str):
        return NormalizedAnswer(answer_text=value)
    return NormalizedAnswer(selected_option=_as_option_index(value))


class AttemptProgressStore:
    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.clock = clock or _now

    # ─── Writes ────────────────────────────────────────────────────────────────

    def save(
        self,
        attempt_id: str,
        student_id: int,
        current_question_index: int,
        answers: Optional[Dict[str, Any]],
        flagged_questions: Optional[List[Any]],
        time_spent: Optional[int] = None,
    ) -> datetime:
        """Autosave the full in-memory state of the exam client."""
        attempt = load_attempt(self.db, attempt_id)
        require_owner(attempt, student_id)
        require_ongoing(attempt)

        answers = dict(answers or {})
        flagged = [str(q) for q in (flagged_questions or [])]
        parsed = self._parse_answers(attempt, answers)
        existing = self._existing_answers(attempt.id)
        self._check_answer_changes(attempt, parsed, existing)

        saved_at = self.clock()
        try:
            progress = self._progress_row(attempt)
            progress.current_question_index = current_question_index or 0
            progress.answers = answers
            progress.flagged_questions = flagged
            progress.last_saved_at = saved_at

            flagged_set = set(flagged)
            for question_id, normalized in parsed.items():
                if str(question_id) in flagged_set:
                    normalized.is_marked_for_review = True
                self._upsert(attempt, question_id, normalized, existing.get(question_id), saved_at)

            if time_spent is not None:
                attempt.total_time_spent = int(time_spent)

            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Autosave failed for attempt %s", attempt_id)
            raise TransientStoreFailure("save progress")

        logger.debug(
            "Autosaved attempt %s: %d answers, %d flagged, index %s",
            attempt_id, len(parsed), len(flagged), current_question_index,
        )
        return saved_at

    def save_answer(
        self,
        attempt_id: str,
        student_id: int,
        question_id: int,
        answer,
        is_flagged: bool = False,
        time_spent: Optional[int] = None,
    ) -> Answer:
        """Save one question's answer outside the periodic autosave."""
        attempt = load_attempt(self.db, attempt_id)
        require_owner(attempt, student_id)
        require_ongoing(attempt)

        if question_id not in self._exam_question_ids(attempt):
            raise NotFoundError("Invalid question", extra={"question_id": question_id})

        normalized = normalize_answer(answer)
        normalized.is_marked_for_review = normalized.is_marked_for_review or is_flagged
        if time_spent is not None:
            normalized.time_spent = time_spent

        existing = self._existing_answers(attempt.id)
        self._check_answer_changes(attempt, {question_id: normalized}, existing)

        now = self.clock()
        try:
            row = self._upsert(attempt, question_id, normalized, existing.get(question_id), now)
            if time_spent is not None:
                attempt.total_time_spent = int(time_spent)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Answer save failed for attempt %s question %s", attempt_id, question_id)
            raise TransientStoreFailure("save answer")

        self.db.refresh(row)
        return row

    def upsert_answers(self, attempt: ExamAttempt, answers: Dict[str, Any]) -> None:
        """
        Stage final answers on the session without committing.
        Used by submit, which commits them together with the status change.
        """
        parsed = self._parse_answers(attempt, answers or {})
        existing = self._existing_answers(attempt.id)
        self._check_answer_changes(attempt, parsed, existing)
        now = self.clock()
        for question_id, normalized in parsed.items():
            self._upsert(attempt, question_id, normalized, existing.get(question_id), now)

    # ─── Reads ─────────────────────────────────────────────────────────────────

    def load(self, attempt_id: str, actor: User) -> ProgressSnapshot:
        """Saved session for resuming. Stored answer rows win over the progress blob."""
        attempt = load_attempt(self.db, attempt_id)
        require_owner_or_staff(attempt, actor)

        rows = self.db.query(Answer).filter(Answer.attempt_id == attempt.id).all()
        progress = attempt.progress

        if rows:
            answers = {
                str(row.question_id): {
                    "answerText": row.answer_text,
                    "selectedOption": row.selected_option,
                    "isMarkedForReview": row.is_marked_for_review,
                }
                for row in rows
            }
        else:
            answers = dict(progress.answers or {}) if progress else {}

        return ProgressSnapshot(
            attempt_id=attempt.id,
            status=attempt.status,
            current_question_index=progress.current_question_index if progress else 0,
            answers=answers,
            flagged_questions=list(progress.flagged_questions or []) if progress else [],
            last_saved_at=progress.last_saved_at if progress else None,
        )

    # ─── Helpers ───────────────────────────────────────────────────────────────

    def _exam_question_ids(self, attempt: ExamAttempt) -> set:
        rows = self.db.query(Question.id).filter(Question.exam_id == attempt.exam_id).all()
        return {row[0] for row in rows}

    def _existing_answers(self, attempt_id: str) -> Dict[int, Answer]:
        rows = self.db.query(Answer).filter(Answer.attempt_id == attempt_id).all()
        return {row.question_id: row for row in rows}

    def _parse_answers(self, attempt: ExamAttempt, answers: Dict[str, Any]) -> Dict[int, NormalizedAnswer]:
        parsed: Dict[int, NormalizedAnswer] = {}
        for key, value in answers.items():
            try:
                question_id = int(key)
            except (TypeError, ValueError):
                raise BadRequestError("Answer keys must be question ids", extra={"question_id": key})
            parsed[question_id] = normalize_answer(value)

        unknown = sorted(set(parsed) - self._exam_question_ids(attempt))
        if unknown:
            raise NotFoundError("Questions are not part of this exam", extra={"question_ids": unknown})
        return parsed

    def _check_answer_changes(
        self, attempt: ExamAttempt, parsed: Dict[int, NormalizedAnswer], existing: Dict[int, Answer]
    ) -> None:
        if attempt.exam.allow_answer_change:
            return
        for question_id, normalized in parsed.items():
            row = existing.get(question_id)
            if row is None:
                continue
            stored_empty = row.selected_option is None and not row.answer_text
            if not stored_empty and not normalized.same_value(row):
                raise InvalidStateError(
                    "This exam does not allow changing an answer once given",
                    extra={"question_id": question_id},
                )

    def _progress_row(self, attempt: ExamAttempt) -> AttemptProgress:
        progress = attempt.progress
        if progress is None:
            progress = AttemptProgress(attempt_id=attempt.id)
            self.db.add(progress)
            attempt.progress = progress
        return progress

    def _upsert(
        self,
        attempt: ExamAttempt,
        question_id: int,
        normalized: NormalizedAnswer,
        row: Optional[Answer],
        now: datetime,
    ) -> Answer:
        if row is None:
            row = Answer(
                attempt_id=attempt.id,
                question_id=question_id,
                time_spent=0,
                created_at=now,
            )
            self.db.add(row)
        row.answer_text = normalized.answer_text
        row.selected_option = normalized.selected_option
        row.is_marked_for_review = normalized.is_marked_for_review
        if normalized.time_spent is not None:
            row.time_spent = int(normalized.time_spent)
        row.updated_at = now
        return row
