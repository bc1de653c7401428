"""Precondition checks shared by every operation that touches an attempt."""

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from database.models import AttemptStatus, ExamAttempt, User, UserRole
from services.errors import ForbiddenError, InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)

STAFF_ROLES = (UserRole.PROCTOR.value, UserRole.ADMIN.value)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def is_staff(user: User) -> bool:
    return user.role in STAFF_ROLES


def load_attempt(db: Session, attempt_id: str) -> ExamAttempt:
    attempt = db.get(ExamAttempt, attempt_id) if attempt_id else None
    if attempt is None:
        raise NotFoundError("Exam attempt not found", extra={"attempt_id": attempt_id})
    return attempt


def require_owner(attempt: ExamAttempt, student_id: int) -> None:
    if attempt.student_id != student_id:
        logger.info("User %s denied access to attempt %s", student_id, attempt.id)
        raise ForbiddenError("This exam attempt belongs to another student")


def require_owner_or_staff(attempt: ExamAttempt, actor: User) -> None:
    if not is_staff(actor):
        require_owner(attempt, actor.id)


def require_ongoing(attempt: ExamAttempt) -> None:
    if attempt.status != AttemptStatus.ONGOING.value:
        logger.info("Attempt %s is %s; mutation rejected", attempt.id, attempt.status)
        raise InvalidStateError(
            f"Exam already {attempt.status}. No further changes are allowed.",
            current_status=attempt.status,
        )
