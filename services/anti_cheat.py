"""
Anti-cheat event recorder.

Each call is a single append to anti_cheat_events; events are never updated
or deleted. The recorder does not aggregate or escalate on its own; the
attempt lifecycle reads count_serious() when it decides to act.
"""

import enum
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database.models import AntiCheatEvent, AttemptStatus, ExamAttempt, User, UserRole
from services.errors import ForbiddenError, InvalidStateError, NotFoundError, TransientStoreFailure

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    """Signals emitted by the exam client instrumentation."""
    WINDOW_BLUR = "window-blur"
    TAB_SWITCH = "tab-switch"
    FULLSCREEN_EXIT = "fullscreen-exit"
    SCREENSHOT_ATTEMPT = "screenshot-attempt"
    COPY_PASTE = "copy-paste"
    RIGHT_CLICK = "right-click"
    MULTIPLE_FACES = "multiple-faces"
    NO_FACE = "no-face"
    AUDIO_ANOMALY = "audio-anomaly"
    IP_CHANGE = "ip-change"


class Severity(str, enum.Enum):
    """
    Severities seen in practice. The client emits warning/critical, the server
    defaults to medium and escalation counts high/critical. Stored values are
    not restricted to this set.
    """
    WARNING = "warning"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


DEFAULT_SEVERITY = Severity.MEDIUM.value
SERIOUS_SEVERITIES = (Severity.HIGH.value, Severity.CRITICAL.value)

_KNOWN_SEVERITIES = {s.value for s in Severity}
_REVIEWER_ROLES = (UserRole.PROCTOR.value, UserRole.ADMIN.value)


def _now():
    return datetime.now(timezone.utc)


def is_known_severity(value: str) -> bool:
    return value in _KNOWN_SEVERITIES


class AntiCheatRecorder:
    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.clock = clock or _now

    def record(
        self,
        attempt_id: str,
        actor: User,
        event_type: str,
        severity: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        attempt = self.db.get(ExamAttempt, attempt_id)
        if attempt is None:
            raise NotFoundError("Attempt not found", extra={"attempt_id": attempt_id})

        if actor.role == UserRole.STUDENT.value:
            if attempt.student_id != actor.id:
                logger.info("Rejected anti-cheat event from user %s for attempt %s", actor.id, attempt_id)
                raise ForbiddenError("Access denied")
            if attempt.status != AttemptStatus.ONGOING.value:
                raise InvalidStateError(
                    f"Exam attempt is {attempt.status}; events can only be logged while it is ongoing",
                    current_status=attempt.status,
                )
        elif actor.role not in _REVIEWER_ROLES:
            raise ForbiddenError("Access denied")

        severity = severity or DEFAULT_SEVERITY
        if not is_known_severity(severity):
            logger.warning("Anti-cheat event for attempt %s has unrecognised severity %r", attempt_id, severity)

        event_type = event_type.value if isinstance(event_type, EventType) else event_type
        metadata = dict(metadata or {})
        event = AntiCheatEvent(
            attempt_id=attempt_id,
            recorded_by=actor.id,
            event_type=event_type,
            severity=severity,
            description=description,
            screenshot_url=metadata.get("screenshot_url"),
            event_metadata=metadata or None,
            created_at=self.clock(),
        )
        try:
            self.db.add(event)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to record anti-cheat event for attempt %s", attempt_id)
            raise TransientStoreFailure("record event")

        logger.info("Anti-cheat event %s (%s/%s) recorded for attempt %s", event.id, event_type, severity, attempt_id)
        return event.id

    def list_events(self, attempt_id: str, actor: User) -> List[AntiCheatEvent]:
        """All events of an attempt, newest first. Proctors and admins only."""
        if actor.role not in _REVIEWER_ROLES:
            raise ForbiddenError("Access denied")

        if self.db.get(ExamAttempt, attempt_id) is None:
            raise NotFoundError("Attempt not found", extra={"attempt_id": attempt_id})

        return (
            self.db.query(AntiCheatEvent)
            .filter(AntiCheatEvent.attempt_id == attempt_id)
            .order_by(AntiCheatEvent.created_at.desc(), AntiCheatEvent.id.desc())
            .all()
        )

    def count_serious(self, attempt_id: str) -> int:
        return (
            self.db.query(AntiCheatEvent)
            .filter(
                AntiCheatEvent.attempt_id == attempt_id,
                AntiCheatEvent.severity.in_(SERIOUS_SEVERITIES),
            )
            .count()
        )


def event_dict(event: AntiCheatEvent) -> dict:
    return {
        "id": event.id,
        "attempt_id": event.attempt_id,
        "event_type": event.event_type,
        "severity": event.severity,
        "description": event.description,
        "screenshot_url": event.screenshot_url,
        "metadata": event.event_metadata,
        "recorded_by": event.recorded_by,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }
