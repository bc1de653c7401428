"""
Anti-cheat router.
Students (and staff) log suspicious client signals against an attempt;
proctors and admins read the log for review.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from database.models import User, UserRole
from routers.auth import get_current_user, require_staff
from routers.deps import get_lifecycle, get_recorder, rate_limited
from services.anti_cheat import AntiCheatRecorder, EventType, event_dict
from services.attempt_guards import load_attempt
from services.attempt_lifecycle import AttemptLifecycle
from services import scoring
from services.scoring import ScoringService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/exam-attempts", tags=["anti-cheat"])


# ─── Schemas ───────────────────────────────────────────────────────────────────

class EventMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    screenshot_url: Optional[str] = Field(None, max_length=500)

class AntiCheatEventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    attempt_id: str = Field(..., alias="attemptId")
    event_type: EventType = Field(..., alias="eventType")
    description: Optional[str] = None
    severity: Optional[str] = None
    metadata: Optional[EventMetadata] = None


# ─── Routes ────────────────────────────────────────────────────────────────────

@router.post("/anti-cheat")
def record_event(
    body: AntiCheatEventRequest,
    user: User = Depends(get_current_user),
    _limit=Depends(rate_limited("anti_cheat_log")),
    recorder: AntiCheatRecorder = Depends(get_recorder),
    lifecycle: AttemptLifecycle = Depends(get_lifecycle),
):
    """Append one event. May auto-submit the attempt once serious events pile up."""
    if user.role == UserRole.STUDENT.value:
        attempt = load_attempt(lifecycle.db, body.attempt_id)
        if attempt.student_id == user.id:
            lifecycle.expire_if_overdue(attempt)

    event_id = recorder.record(
        body.attempt_id,
        user,
        body.event_type,
        severity=body.severity,
        description=body.description,
        metadata=body.metadata.model_dump(exclude_none=True) if body.metadata else None,
    )

    auto_submitted = False
    try:
        attempt = load_attempt(lifecycle.db, body.attempt_id)
        auto_submitted = lifecycle.enforce_violation_limit(attempt, recorder)
        if auto_submitted and scoring.AUTO_EVALUATE:
            ScoringService(lifecycle).evaluate(attempt)
    except Exception:
        # The event is already stored
        lifecycle.db.rollback()
        logger.exception("Violation escalation failed for attempt %s", body.attempt_id)

    response = {"success": True, "eventId": event_id, "message": "Event recorded"}
    if auto_submitted:
        response["autoSubmitted"] = True
        response["warning"] = "Too many violations detected. Exam auto-submitted."
    return response


@router.get("/{attempt_id}/anti-cheat-events")
def list_events(
    attempt_id: str,
    staff: User = Depends(require_staff),
    recorder: AntiCheatRecorder = Depends(get_recorder),
):
    events = recorder.list_events(attempt_id, staff)
    return {"events": [event_dict(e) for e in events], "count": len(events)}
