"""
Shared FastAPI dependencies: clock, rate limiter and per-request services.
Tests replace get_clock and get_rate_limiter through app.dependency_overrides.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, Response
from sqlalchemy.orm import Session

from database.database import get_db
from database.models import User
from routers.auth import get_current_user
from services.anti_cheat import AntiCheatRecorder
from services.attempt_lifecycle import AttemptLifecycle
from services.errors import RateLimitExceededError
from services.progress_store import AttemptProgressStore
from services.rate_limiter import RateLimiter, RateLimitResult, build_rate_limiter

logger = logging.getLogger(__name__)

_rate_limiter: Optional[RateLimiter] = None


def _now():
    return datetime.now(timezone.utc)


def get_clock():
    return _now


def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter, created on first use."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = build_rate_limiter()
    return _rate_limiter


def get_lifecycle(db: Session = Depends(get_db), clock=Depends(get_clock)) -> AttemptLifecycle:
    return AttemptLifecycle(db, clock=clock)


def get_progress_store(db: Session = Depends(get_db), clock=Depends(get_clock)) -> AttemptProgressStore:
    return AttemptProgressStore(db, clock=clock)


def get_recorder(db: Session = Depends(get_db), clock=Depends(get_clock)) -> AntiCheatRecorder:
    return AntiCheatRecorder(db, clock=clock)


def rate_limited(action: str):
    """Dependency factory gating a route on the named preset, keyed by the caller."""

    def dependency(
        response: Response,
        user: User = Depends(get_current_user),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> Optional[RateLimitResult]:
        try:
            result = limiter.check_action(action, user.id)
        except Exception:
            # Limiter failures fail open
            logger.exception("Rate limit check for %s failed; allowing request", action)
            return None

        if not result.allowed:
            logger.info("Rate limit hit: %s by user %s", action, user.id)
            raise RateLimitExceededError(action, result.reset_time, limiter.clock())

        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(result.reset_time)
        return result

    return dependency
