"""
Redis client for shared rate-limit counters.
Used when RATE_LIMIT_BACKEND=redis so limits hold across worker processes.
"""

import os
from typing import Optional

import redis

# ─── Config ────────────────────────────────────────────────────────────────────

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(REDIS_URL, decode_responses=True)
    return _redis_client


# ─── Key helpers ───────────────────────────────────────────────────────────────

def rate_limit_redis_key(identifier: str) -> str:
    return f"rate_limit:{identifier}"
