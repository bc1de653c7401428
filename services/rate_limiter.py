"""
Fixed-window rate limiting for sensitive exam operations.

Counters live in an explicit store object handed to the limiter:
MemoryRateLimitStore is process-local (best effort, resets on restart),
RedisRateLimitStore shares counters between worker processes.
Time comes from an injectable clock returning epoch milliseconds.
"""

import asyncio
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from database.redis_client import get_redis, rate_limit_redis_key

logger = logging.getLogger(__name__)

# ─── Config ────────────────────────────────────────────────────────────────────

RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "memory")
RATE_LIMIT_SWEEP_SECONDS = int(os.getenv("RATE_LIMIT_SWEEP_SECONDS", "300"))


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int  # Time window in milliseconds
    max: int        # Max requests per window


@dataclass
class RateLimitEntry:
    count: int
    reset_time: int  # epoch ms


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int


# Preset configurations for different exam operations
RATE_LIMITS: Dict[str, RateLimitConfig] = {
    "exam_start": RateLimitConfig(window_ms=15 * 60 * 1000, max=5),
    "exam_submit": RateLimitConfig(window_ms=5 * 60 * 1000, max=3),    # includes retries
    "autosave": RateLimitConfig(window_ms=1 * 60 * 1000, max=10),      # one every 6s
    "anti_cheat_log": RateLimitConfig(window_ms=1 * 60 * 1000, max=30),
}


def rate_limit_key(action: str, subject_id) -> str:
    return f"{action}:{subject_id}"


def _epoch_ms() -> int:
    return int(time.time() * 1000)


# ─── Stores ────────────────────────────────────────────────────────────────────
#
# A store's hit() applies one fixed-window step atomically and returns
# (allowed, entry after the step). A rejected hit leaves the count unchanged.

class MemoryRateLimitStore:
    """In-process counter map. Accuracy is per process only."""

    def __init__(self):
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[RateLimitEntry]:
        with self._lock:
            return self._entries.get(key)

    def hit(self, key: str, now_ms: int, config: RateLimitConfig) -> Tuple[bool, RateLimitEntry]:
        with self._lock:
            entry = self._entries.get(key)
            # Start a fresh window on first use or after expiry
            if entry is None or entry.reset_time < now_ms:
                entry = RateLimitEntry(count=0, reset_time=now_ms + config.window_ms)
                self._entries[key] = entry
            if entry.count >= config.max:
                return False, RateLimitEntry(entry.count, entry.reset_time)
            entry.count += 1
            return True, RateLimitEntry(entry.count, entry.reset_time)

    def sweep(self, now_ms: int) -> int:
        """Drop entries whose window has elapsed. Returns how many were removed."""
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.reset_time < now_ms]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


# Same window step as MemoryRateLimitStore.hit, run as one Redis script.
_HIT_SCRIPT = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max = tonumber(ARGV[3])
local count = tonumber(redis.call('HGET', KEYS[1], 'count'))
local reset = tonumber(redis.call('HGET', KEYS[1], 'reset_time'))
if count == nil or reset == nil or reset < now then
  count = 0
  reset = now + window
  redis.call('HSET', KEYS[1], 'count', 0, 'reset_time', reset)
  redis.call('PEXPIREAT', KEYS[1], reset)
end
if count >= max then
  return {0, count, reset}
end
count = redis.call('HINCRBY', KEYS[1], 'count', 1)
return {1, count, reset}
"""


class RedisRateLimitStore:
    """Counters in Redis hashes that expire at the end of their window."""

    def __init__(self, client=None):
        if client is None:
            client = get_redis()
        self._redis = client
        self._hit = client.register_script(_HIT_SCRIPT)

    def get(self, key: str) -> Optional[RateLimitEntry]:
        raw = self._redis.hgetall(rate_limit_redis_key(key))
        if not raw:
            return None
        return RateLimitEntry(count=int(raw["count"]), reset_time=int(raw["reset_time"]))

    def hit(self, key: str, now_ms: int, config: RateLimitConfig) -> Tuple[bool, RateLimitEntry]:
        allowed, count, reset_time = self._hit(
            keys=[rate_limit_redis_key(key)],
            args=[now_ms, config.window_ms, config.max],
        )
        return bool(int(allowed)), RateLimitEntry(count=int(count), reset_time=int(reset_time))

    def sweep(self, now_ms: int) -> int:
        # Redis expires keys on its own
        return 0


# ─── Limiter ───────────────────────────────────────────────────────────────────

class RateLimiter:
    def __init__(self, store=None, clock: Optional[Callable[[], int]] = None):
        self.store = store if store is not None else MemoryRateLimitStore()
        self.clock = clock or _epoch_ms

    def check(self, identifier: str, config: RateLimitConfig) -> RateLimitResult:
        allowed, entry = self.store.hit(identifier, self.clock(), config)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, config.max - entry.count) if allowed else 0,
            reset_time=entry.reset_time,
        )

    def check_action(self, action: str, subject_id) -> RateLimitResult:
        return self.check(rate_limit_key(action, subject_id), RATE_LIMITS[action])

    def sweep(self) -> int:
        removed = self.store.sweep(self.clock())
        if removed:
            logger.debug("Rate limiter swept %d expired entries", removed)
        return removed


def build_rate_limiter(backend: str = RATE_LIMIT_BACKEND) -> RateLimiter:
    if backend == "redis":
        logger.info("Rate limiter using shared Redis store")
        return RateLimiter(store=RedisRateLimitStore())
    if backend != "memory":
        raise ValueError(f"Unknown RATE_LIMIT_BACKEND: {backend!r}")
    return RateLimiter(store=MemoryRateLimitStore())


async def run_sweeper(limiter: RateLimiter, interval_seconds: float = RATE_LIMIT_SWEEP_SECONDS):
    """Periodically purge expired windows until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            limiter.sweep()
        except Exception:
            logger.exception("Rate limit sweep failed")
