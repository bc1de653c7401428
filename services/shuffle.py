"""
Deterministic per-student option shuffling.

The same (student, question, attempt) always yields the same option order,
so a resumed or reviewed attempt shows exactly what the student saw, while
students sitting side by side see different positions.

The default seed reduction is a sum of character codes. It is weak: seeds
that are anagrams of each other (or happen to share a code sum) produce the
same order. blake2b_seed removes that collision class but changes every
order, so it is opt-in via SHUFFLE_SEED_HASH=blake2b.
"""

import hashlib
import math
import os
from typing import Callable, Iterator, List, Optional, Sequence, TypeVar

T = TypeVar("T")

# ─── Config ────────────────────────────────────────────────────────────────────

SHUFFLE_ENABLED = os.getenv("SHUFFLE_ENABLED", "true").lower() in ("1", "true", "yes")
SHUFFLE_SEED_HASH = os.getenv("SHUFFLE_SEED_HASH", "charsum")

LCG_MULTIPLIER = 1103515245
LCG_INCREMENT = 12345
LCG_MASK = 0x7FFFFFFF


# ─── Seed reduction ────────────────────────────────────────────────────────────

def char_code_seed(seed: str) -> int:
    return sum(ord(ch) for ch in seed)


def blake2b_seed(seed: str) -> int:
    digest = hashlib.blake2b(seed.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") & LCG_MASK


SEED_REDUCERS = {
    "charsum": char_code_seed,
    "blake2b": blake2b_seed,
}


def default_reducer() -> Callable[[str], int]:
    try:
        return SEED_REDUCERS[SHUFFLE_SEED_HASH]
    except KeyError:
        raise ValueError(f"Unknown SHUFFLE_SEED_HASH: {SHUFFLE_SEED_HASH!r}")


# ─── PRNG ──────────────────────────────────────────────────────────────────────

def seeded_random(seed: int) -> Iterator[float]:
    """
    Linear congruential stream in [0, 1].

    The product is taken in double precision before masking, which keeps the
    stream identical to orders already issued to students by earlier releases.
    """
    state = seed
    while True:
        state = int(float(state) * LCG_MULTIPLIER + LCG_INCREMENT) & LCG_MASK
        yield state / LCG_MASK


def shuffle_with_seed(items: Sequence[T], seed: str, reducer: Optional[Callable[[str], int]] = None) -> List[T]:
    """Fisher-Yates over a copy of items, driven by the seeded stream."""
    shuffled = list(items)
    rng = seeded_random((reducer or char_code_seed)(seed))
    for i in range(len(shuffled) - 1, 0, -1):
        j = min(math.floor(next(rng) * (i + 1)), i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def build_seed(subject_id, item_id, attempt_id=None) -> str:
    # Without an attempt id every attempt of a student shares one order (legacy rows)
    if attempt_id:
        return f"{subject_id}-{item_id}-{attempt_id}"
    return f"{subject_id}-{item_id}"


def shuffle_question_options(
    options: Sequence[T],
    subject_id,
    question_id,
    should_shuffle: bool,
    attempt_id=None,
    reducer: Optional[Callable[[str], int]] = None,
) -> List[T]:
    if not should_shuffle or len(options) <= 1:
        return list(options)
    return shuffle_with_seed(options, build_seed(subject_id, question_id, attempt_id), reducer or default_reducer())
