"""
Redis client for exam answer auto-save.
Stores a student's in-progress answers in a Redis hash keyed by attempt.
The hash is flushed into the attempt row on submit.
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


def set_redis(client: Optional[redis.Redis]):
    """Swap the process-wide client (tests install a fakeredis instance here)."""
    global _redis_client
    _redis_client = client


# ─── Key helpers ───────────────────────────────────────────────────────────────

def _attempt_key(attempt_id: str) -> str:
    return f"exam_attempt:{attempt_id}:answers"


# ─── Auto-save operations ─────────────────────────────────────────────────────

def save_answer(attempt_id: str, question_id: int, option_id: str, ttl_seconds: int):
    """Save a single answer. TTL ensures cleanup even if submit never happens."""
    r = get_redis()
    key = _attempt_key(attempt_id)
    r.hset(key, str(question_id), option_id)
    # Reset TTL on every save
    r.expire(key, max(ttl_seconds, 1))


def get_all_answers(attempt_id: str) -> dict:
    """Get all saved answers for an attempt. Returns {question_id_str: option_id}."""
    r = get_redis()
    return r.hgetall(_attempt_key(attempt_id))


def clear_answers(attempt_id: str):
    """Delete all saved answers for an attempt (after submit)."""
    r = get_redis()
    r.delete(_attempt_key(attempt_id))
