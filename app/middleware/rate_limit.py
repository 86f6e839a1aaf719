"""
Job rate limiter: sliding window per (API key, job).

Attribution and reconciliation runs scan whole windows of data; a client
retrying in a tight loop would pile up full scans. Limits are per key and
per job, so a burst of backfills does not block the attribution run.
"""

import time
from fastapi import HTTPException
from app.config import get_settings

import structlog

logger = structlog.get_logger()

_memory_store: dict[str, list[float]] = {}


def _sliding_window_check(key: str, limit: int, window_seconds: int = 60) -> tuple[bool, int]:
    now = time.time()
    cutoff = now - window_seconds

    hits = [t for t in _memory_store.get(key, ()) if t > cutoff]
    _memory_store[key] = hits

    if len(hits) >= limit:
        return False, 0

    hits.append(now)
    return True, limit - len(hits)


def check_rate_limit(key: str, limit: int, window: int = 60) -> int:
    allowed, remaining = _sliding_window_check(key, limit, window)
    if not allowed:
        logger.warning("job_rate_limited", key=key, limit=limit)
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Slow down.",
            headers={
                "Retry-After": str(window),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
            },
        )
    return remaining


def rate_limit_job(key_id: str, job: str, limit: int | None = None) -> int:
    return check_rate_limit(f"job:{key_id}:{job}", limit or get_settings().job_rate_limit_per_minute)


def reset_rate_limits():
    _memory_store.clear()
