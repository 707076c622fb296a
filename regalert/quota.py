from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import threading


DEFAULT_DAILY_LIMIT = 6

logger = logging.getLogger(__name__)


@dataclass
class QuotaState:
    date_key: str
    calls_used_today: int = 0
    daily_limit: int = DEFAULT_DAILY_LIMIT
    batches_claimed: set[str] = field(default_factory=set)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


def today_key(now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current.astimezone(timezone.utc).date().isoformat()


def new_quota(daily_limit: int = DEFAULT_DAILY_LIMIT, now: datetime | None = None) -> QuotaState:
    if daily_limit < 0:
        raise ValueError("daily_limit must be >= 0")
    return QuotaState(date_key=today_key(now), daily_limit=daily_limit)


def try_consume(quota: QuotaState, now: datetime | None = None, reserve: int = 0) -> bool:
    """
    Atomically take one unit of today's enrichment budget.

    The day rollover is applied before the limit is evaluated. `reserve` holds
    back that many units for higher-priority callers. A denied call leaves the
    counters untouched.
    """
    key = today_key(now)
    with quota._lock:
        _roll_over(quota, key)
        if quota.calls_used_today >= quota.daily_limit - max(reserve, 0):
            return False
        quota.calls_used_today += 1
        return True


def remaining(quota: QuotaState, now: datetime | None = None) -> int:
    key = today_key(now)
    with quota._lock:
        _roll_over(quota, key)
        return max(0, quota.daily_limit - quota.calls_used_today)


def try_claim_batch(quota: QuotaState, name: str, now: datetime | None = None) -> bool:
    """Grant a named batch summarization at most once per day."""
    key = today_key(now)
    with quota._lock:
        _roll_over(quota, key)
        if name in quota.batches_claimed:
            return False
        quota.batches_claimed.add(name)
        return True


def snapshot(quota: QuotaState) -> dict[str, object]:
    with quota._lock:
        return {
            "date": quota.date_key,
            "calls_used_today": quota.calls_used_today,
            "daily_limit": quota.daily_limit,
            "batches_claimed": sorted(quota.batches_claimed),
        }


def _roll_over(quota: QuotaState, key: str) -> None:
    if quota.date_key == key:
        return
    logger.info("Enrichment quota reset for %s (used %s on %s)", key, quota.calls_used_today, quota.date_key)
    quota.date_key = key
    quota.calls_used_today = 0
    quota.batches_claimed.clear()
