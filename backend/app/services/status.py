from __future__ import annotations

from datetime import datetime, timezone
from typing import NamedTuple, Optional

ACTIVE = "active"
UNLISTED = "unlisted"
REMOVED = "removed"
VENDOR_STATUSES = (ACTIVE, UNLISTED, REMOVED)


class Transition(NamedTuple):
    status: str
    is_published: bool


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def days_unseen(last_seen: Optional[datetime], now: datetime) -> float:
    seen = ensure_utc(last_seen)
    if seen is None:
        return 0.0
    return max(0.0, (ensure_utc(now) - seen).total_seconds() / 86400)


def missing_transition(
    last_seen: Optional[datetime],
    now: datetime,
    *,
    grace_period_days: int,
    auto_remove_after_days: int,
) -> Transition:
    """Target state for a vehicle absent from the current crawl.

    Missing vehicles are unlisted straight away and stay published until the
    grace period has elapsed; from `auto_remove_after_days` on they are removed.
    """
    unseen = days_unseen(last_seen, now)
    if unseen >= auto_remove_after_days:
        return Transition(REMOVED, False)
    return Transition(UNLISTED, unseen < grace_period_days)
