"""Activity Signal — recency metrics derived from a member's report history.

Pure functions over a profile; nothing here writes to Redis.

Recency:
  hours_unresponsive = floor((now - last_report_at) / 3600s)
  days_unresponsive  = floor(hours_unresponsive / 24)

A member without any usable report is "never reported", which is an onboarding
state and not a form of inactivity.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from guardian_core.config.settings import STREAK_GRACE_HOURS, STREAK_MILESTONES
from guardian_core.engine.errors import InvalidInput
from guardian_core.models.profile import MemberEngagementProfile

SECONDS_PER_HOUR = 3600
SAME_DAY_HOURS = 24
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class ActivitySignal:
    member_id: str
    has_reported: bool
    hours_unresponsive: Optional[int]    # None when never reported
    days_unresponsive: Optional[int]
    streak: int
    total_reports: int


@dataclass(frozen=True)
class StreakUpdate:
    previous: int
    current: int
    max_streak: int
    streak_broken: bool
    milestone: Optional[int]             # set when `current` hits a milestone day


def require_aware(ts: datetime, field_name: str = "timestamp") -> datetime:
    """Reject anything that is not a timezone-aware datetime."""
    if not isinstance(ts, datetime):
        raise InvalidInput(f"{field_name} must be a datetime, got {type(ts).__name__}")
    if ts.tzinfo is None or ts.utcoffset() is None:
        raise InvalidInput(f"{field_name} must be timezone-aware")
    return ts


def is_valid_instant(ts: Optional[datetime]) -> bool:
    """Present and not before the Unix epoch; anything else is unusable history."""
    return ts is not None and ts >= EPOCH


def hours_since(last_report_at: Optional[datetime], now: datetime) -> Optional[int]:
    """Whole hours elapsed since the last report, or None if there is none.

    A last report in the future (clock skew) counts as zero hours.
    """
    if last_report_at is None:
        return None
    seconds = (now - last_report_at).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // SECONDS_PER_HOUR)


def read_signal(profile: MemberEngagementProfile, now: datetime) -> ActivitySignal:
    """Compute recency metrics for one member at `now`."""
    require_aware(now, "now")
    last = profile.last_report_at if is_valid_instant(profile.last_report_at) else None
    hours = hours_since(last, now)
    return ActivitySignal(
        member_id=profile.member_id,
        has_reported=hours is not None,
        hours_unresponsive=hours,
        days_unresponsive=None if hours is None else hours // 24,
        streak=profile.streak,
        total_reports=profile.total_reports,
    )


def next_streak(
    previous_streak: int,
    last_report_at: Optional[datetime],
    now: datetime,
    grace_hours: int = STREAK_GRACE_HOURS,
) -> tuple[int, bool]:
    """Return (new_streak, streak_broken) for a report submitted at `now`.

    < 24h since the last report          → same day, streak unchanged
    < 24h + grace                        → consecutive day, streak + 1
    otherwise                            → reset to 1
    """
    if last_report_at is None:
        return 1, False

    elapsed_hours = (now - last_report_at).total_seconds() / SECONDS_PER_HOUR
    if elapsed_hours < SAME_DAY_HOURS:
        return max(previous_streak, 1), False
    if elapsed_hours < SAME_DAY_HOURS + grace_hours:
        return previous_streak + 1, False
    return 1, previous_streak > 0


def record_report(
    profile: MemberEngagementProfile,
    now: datetime,
    grace_hours: int = STREAK_GRACE_HOURS,
) -> StreakUpdate:
    """Apply a report to the profile's recency fields in place."""
    require_aware(now, "report_at")
    previous = profile.streak
    current, broken = next_streak(previous, profile.last_report_at, now, grace_hours)

    profile.streak = current
    profile.max_streak = max(profile.max_streak, current)
    profile.total_reports += 1
    profile.last_report_at = now

    milestone = current if current != previous and current in STREAK_MILESTONES else None
    return StreakUpdate(
        previous=previous,
        current=current,
        max_streak=profile.max_streak,
        streak_broken=broken,
        milestone=milestone,
    )
