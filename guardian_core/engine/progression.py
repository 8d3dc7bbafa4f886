"""Progression Engine — guardian evolution and curse decay.

Evolution cadence over cumulative *active* days since unlock:

  Awaken    (days 0-3):   evolve every day
  Growth    (days 4-10):  evolve every 2 days
  Habit     (days 11-24): evolve every 3 days
  Stabilize (days 25-45): evolve every 5 days
  Beyond 45:              plateau, no scheduled evolution

Each qualifying report advances the stage by at most one, so a member who
missed several boundaries catches up one stage per report.

Curse decay is a pure function of hours since the last report and is never
stored. Time spent decayed is added to ``paused_seconds`` on recovery, which
freezes the evolution cadence while the member is away.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from guardian_core.config.settings import (
    CURSE_ANXIETY_HOURS,
    CURSE_CURSED_HOURS,
    CURSE_WEAKNESS_HOURS,
)
from guardian_core.engine.activity_signal import hours_since, is_valid_instant, require_aware
from guardian_core.engine.errors import InvalidInput
from guardian_core.models.profile import (
    CurseState,
    EvolutionStyle,
    MemberEngagementProfile,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400

# Active day at which each stage (1..15) is reached
STAGE_THRESHOLDS: tuple[int, ...] = (
    1, 2, 3,                # awaken
    5, 7, 9,                # growth
    12, 15, 18, 21, 24,     # habit
    30, 35, 40, 45,         # stabilize
)
MAX_STAGE = len(STAGE_THRESHOLDS)

# (last active day of the period, name, cadence in days)
PERIODS: tuple[tuple[int, str, int], ...] = (
    (3, "awaken", 1),
    (10, "growth", 2),
    (24, "habit", 3),
    (45, "stabilize", 5),
)
PLATEAU = "plateau"

@dataclass(frozen=True)
class CurseThresholds:
    anxiety_hours: int = CURSE_ANXIETY_HOURS
    weakness_hours: int = CURSE_WEAKNESS_HOURS
    cursed_hours: int = CURSE_CURSED_HOURS

    def __post_init__(self):
        if not (0 < self.anxiety_hours < self.weakness_hours < self.cursed_hours):
            raise InvalidInput(
                "Curse thresholds must be strictly increasing: "
                f"{self.anxiety_hours}/{self.weakness_hours}/{self.cursed_hours}"
            )


@dataclass(frozen=True)
class CurseTransition:
    previous: CurseState
    current: CurseState
    days_absent: int

    @property
    def is_recovery(self) -> bool:
        return self.previous != CurseState.NORMAL and self.current == CurseState.NORMAL


@dataclass
class ProgressionOutcome:
    previous_stage: int
    new_stage: int
    curse_transition: Optional[CurseTransition] = None
    paused_seconds_added: int = 0
    events: list[dict] = field(default_factory=list)

    @property
    def evolved(self) -> bool:
        return self.new_stage > self.previous_stage


@dataclass(frozen=True)
class GuardianStatus:
    stage: int
    curse_state: CurseState
    active_days: int
    period: str
    next_stage_day: Optional[int]
    days_to_next: int
    is_max_stage: bool
    progress_percent: int

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "curse_state": self.curse_state.value,
            "active_days": self.active_days,
            "period": self.period,
            "next_stage_day": self.next_stage_day,
            "days_to_next": self.days_to_next,
            "is_max_stage": self.is_max_stage,
            "progress_percent": self.progress_percent,
        }


# ── Pure schedule helpers ────────────────────────────────────────────────

def scheduled_stage(active_days: int) -> int:
    """Stage the cadence table allows after `active_days` active days."""
    return sum(1 for day in STAGE_THRESHOLDS if active_days >= day)


def period_for(active_days: int) -> tuple[str, int]:
    """Return (period name, cadence in days); cadence is 0 on the plateau."""
    for last_day, name, cadence in PERIODS:
        if active_days <= last_day:
            return name, cadence
    return PLATEAU, 0


def curse_state_for_hours(
    hours: Optional[int],
    thresholds: CurseThresholds = CurseThresholds(),
) -> CurseState:
    if hours is None:
        return CurseState.NORMAL
    if hours >= thresholds.cursed_hours:
        return CurseState.CURSED
    if hours >= thresholds.weakness_hours:
        return CurseState.WEAKNESS
    if hours >= thresholds.anxiety_hours:
        return CurseState.ANXIETY
    return CurseState.NORMAL


# ── Engine ───────────────────────────────────────────────────────────────

class ProgressionEngine:
    """Evolution/decay state machine for a member's guardian companion."""

    def __init__(self, thresholds: CurseThresholds | None = None):
        self.thresholds = thresholds or CurseThresholds()

    def curse_state(self, profile: MemberEngagementProfile, now: datetime) -> CurseState:
        """Derive the curse state at `now`. Invalid timestamps read as normal."""
        require_aware(now, "now")
        if not is_valid_instant(profile.last_report_at):
            return CurseState.NORMAL
        return curse_state_for_hours(hours_since(profile.last_report_at, now), self.thresholds)

    def active_seconds(
        self,
        profile: MemberEngagementProfile,
        now: datetime,
        include_ongoing_decay: bool = True,
    ) -> int:
        if not profile.is_unlocked or not is_valid_instant(profile.unlocked_at):
            return 0
        elapsed = int((now - profile.unlocked_at).total_seconds()) - profile.paused_seconds
        if include_ongoing_decay:
            # Decay that has not been folded into paused_seconds yet
            elapsed -= self._decayed_seconds(profile, now)
        return max(0, elapsed)

    def active_days(self, profile: MemberEngagementProfile, now: datetime) -> int:
        return self.active_seconds(profile, now) // SECONDS_PER_DAY

    def unlock(
        self,
        profile: MemberEngagementProfile,
        style: EvolutionStyle | str,
        now: datetime,
    ) -> bool:
        """Unlock the companion with its evolution style.

        Returns False when the same style was already unlocked (no-op). A
        different style on an unlocked companion raises ``InvalidInput``.
        """
        require_aware(now, "now")
        already = profile.is_unlocked
        profile.choose_style(style)
        if already:
            return False
        profile.unlocked_at = now
        profile.paused_seconds = 0
        profile.guardian_stage = 0
        logger.info(f"Guardian unlocked for {profile.member_id} ({profile.evolution_style.value})")
        return True

    def apply_report(self, profile: MemberEngagementProfile, now: datetime) -> ProgressionOutcome:
        """Recompute progression for a report submitted at `now`.

        Must run before the report's timestamp is written to the profile:
        the decay reference is the *previous* last report.
        """
        require_aware(now, "report_at")
        previous_stage = profile.guardian_stage
        outcome = ProgressionOutcome(previous_stage=previous_stage, new_stage=previous_stage)

        if not is_valid_instant(profile.last_report_at) and profile.last_report_at is not None:
            # Unusable history: start over as never-evolved
            logger.warning(f"Ignoring invalid last_report_at for {profile.member_id}")
            profile.last_report_at = None
            profile.guardian_stage = 0
            outcome.previous_stage = outcome.new_stage = 0

        prior_state = self.curse_state(profile, now)
        if prior_state != CurseState.NORMAL:
            hours_absent = hours_since(profile.last_report_at, now) or 0
            outcome.curse_transition = CurseTransition(
                previous=prior_state,
                current=CurseState.NORMAL,
                days_absent=hours_absent // 24,
            )
            outcome.events.append({
                "kind": "recovery",
                "member_id": profile.member_id,
                "previous_state": prior_state.value,
                "days_absent": hours_absent // 24,
            })

        if not profile.is_unlocked or not is_valid_instant(profile.unlocked_at):
            return outcome

        added = self._decayed_seconds(profile, now)
        if added:
            profile.paused_seconds += added
            outcome.paused_seconds_added = added

        # The report resets the curse, so the check runs in the normal state
        active = self.active_seconds(profile, now, include_ongoing_decay=False)
        target = scheduled_stage(active // SECONDS_PER_DAY)
        if target > profile.guardian_stage:
            profile.guardian_stage += 1
            profile.last_evolved_at = now
            outcome.new_stage = profile.guardian_stage
            outcome.events.append({
                "kind": "evolution",
                "member_id": profile.member_id,
                "stage": profile.guardian_stage,
                "style": profile.evolution_style.value,
                "pending_stages": target - profile.guardian_stage,
            })
            logger.info(
                f"Guardian evolved for {profile.member_id}: "
                f"{previous_stage} → {profile.guardian_stage} (schedule allows {target})"
            )
        return outcome

    def status(self, profile: MemberEngagementProfile, now: datetime) -> GuardianStatus:
        """Read-only projection for display: stage, decay, next evolution."""
        curse = self.curse_state(profile, now)
        days = self.active_days(profile, now)
        period, _cadence = period_for(days)
        unlocked = profile.is_unlocked and is_valid_instant(profile.unlocked_at)
        # Unusable report history reads as never evolved, as in apply_report
        history_ok = profile.last_report_at is None or is_valid_instant(profile.last_report_at)
        stage = profile.guardian_stage if unlocked and history_ok else 0
        is_max = stage >= MAX_STAGE

        if is_max:
            return GuardianStatus(stage, curse, days, period, None, 0, True, 100)

        next_day = STAGE_THRESHOLDS[stage]
        current_day = STAGE_THRESHOLDS[stage - 1] if stage > 0 else 0
        span = next_day - current_day
        progress = min(100, round(max(0, days - current_day) / span * 100))
        return GuardianStatus(
            stage=stage,
            curse_state=curse,
            active_days=days,
            period=period,
            next_stage_day=next_day,
            days_to_next=max(0, next_day - days),
            is_max_stage=False,
            progress_percent=progress,
        )

    def _decayed_seconds(self, profile: MemberEngagementProfile, now: datetime) -> int:
        """Seconds since the last activity beyond the anxiety threshold.

        Never-reported members do not decay. Silence from before the unlock
        is not counted.
        """
        if not is_valid_instant(profile.last_report_at):
            return 0
        reference = profile.last_report_at
        if is_valid_instant(profile.unlocked_at) and profile.unlocked_at > reference:
            reference = profile.unlocked_at
        gap = int((now - reference).total_seconds())
        return max(0, gap - self.thresholds.anxiety_hours * 3600)
