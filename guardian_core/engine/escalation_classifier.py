"""Escalation classification — pure functions over member profiles.

Used by the scheduled escalation job, the CLI script and the FastAPI cron
endpoint. Nothing here writes to Redis or remembers earlier runs: every call
recomputes tiers from the profiles it is given.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from guardian_core.config.settings import ESCALATION_SUMMARY_MIN_MEMBERS, ESCALATION_TOP_N
from guardian_core.engine.activity_signal import read_signal, require_aware
from guardian_core.engine.profile_store import RedisProfileStore
from guardian_core.models.escalation import EscalationRecord, Tier
from guardian_core.models.profile import MemberEngagementProfile

logger = logging.getLogger(__name__)

# Minimum hours unresponsive per tier, most severe first
TIER_THRESHOLDS: tuple[tuple[Tier, int], ...] = (
    (Tier.RED, 72),
    (Tier.ORANGE, 48),
    (Tier.YELLOW, 24),
)


def classify_tier(hours_unresponsive: int | None) -> Tier:
    """Tier for a number of silent hours; boundaries are inclusive."""
    if hours_unresponsive is None:
        return Tier.NONE
    for tier, minimum in TIER_THRESHOLDS:
        if hours_unresponsive >= minimum:
            return tier
    return Tier.NONE


@dataclass
class ScanResult:
    scanned_at: datetime
    scanned: int = 0
    skipped_never_reported: int = 0
    records: list[EscalationRecord] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)
    top: list[EscalationRecord] = field(default_factory=list)
    red_cohort: list[EscalationRecord] = field(default_factory=list)
    summary_due: bool = False

    @property
    def total(self) -> int:
        return len(self.records)

    @property
    def red_alert_due(self) -> bool:
        return bool(self.red_cohort)

    def to_dict(self) -> dict:
        return {
            "scanned_at": self.scanned_at.isoformat(),
            "scanned": self.scanned,
            "skipped_never_reported": self.skipped_never_reported,
            "total": self.total,
            "counts": dict(self.counts),
            "top5": [rec.to_dict() for rec in self.top],
            "red_cohort": [rec.to_dict() for rec in self.red_cohort],
            "summary_due": self.summary_due,
            "red_alert_due": self.red_alert_due,
            "members": [rec.to_dict() for rec in self.records],
        }


def classify(
    profiles: Iterable[MemberEngagementProfile],
    now: datetime,
    top_n: int = ESCALATION_TOP_N,
    summary_min_members: int = ESCALATION_SUMMARY_MIN_MEMBERS,
) -> ScanResult:
    """Classify every profile and rank the at-risk members.

    Never-reported members and members under 24h are left out. Ranking is
    longest-silent first; ties keep the input order.
    """
    require_aware(now, "now")
    result = ScanResult(scanned_at=now)
    classified: list[EscalationRecord] = []

    for profile in profiles:
        result.scanned += 1
        signal = read_signal(profile, now)
        if not signal.has_reported:
            result.skipped_never_reported += 1
            continue
        tier = classify_tier(signal.hours_unresponsive)
        if tier == Tier.NONE:
            continue
        classified.append(EscalationRecord(
            member_id=profile.member_id,
            hours_unresponsive=signal.hours_unresponsive,
            days_unresponsive=signal.days_unresponsive,
            tier=tier,
            display_name=profile.display_name,
            team=profile.team,
            total_reports=profile.total_reports,
        ))

    # sorted() is stable, so equal hours keep scan order
    ranked = sorted(classified, key=lambda rec: rec.hours_unresponsive, reverse=True)
    for rank, record in enumerate(ranked, start=1):
        record.rank = rank

    result.records = ranked
    result.counts = {
        tier.value: sum(1 for rec in ranked if rec.tier == tier)
        for tier, _minimum in reversed(TIER_THRESHOLDS)
    }
    result.top = ranked[:top_n]
    result.red_cohort = [rec for rec in ranked if rec.tier == Tier.RED]
    result.summary_due = len(ranked) >= summary_min_members
    return result


def run_escalation_scan(now: datetime, store: RedisProfileStore | None = None) -> ScanResult:
    """Full read-only scan over every registered member."""
    store = store or RedisProfileStore()
    result = classify(store.iter_profiles(), now)
    logger.info(
        f"Escalation scan: {result.scanned} scanned, {result.total} at risk "
        f"(yellow={result.counts['yellow']}, orange={result.counts['orange']}, red={result.counts['red']})"
    )
    return result
