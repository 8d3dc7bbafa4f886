"""Report submission — the synchronous path behind every activity report.

One report updates, in a single member transaction:
  1. curse recovery + guardian evolution   (Progression Engine)
  2. streak, total_reports, last_report_at (Activity Signal)
  3. energy earned for the report          (Energy Ledger)

Events for the messaging side (recovery, evolution, streak milestones, lucky
bonus) are dispatched only after the transaction commits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from guardian_core.config.settings import PROFILE_WRITE_MAX_ATTEMPTS, STREAK_GRACE_HOURS
from guardian_core.engine.activity_signal import (
    StreakUpdate,
    is_valid_instant,
    read_signal,
    record_report,
    require_aware,
)
from guardian_core.engine.energy_ledger import EnergyLedger, LedgerResult, duplicate_result
from guardian_core.engine.errors import InvalidInput, ProfileConflict
from guardian_core.engine.progression import CurseTransition, GuardianStatus, ProgressionEngine
from guardian_core.engine.profile_store import RedisProfileStore
from guardian_core.models.profile import EvolutionStyle, parse_timestamp, utc_now
from guardian_core.models.transaction import SourceType
from guardian_core.services.notification_dispatcher import (
    DELIVERED,
    NotificationDispatcher,
    NotificationKind,
)

logger = logging.getLogger(__name__)


@dataclass
class ReportOutcome:
    member_id: str
    ledger_result: LedgerResult
    new_stage: Optional[int] = None                  # set only when the guardian evolved
    curse_transition: Optional[CurseTransition] = None
    streak: Optional[StreakUpdate] = None
    events: list[dict] = field(default_factory=list)
    replay: bool = False

    def to_dict(self) -> dict:
        transition = None
        if self.curse_transition:
            transition = {
                "previous": self.curse_transition.previous.value,
                "current": self.curse_transition.current.value,
                "days_absent": self.curse_transition.days_absent,
            }
        return {
            "member_id": self.member_id,
            "new_stage": self.new_stage,
            "curse_transition": transition,
            "streak": self.streak.current if self.streak else None,
            "streak_milestone": self.streak.milestone if self.streak else None,
            "ledger": self.ledger_result.to_dict(),
            "events": list(self.events),
            "replay": self.replay,
        }


def _coerce_report_time(value: Any) -> datetime:
    report_at = parse_timestamp(value, "report_at")
    if report_at is None:
        raise InvalidInput("report_at is required")
    return require_aware(report_at, "report_at")


class ReportService:
    def __init__(
        self,
        profiles: RedisProfileStore,
        ledger: EnergyLedger,
        progression: ProgressionEngine,
        dispatcher: NotificationDispatcher | None = None,
        grace_hours: int = STREAK_GRACE_HOURS,
    ):
        self.profiles = profiles
        self.ledger = ledger
        self.progression = progression
        self.dispatcher = dispatcher
        self.grace_hours = grace_hours

    def on_report_submitted(
        self,
        member_id: str,
        report_at: datetime | str,
        report_id: str | None = None,
    ) -> ReportOutcome:
        """Apply one activity report. Raises ProfileConflict on a concurrent write.

        `report_id` identifies the report for idempotence; it defaults to the
        report timestamp, so re-submitting the same report is a no-op.
        """
        report_at = _coerce_report_time(report_at)
        report_id = report_id or report_at.isoformat()

        with self.profiles.session(member_id, self.ledger.store) as session:
            profile = session.profile
            if session.has_source(SourceType.REPORT_SUBMISSION, report_id):
                session.abort()
                logger.info(f"Report {report_id} for {member_id} already applied")
                return ReportOutcome(
                    member_id=member_id,
                    ledger_result=duplicate_result(profile),
                    replay=True,
                )

            last = profile.last_report_at
            if is_valid_instant(last) and report_at < last:
                raise InvalidInput(
                    f"report_at {report_at.isoformat()} is earlier than the last report {last.isoformat()}"
                )

            progression = self.progression.apply_report(profile, report_at)
            streak = record_report(profile, report_at, self.grace_hours)
            ledger_result = self.ledger.earn_for_report_in(session, report_id, report_at)

        outcome = ReportOutcome(
            member_id=member_id,
            ledger_result=ledger_result,
            new_stage=progression.new_stage if progression.evolved else None,
            curse_transition=progression.curse_transition,
            streak=streak,
            events=list(progression.events),
        )
        if streak.milestone:
            outcome.events.append({
                "kind": NotificationKind.STREAK_MILESTONE,
                "member_id": member_id,
                "streak": streak.milestone,
            })
        if ledger_result.is_lucky_bonus:
            outcome.events.append({
                "kind": NotificationKind.LUCKY_BONUS,
                "member_id": member_id,
                "amount": ledger_result.amount,
            })

        logger.info(
            f"Report for {member_id}: streak {streak.previous} → {streak.current}, "
            f"+{ledger_result.amount} energy, stage {progression.previous_stage} → {progression.new_stage}"
        )
        self._dispatch_events(outcome.events)
        return outcome

    def submit_with_retry(
        self,
        member_id: str,
        report_at: datetime | str,
        report_id: str | None = None,
        max_attempts: int = PROFILE_WRITE_MAX_ATTEMPTS,
    ) -> ReportOutcome:
        """Retry on ProfileConflict. The report id keeps retries idempotent."""
        report_at = _coerce_report_time(report_at)
        report_id = report_id or report_at.isoformat()
        for attempt in range(1, max_attempts + 1):
            try:
                return self.on_report_submitted(member_id, report_at, report_id)
            except ProfileConflict:
                if attempt == max_attempts:
                    raise
                logger.info(f"Retrying report for {member_id} after conflict (attempt {attempt})")
        raise ProfileConflict(member_id)

    def unlock_guardian(
        self,
        member_id: str,
        style: EvolutionStyle | str,
        now: datetime | None = None,
    ) -> GuardianStatus:
        now = now or utc_now()
        with self.profiles.session(member_id, self.ledger.store) as session:
            if not self.progression.unlock(session.profile, style, now):
                session.abort()
            profile = session.profile
        return self.progression.status(profile, now)

    def describe_member(self, member_id: str, now: datetime | None = None) -> dict:
        """Read-only member view: profile, recency and guardian status."""
        now = now or utc_now()
        profile = self.profiles.read_profile(member_id)
        signal = read_signal(profile, now)
        data = profile.to_dict()
        data.update({
            "has_reported": signal.has_reported,
            "hours_unresponsive": signal.hours_unresponsive,
            "days_unresponsive": signal.days_unresponsive,
            "guardian": self.progression.status(profile, now).to_dict(),
        })
        return data

    def _dispatch_events(self, events: list[dict]) -> None:
        if not self.dispatcher:
            return
        for event in events:
            try:
                status = self.dispatcher.dispatch(event["kind"], event)
            except Exception as exc:
                logger.error(f"Dispatch of {event['kind']} raised: {exc}")
                continue
            if status != DELIVERED:
                logger.warning(f"Dispatch of {event['kind']} reported {status}")
