"""Scheduled escalation job: classify, then notify without repeating itself.

The classifier recomputes tiers from scratch on every run. Left alone, a
member stuck at red would be re-alerted on every hourly run, so the job keeps
a small notification log in Redis:

  escalation:notified:{member_id}   hash  tier, red_at
  escalation:notified:index         set of member ids with a log entry
  escalation:summary:last_at        ISO timestamp of the last summary

Policy (ESCALATION_REPEAT_POLICY):
  tier_entry  red alert when a member newly enters red, or again once the
              cooldown has passed; summary when due and somebody entered a new
              tier since the last summary, or the cooldown has passed
  every_run   no deduplication, every due notification is sent every run

A member who drops out of the at-risk cohort (they reported) has their log
entry cleared, so a later relapse notifies again.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

import redis

from guardian_core.config.settings import (
    DISPATCH_DELAY_SECONDS,
    ESCALATION_COOLDOWN_HOURS,
    ESCALATION_REPEAT_POLICY,
)
from guardian_core.engine.errors import DispatchFailure, InvalidInput
from guardian_core.engine.escalation_classifier import ScanResult, classify
from guardian_core.engine.profile_store import RedisProfileStore
from guardian_core.models.escalation import EscalationRecord, Tier
from guardian_core.models.profile import parse_timestamp
from guardian_core.services.notification_dispatcher import (
    DELIVERED,
    NotificationDispatcher,
    NotificationKind,
    build_red_alert_payload,
    build_summary_payload,
)

logger = logging.getLogger(__name__)

NOTIFIED_PREFIX = "escalation:notified:"
NOTIFIED_INDEX_KEY = "escalation:notified:index"
SUMMARY_LAST_AT_KEY = "escalation:summary:last_at"

POLICY_TIER_ENTRY = "tier_entry"
POLICY_EVERY_RUN = "every_run"


class NotificationLog:
    """What the job has already told people about, per member."""

    def __init__(self, r: redis.Redis):
        self._r = r

    def _key(self, member_id: str) -> str:
        return f"{NOTIFIED_PREFIX}{member_id}"

    def notified_tier(self, member_id: str) -> Tier:
        value = self._r.hget(self._key(member_id), "tier")
        return Tier(value) if value else Tier.NONE

    def red_alerted_at(self, member_id: str) -> Optional[datetime]:
        return parse_timestamp(self._r.hget(self._key(member_id), "red_at"), "red_at")

    def summary_sent_at(self) -> Optional[datetime]:
        return parse_timestamp(self._r.get(SUMMARY_LAST_AT_KEY), "summary_last_at")

    def mark_tier(self, record: EscalationRecord) -> None:
        pipe = self._r.pipeline()
        pipe.hset(self._key(record.member_id), "tier", record.tier.value)
        pipe.sadd(NOTIFIED_INDEX_KEY, record.member_id)
        pipe.execute()

    def mark_red_alert(self, member_id: str, at: datetime) -> None:
        pipe = self._r.pipeline()
        pipe.hset(self._key(member_id), "red_at", at.isoformat())
        pipe.sadd(NOTIFIED_INDEX_KEY, member_id)
        pipe.execute()

    def mark_summary(self, at: datetime) -> None:
        self._r.set(SUMMARY_LAST_AT_KEY, at.isoformat())

    def clear_except(self, active_ids: set[str]) -> list[str]:
        """Forget members who are no longer at risk. Returns the cleared ids."""
        cleared = [mid for mid in self._r.smembers(NOTIFIED_INDEX_KEY) if mid not in active_ids]
        if cleared:
            pipe = self._r.pipeline()
            for member_id in cleared:
                pipe.delete(self._key(member_id))
                pipe.srem(NOTIFIED_INDEX_KEY, member_id)
            pipe.execute()
        return cleared


@dataclass
class JobReport:
    scan: ScanResult
    red_alerts_sent: list[str] = field(default_factory=list)
    red_alerts_suppressed: list[str] = field(default_factory=list)
    summary_sent: bool = False
    summary_suppressed_reason: str = ""
    error_count: int = 0
    cleared: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "scan": self.scan.to_dict(),
            "red_alerts_sent": list(self.red_alerts_sent),
            "red_alerts_suppressed": list(self.red_alerts_suppressed),
            "summary_sent": self.summary_sent,
            "summary_suppressed_reason": self.summary_suppressed_reason,
            "error_count": self.error_count,
            "cleared": list(self.cleared),
        }


class EscalationJob:
    def __init__(
        self,
        profiles: RedisProfileStore,
        dispatcher: NotificationDispatcher,
        log: NotificationLog,
        policy: str = ESCALATION_REPEAT_POLICY,
        cooldown_hours: int = ESCALATION_COOLDOWN_HOURS,
        dispatch_delay: float = DISPATCH_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if policy not in (POLICY_TIER_ENTRY, POLICY_EVERY_RUN):
            raise InvalidInput(f"Unknown escalation repeat policy {policy!r}")
        self.profiles = profiles
        self.dispatcher = dispatcher
        self.log = log
        self.policy = policy
        self.cooldown = timedelta(hours=cooldown_hours)
        self.dispatch_delay = dispatch_delay
        self._sleep = sleep
        self._dispatched_once = False

    def run(self, now: datetime) -> JobReport:
        result = classify(self.profiles.iter_profiles(), now)
        report = JobReport(scan=result)
        self._dispatched_once = False

        report.cleared = self.log.clear_except({rec.member_id for rec in result.records})

        for record in result.red_cohort:
            if not self._red_alert_due(record, now):
                report.red_alerts_suppressed.append(record.member_id)
                continue
            payload = build_red_alert_payload([record], now)
            if self._send(NotificationKind.RED_ALERT, payload):
                report.red_alerts_sent.append(record.member_id)
                self.log.mark_red_alert(record.member_id, now)
            else:
                report.error_count += 1

        if not result.summary_due:
            report.summary_suppressed_reason = f"only {result.total} member(s) at risk"
        elif not self._summary_due(result, now):
            report.summary_suppressed_reason = "no new tier entries since last summary"
        elif self._send(NotificationKind.ESCALATION_SUMMARY, build_summary_payload(result)):
            report.summary_sent = True
            self.log.mark_summary(now)
            for record in result.records:
                self.log.mark_tier(record)
        else:
            report.error_count += 1

        logger.info(
            f"Escalation job: {len(report.red_alerts_sent)} red alert(s) sent, "
            f"{len(report.red_alerts_suppressed)} suppressed, summary={'sent' if report.summary_sent else 'skipped'}, "
            f"errors={report.error_count}"
        )
        return report

    # ── Policy ───────────────────────────────────────────────────────────

    def _red_alert_due(self, record: EscalationRecord, now: datetime) -> bool:
        if self.policy == POLICY_EVERY_RUN:
            return True
        last = self.log.red_alerted_at(record.member_id)
        return last is None or now - last >= self.cooldown

    def _summary_due(self, result: ScanResult, now: datetime) -> bool:
        if self.policy == POLICY_EVERY_RUN:
            return True
        if any(self.log.notified_tier(rec.member_id) != rec.tier for rec in result.records):
            return True
        last = self.log.summary_sent_at()
        return last is None or now - last >= self.cooldown

    # ── Delivery ─────────────────────────────────────────────────────────

    def _send(self, kind: str, payload: dict) -> bool:
        if self._dispatched_once and self.dispatch_delay > 0:
            self._sleep(self.dispatch_delay)
        self._dispatched_once = True
        try:
            self._deliver(kind, payload)
        except DispatchFailure as exc:
            logger.warning(str(exc))
            return False
        except Exception as exc:
            # One failed delivery must not stop the rest of the run
            logger.error(f"Dispatch of {kind} raised: {exc}")
            return False
        return True

    def _deliver(self, kind: str, payload: dict) -> None:
        status = self.dispatcher.dispatch(kind, payload)
        if status != DELIVERED:
            raise DispatchFailure(kind, status)
