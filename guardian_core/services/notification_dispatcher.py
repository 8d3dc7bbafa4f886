"""Notification Dispatcher — hands engagement events to chat/push delivery.

The core never talks to Slack or web push directly. It publishes JSON
events on a Redis pub/sub channel and a relay process (outside this package)
renders and delivers them. Delivery failures are logged and reported as
``FAILED``; nothing is retried here.

Kinds:
  escalation_summary   full at-risk cohort (3+ members)
  red_alert            high-priority alert for the red cohort
  recovery             member came back from a curse state
  evolution            guardian advanced a stage
  streak_milestone     streak hit 7/14/30/50/100 days
  lucky_bonus          report earned the lucky multiplier
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Protocol

import redis

from guardian_core.config.settings import NOTIFICATION_CHANNEL
from guardian_core.engine.escalation_classifier import ScanResult
from guardian_core.models.escalation import EscalationRecord

logger = logging.getLogger(__name__)

DELIVERED = "delivered"
FAILED = "failed"


class NotificationKind:
    ESCALATION_SUMMARY = "escalation_summary"
    RED_ALERT = "red_alert"
    RECOVERY = "recovery"
    EVOLUTION = "evolution"
    STREAK_MILESTONE = "streak_milestone"
    LUCKY_BONUS = "lucky_bonus"


class NotificationDispatcher(Protocol):
    def dispatch(self, kind: str, payload: dict[str, Any]) -> str:
        ...


class RedisChannelDispatcher:
    """Publish events as JSON on a Redis channel for the delivery relay."""

    def __init__(self, r: redis.Redis, channel: str = NOTIFICATION_CHANNEL):
        self._r = r
        self.channel = channel

    def dispatch(self, kind: str, payload: dict[str, Any]) -> str:
        message = json.dumps({"kind": kind, "payload": payload}, default=str)
        try:
            receivers = self._r.publish(self.channel, message)
        except redis.RedisError as exc:
            logger.error("Dispatch of %s failed: %s", kind, exc)
            return FAILED
        if not receivers:
            # Pub/sub drops messages nobody is subscribed to
            logger.warning("Dropped %s: no relay is subscribed to %s", kind, self.channel)
            return FAILED
        logger.info("Dispatched %s to %d subscriber(s)", kind, receivers)
        return DELIVERED


class LoggingDispatcher:
    """Writes events to the log only. Used when no relay is deployed."""

    def __init__(self):
        self.sent: list[tuple[str, dict]] = []

    def dispatch(self, kind: str, payload: dict[str, Any]) -> str:
        self.sent.append((kind, payload))
        logger.info("Notification %s: %s", kind, json.dumps(payload, default=str, ensure_ascii=False))
        return DELIVERED


# ── Payload builders ─────────────────────────────────────────────────────

def _member_line(record: EscalationRecord) -> dict:
    return {
        "rank": record.rank,
        "member_id": record.member_id,
        "name": record.display_name or record.member_id,
        "team": record.team or "unknown",
        "hours_unresponsive": record.hours_unresponsive,
        "days_unresponsive": record.days_unresponsive,
        "tier": record.tier.value,
    }


def build_summary_payload(result: ScanResult) -> dict:
    return {
        "scanned_at": result.scanned_at.isoformat(),
        "total": result.total,
        "counts": dict(result.counts),
        "top5": [_member_line(rec) for rec in result.top],
    }


def build_red_alert_payload(records: list[EscalationRecord], scanned_at: datetime) -> dict:
    return {
        "scanned_at": scanned_at.isoformat(),
        "count": len(records),
        "members": [_member_line(rec) for rec in records],
    }
