"""Explicit wiring of the engagement services for one call context.

Nothing here is cached at module level: the server builds a container per
request and tests build one around a fakeredis client.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

import redis

from guardian_core.engine.energy_ledger import EnergyLedger
from guardian_core.engine.ledger_store import RedisLedgerStore
from guardian_core.engine.profile_store import RedisProfileStore
from guardian_core.engine.progression import CurseThresholds, ProgressionEngine
from guardian_core.services.escalation_job import EscalationJob, NotificationLog
from guardian_core.services.notification_dispatcher import NotificationDispatcher, RedisChannelDispatcher
from guardian_core.services.report_service import ReportService


@dataclass
class EngagementServices:
    profiles: RedisProfileStore
    ledger: EnergyLedger
    progression: ProgressionEngine
    reports: ReportService
    escalation: EscalationJob
    dispatcher: NotificationDispatcher


def build_services(
    r: redis.Redis,
    rng: random.Random | None = None,
    dispatcher: NotificationDispatcher | None = None,
    thresholds: CurseThresholds | None = None,
    **job_options,
) -> EngagementServices:
    profiles = RedisProfileStore(r)
    ledger = EnergyLedger(profiles, RedisLedgerStore(r), rng=rng)
    progression = ProgressionEngine(thresholds)
    dispatcher = dispatcher or RedisChannelDispatcher(r)
    return EngagementServices(
        profiles=profiles,
        ledger=ledger,
        progression=progression,
        reports=ReportService(profiles, ledger, progression, dispatcher),
        escalation=EscalationJob(profiles, dispatcher, NotificationLog(r), **job_options),
        dispatcher=dispatcher,
    )
