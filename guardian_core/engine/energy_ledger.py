"""Energy Ledger — append-only earn/spend bookkeeping per member.

Earning for a report:

  base (10) × lucky multiplier (10× at 5%, rolled first) × streak multiplier

  Streak multiplier:   streak >= 31 → 3.0
                       streak >= 15 → 2.0
                       streak >= 8  → 1.5
                       streak >= 4  → 1.2
                       otherwise    → 1.0

Credits are idempotent per (source_type, source_id). Debits never take the
balance below zero. The profile's ``energy_balance`` and the transaction log
are written in the same member transaction, so the balance always equals
sum(earn) - sum(spend).
"""

from __future__ import annotations

import logging
import random
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, Optional

from guardian_core.config.settings import (
    BASE_ENERGY_PER_REPORT,
    LUCKY_BONUS_CHANCE,
    LUCKY_BONUS_MULTIPLIER,
)
from guardian_core.engine.errors import InsufficientBalance, InvalidInput
from guardian_core.engine.ledger_store import RedisLedgerStore
from guardian_core.engine.profile_store import MemberSession, RedisProfileStore
from guardian_core.models.profile import MemberEngagementProfile, utc_now
from guardian_core.models.transaction import EnergyTransaction, SourceType, TransactionKind

logger = logging.getLogger(__name__)

# (minimum streak, multiplier in tenths), highest first
STREAK_MULTIPLIER_TENTHS: tuple[tuple[int, int], ...] = (
    (31, 30),
    (15, 20),
    (8, 15),
    (4, 12),
)


@dataclass(frozen=True)
class Earning:
    base: int
    lucky_multiplier: int
    streak_multiplier: float
    amount: int
    is_lucky_bonus: bool

    def breakdown(self) -> str:
        parts = [f"base {self.base}"]
        if self.is_lucky_bonus:
            parts.append(f"lucky ×{self.lucky_multiplier}")
        if self.streak_multiplier != 1.0:
            parts.append(f"streak ×{self.streak_multiplier}")
        return " · ".join(parts) + f" = {self.amount}"


@dataclass
class LedgerResult:
    """Outcome of one credit or debit."""
    member_id: str
    kind: str
    amount: int                  # unsigned amount applied, 0 for a replay
    balance: int
    duplicate: bool = False
    is_lucky_bonus: bool = False
    earning: Optional[Earning] = None
    transaction: Optional[EnergyTransaction] = None

    def to_dict(self) -> dict:
        return {
            "member_id": self.member_id,
            "kind": self.kind,
            "amount": self.amount,
            "balance": self.balance,
            "duplicate": self.duplicate,
            "is_lucky_bonus": self.is_lucky_bonus,
            "breakdown": self.earning.breakdown() if self.earning else "",
        }


@dataclass
class HistorySummary:
    total_earned: int = 0
    total_spent: int = 0
    days_with_earnings: int = 0
    average_per_day: int = 0
    best_day: Optional[date] = None
    best_day_amount: int = 0
    daily: dict[date, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total_earned": self.total_earned,
            "total_spent": self.total_spent,
            "days_with_earnings": self.days_with_earnings,
            "average_per_day": self.average_per_day,
            "best_day": self.best_day.isoformat() if self.best_day else None,
            "best_day_amount": self.best_day_amount,
        }


# ── Pure helpers ─────────────────────────────────────────────────────────

def streak_multiplier_tenths(streak: int) -> int:
    for minimum, tenths in STREAK_MULTIPLIER_TENTHS:
        if streak >= minimum:
            return tenths
    return 10


def streak_multiplier(streak: int) -> float:
    """Streak bonus multiplier, capped at 3.0."""
    return streak_multiplier_tenths(streak) / 10


def roll_lucky_bonus(rng: random.Random, chance: float = LUCKY_BONUS_CHANCE) -> bool:
    return rng.random() < chance


def compute_report_earning(
    streak: int,
    rng: random.Random,
    base: int = BASE_ENERGY_PER_REPORT,
    lucky_chance: float = LUCKY_BONUS_CHANCE,
    lucky_multiplier: int = LUCKY_BONUS_MULTIPLIER,
) -> Earning:
    """Energy for one report. The lucky multiplier applies before the streak bonus."""
    lucky = roll_lucky_bonus(rng, lucky_chance)
    amount = base * (lucky_multiplier if lucky else 1)
    tenths = streak_multiplier_tenths(streak)
    return Earning(
        base=base,
        lucky_multiplier=lucky_multiplier if lucky else 1,
        streak_multiplier=tenths / 10,
        amount=amount * tenths // 10,
        is_lucky_bonus=lucky,
    )


def summarize_history(transactions: Iterable[EnergyTransaction]) -> HistorySummary:
    """Aggregate a member's ledger into per-day earnings stats (UTC days)."""
    summary = HistorySummary()
    daily: dict[date, int] = defaultdict(int)
    for tx in transactions:
        if tx.kind == TransactionKind.EARN:
            summary.total_earned += tx.amount
            daily[tx.created_at.date()] += tx.amount
        else:
            summary.total_spent += -tx.amount

    summary.daily = dict(sorted(daily.items()))
    summary.days_with_earnings = len(daily)
    if daily:
        summary.average_per_day = round(summary.total_earned / len(daily))
        # Earliest day wins a tie
        best = max(summary.daily.items(), key=lambda item: item[1])
        summary.best_day, summary.best_day_amount = best
    return summary


def duplicate_result(profile: MemberEngagementProfile) -> LedgerResult:
    """No-op result for a credit whose source was already recorded."""
    return LedgerResult(
        member_id=profile.member_id,
        kind=TransactionKind.EARN,
        amount=0,
        balance=profile.energy_balance,
        duplicate=True,
    )


def _require_positive(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidInput(f"amount must be an integer, got {amount!r}")
    if amount <= 0:
        raise InvalidInput(f"amount must be positive, got {amount}")
    return amount


# ── Ledger ───────────────────────────────────────────────────────────────

class EnergyLedger:
    """Credit/debit operations over the profile and ledger stores.

    The ``*_in`` variants work inside an open ``MemberSession`` so a report
    can update streak, stage and balance in one transaction. The plain
    variants open their own session.
    """

    def __init__(
        self,
        profiles: RedisProfileStore,
        store: RedisLedgerStore,
        rng: random.Random | None = None,
    ):
        self.profiles = profiles
        self.store = store
        self.rng = rng or random.Random()

    # ── Credit ───────────────────────────────────────────────────────────

    def credit(
        self,
        member_id: str,
        amount: int,
        source_type: str,
        source_id: str,
        now: datetime | None = None,
    ) -> LedgerResult:
        _require_positive(amount)
        with self.profiles.session(member_id, self.store) as session:
            return self.credit_in(session, amount, source_type, source_id, now)

    def credit_in(
        self,
        session: MemberSession,
        amount: int,
        source_type: str,
        source_id: str,
        now: datetime | None = None,
        earning: Earning | None = None,
    ) -> LedgerResult:
        _require_positive(amount)
        if not source_id:
            raise InvalidInput("source_id is required for a credit")
        profile = session.profile
        if session.has_source(source_type, source_id):
            logger.info(f"Ledger: {source_type}:{source_id} already credited to {profile.member_id}")
            return duplicate_result(profile)

        tx = EnergyTransaction(
            member_id=profile.member_id,
            amount=amount,
            kind=TransactionKind.EARN,
            source_type=source_type,
            source_id=source_id,
            created_at=now or utc_now(),
        )
        session.append(tx)
        profile.energy_balance += amount
        profile.total_earned += amount
        logger.info(f"Ledger: +{amount} to {profile.member_id} ({source_type}) → {profile.energy_balance}")
        return LedgerResult(
            member_id=profile.member_id,
            kind=TransactionKind.EARN,
            amount=amount,
            balance=profile.energy_balance,
            is_lucky_bonus=earning.is_lucky_bonus if earning else False,
            earning=earning,
            transaction=tx,
        )

    def earn_for_report(
        self,
        member_id: str,
        report_id: str,
        now: datetime | None = None,
    ) -> LedgerResult:
        with self.profiles.session(member_id, self.store) as session:
            return self.earn_for_report_in(session, report_id, now)

    def earn_for_report_in(
        self,
        session: MemberSession,
        report_id: str,
        now: datetime | None = None,
    ) -> LedgerResult:
        """Credit a report's energy using the session profile's current streak.

        A replayed report returns the duplicate result without rolling the
        lucky bonus.
        """
        profile = session.profile
        if session.has_source(SourceType.REPORT_SUBMISSION, report_id):
            logger.info(f"Ledger: report {report_id} already credited to {profile.member_id}")
            return duplicate_result(profile)
        earning = compute_report_earning(profile.streak, self.rng)
        if earning.is_lucky_bonus:
            logger.info(f"Lucky bonus for {profile.member_id}: {earning.breakdown()}")
        return self.credit_in(
            session, earning.amount, SourceType.REPORT_SUBMISSION, report_id, now, earning=earning,
        )

    # ── Debit ────────────────────────────────────────────────────────────

    def debit(
        self,
        member_id: str,
        amount: int,
        source_type: str,
        source_id: str = "",
        now: datetime | None = None,
    ) -> LedgerResult:
        _require_positive(amount)
        with self.profiles.session(member_id, self.store) as session:
            return self.debit_in(session, amount, source_type, source_id, now)

    def debit_in(
        self,
        session: MemberSession,
        amount: int,
        source_type: str,
        source_id: str = "",
        now: datetime | None = None,
    ) -> LedgerResult:
        _require_positive(amount)
        profile = session.profile
        if amount > profile.energy_balance:
            raise InsufficientBalance(profile.member_id, amount, profile.energy_balance)

        tx = EnergyTransaction(
            member_id=profile.member_id,
            amount=-amount,
            kind=TransactionKind.SPEND,
            source_type=source_type,
            source_id=source_id,
            created_at=now or utc_now(),
        )
        session.append(tx)
        profile.energy_balance -= amount
        logger.info(f"Ledger: -{amount} from {profile.member_id} ({source_type}) → {profile.energy_balance}")
        return LedgerResult(
            member_id=profile.member_id,
            kind=TransactionKind.SPEND,
            amount=amount,
            balance=profile.energy_balance,
            transaction=tx,
        )

    def invest(
        self,
        member_id: str,
        amount: int,
        target_id: str = "",
        now: datetime | None = None,
    ) -> LedgerResult:
        """Spend energy on an investment (e.g. a team goal or mission pledge)."""
        return self.debit(member_id, amount, SourceType.INVESTMENT, target_id, now)

    # ── Reads ────────────────────────────────────────────────────────────

    def balance(self, member_id: str) -> int:
        """Balance recomputed from the transaction log."""
        self.profiles.read_profile(member_id)
        return self.store.balance(member_id)

    def history(self, member_id: str) -> list[EnergyTransaction]:
        self.profiles.read_profile(member_id)
        return self.store.transactions(member_id)
