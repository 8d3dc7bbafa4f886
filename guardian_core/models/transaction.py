"""Energy ledger transaction record.

Transactions are append-only: written once into a member's Redis list and
never edited or removed by normal operation.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from guardian_core.engine.errors import InvalidInput
from guardian_core.models.profile import parse_timestamp, utc_now

LEDGER_PREFIX = "ledger:"
LEDGER_SOURCES_PREFIX = "ledger:sources:"


class TransactionKind:
    EARN = "earn"
    SPEND = "spend"


class SourceType:
    REPORT_SUBMISSION = "report_submission"
    INVESTMENT = "investment"
    MISSION_REWARD = "mission_reward"
    PROFILE_COMPLETION = "profile_completion"
    ADMIN_ADJUSTMENT = "admin_adjustment"


@dataclass(frozen=True)
class EnergyTransaction:
    member_id: str
    amount: int              # signed: positive for earn, negative for spend
    kind: str                # earn | spend
    source_type: str
    source_id: str = ""
    created_at: datetime = field(default_factory=utc_now)
    tx_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if self.kind == TransactionKind.EARN and self.amount <= 0:
            raise InvalidInput(f"earn transaction needs a positive amount, got {self.amount}")
        if self.kind == TransactionKind.SPEND and self.amount >= 0:
            raise InvalidInput(f"spend transaction needs a negative amount, got {self.amount}")
        if self.kind not in (TransactionKind.EARN, TransactionKind.SPEND):
            raise InvalidInput(f"Unknown transaction kind {self.kind!r}")

    @property
    def source_key(self) -> str:
        """Idempotence key for credits."""
        return f"{self.source_type}:{self.source_id}"

    def to_json(self) -> str:
        return json.dumps({
            "tx_id": self.tx_id,
            "member_id": self.member_id,
            "amount": self.amount,
            "kind": self.kind,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "created_at": self.created_at.isoformat(),
        })

    @classmethod
    def from_json(cls, raw: str) -> EnergyTransaction:
        try:
            data = json.loads(raw)
            return cls(
                member_id=data["member_id"],
                amount=int(data["amount"]),
                kind=data["kind"],
                source_type=data["source_type"],
                source_id=data.get("source_id", ""),
                created_at=parse_timestamp(data["created_at"], "created_at"),
                tx_id=data["tx_id"],
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise InvalidInput(f"Corrupt ledger entry: {raw[:120]!r}") from exc
