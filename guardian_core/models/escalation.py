"""Escalation records produced fresh by every classifier run (never persisted)."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Tier(str, Enum):
    NONE = "none"
    YELLOW = "yellow"
    ORANGE = "orange"
    RED = "red"


@dataclass
class EscalationRecord:
    member_id: str
    hours_unresponsive: int
    days_unresponsive: int
    tier: Tier
    rank: int = 0            # 1-based, assigned after sorting
    display_name: str = ""
    team: str = ""
    total_reports: int = 0

    def to_dict(self) -> dict:
        return {
            "member_id": self.member_id,
            "display_name": self.display_name,
            "team": self.team,
            "hours_unresponsive": self.hours_unresponsive,
            "days_unresponsive": self.days_unresponsive,
            "tier": self.tier.value,
            "rank": self.rank,
            "total_reports": self.total_reports,
        }
