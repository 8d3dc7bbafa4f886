"""Member engagement profile.

One profile per member, stored as a Redis hash. The curse state is never part
of the stored record: it is recomputed from ``last_report_at`` on every read.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from guardian_core.engine.errors import InvalidInput

PROFILE_PREFIX = "member:"
MEMBER_INDEX_KEY = "member:index"
MEMBER_SEQ_KEY = "member:seq"

class EvolutionStyle(str, Enum):
    POWER = "power"
    BEAUTY = "beauty"
    CYBER = "cyber"


class CurseState(str, Enum):
    NORMAL = "normal"
    ANXIETY = "anxiety"
    WEAKNESS = "weakness"
    CURSED = "cursed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value, field_name: str = "timestamp") -> Optional[datetime]:
    """Coerce a stored timestamp into an aware UTC datetime.

    Accepts datetimes, ISO 8601 strings and epoch seconds. Empty values mean
    "absent". Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise InvalidInput(f"{field_name}: {value!r} is out of range") from exc
    elif isinstance(value, str) and _looks_numeric(value):
        return parse_timestamp(float(value), field_name)
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise InvalidInput(f"{field_name}: {value!r} is not an ISO 8601 timestamp") from exc
    else:
        raise InvalidInput(f"{field_name}: unsupported timestamp type {type(value).__name__}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _looks_numeric(value: str) -> bool:
    try:
        float(value)
    except ValueError:
        return False
    return True


def _format_timestamp(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def _parse_count(value, field_name: str) -> int:
    if value is None or value == "":
        return 0
    try:
        count = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"{field_name}: {value!r} is not an integer") from exc
    if count < 0:
        raise InvalidInput(f"{field_name}: must be non-negative, got {count}")
    return count


@dataclass
class MemberEngagementProfile:
    member_id: str
    display_name: str = ""
    team: str = ""
    registered_at: Optional[datetime] = None
    last_report_at: Optional[datetime] = None
    streak: int = 0
    max_streak: int = 0
    total_reports: int = 0
    energy_balance: int = 0
    total_earned: int = 0
    guardian_stage: int = 0
    evolution_style: Optional[EvolutionStyle] = None
    unlocked_at: Optional[datetime] = None
    last_evolved_at: Optional[datetime] = None
    paused_seconds: int = 0          # decayed time excluded from evolution cadence
    version: int = 0                 # compare-and-write counter

    @property
    def key(self) -> str:
        return f"{PROFILE_PREFIX}{self.member_id}"

    @property
    def has_reported(self) -> bool:
        return self.last_report_at is not None

    @property
    def is_unlocked(self) -> bool:
        return self.evolution_style is not None

    def choose_style(self, style: EvolutionStyle | str) -> None:
        """Pick the evolution style once; it is immutable after unlock."""
        try:
            chosen = EvolutionStyle(style)
        except ValueError as exc:
            raise InvalidInput(f"Unknown evolution style {style!r}") from exc
        if self.evolution_style is not None and self.evolution_style != chosen:
            raise InvalidInput(
                f"Member {self.member_id!r} already chose the {self.evolution_style.value} style"
            )
        self.evolution_style = chosen

    def to_dict(self) -> dict:
        d = asdict(self)
        for ts_field in ("registered_at", "last_report_at", "unlocked_at", "last_evolved_at"):
            d[ts_field] = _format_timestamp(getattr(self, ts_field))
        d["evolution_style"] = self.evolution_style.value if self.evolution_style else ""
        return d

    @classmethod
    def from_dict(cls, data: dict) -> MemberEngagementProfile:
        """Build a profile from a loosely-typed stored document.

        Unknown keys are dropped, missing counters default to zero and a cached
        ``curse_state`` is ignored. Malformed values raise ``InvalidInput``.
        """
        data = dict(data)  # copy
        member_id = data.get("member_id")
        if not member_id:
            raise InvalidInput("Profile document has no member_id")

        style_raw = data.get("evolution_style") or None
        try:
            style = EvolutionStyle(style_raw) if style_raw else None
        except ValueError as exc:
            raise InvalidInput(f"Unknown evolution style {style_raw!r}") from exc

        stage = _parse_count(data.get("guardian_stage"), "guardian_stage")

        return cls(
            member_id=str(member_id),
            display_name=str(data.get("display_name") or ""),
            team=str(data.get("team") or ""),
            registered_at=parse_timestamp(data.get("registered_at"), "registered_at"),
            last_report_at=parse_timestamp(data.get("last_report_at"), "last_report_at"),
            streak=_parse_count(data.get("streak"), "streak"),
            max_streak=_parse_count(data.get("max_streak"), "max_streak"),
            total_reports=_parse_count(data.get("total_reports"), "total_reports"),
            energy_balance=_parse_count(data.get("energy_balance"), "energy_balance"),
            total_earned=_parse_count(data.get("total_earned"), "total_earned"),
            guardian_stage=stage,
            evolution_style=style,
            unlocked_at=parse_timestamp(data.get("unlocked_at"), "unlocked_at"),
            last_evolved_at=parse_timestamp(data.get("last_evolved_at"), "last_evolved_at"),
            paused_seconds=_parse_count(data.get("paused_seconds"), "paused_seconds"),
            version=_parse_count(data.get("version"), "version"),
        )
