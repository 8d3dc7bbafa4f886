"""Shared test fixtures for the guardian core test suite."""

import pytest
import fakeredis
from datetime import datetime, timedelta, timezone

from guardian_core.models.profile import MemberEngagementProfile
from guardian_core.services.container import build_services
from guardian_core.services.notification_dispatcher import DELIVERED, FAILED, LoggingDispatcher


# ── Redis ────────────────────────────────────────────────────────────────

@pytest.fixture
def r():
    """Fresh fakeredis instance per test (decode_responses=True like production)."""
    return fakeredis.FakeRedis(decode_responses=True)


# ── Time Freezing ───────────────────────────────────────────────────────

@pytest.fixture
def frozen_now():
    """Return a fixed 'now' datetime for deterministic tests.

    Default: 2026-02-15T12:00:00Z (noon UTC on a Sunday).
    """
    return datetime(2026, 2, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def hours_ago(frozen_now):
    """`hours_ago(30)` → frozen_now minus 30 hours."""
    def _at(hours: float) -> datetime:
        return frozen_now - timedelta(hours=hours)
    return _at


# ── Randomness ──────────────────────────────────────────────────────────

class FixedRandom:
    """random.Random stand-in whose random() always returns `value`."""

    def __init__(self, value: float):
        self.value = value
        self.calls = 0

    def random(self) -> float:
        self.calls += 1
        return self.value


@pytest.fixture
def never_lucky():
    return FixedRandom(0.99)


@pytest.fixture
def always_lucky():
    return FixedRandom(0.0)


# ── Dispatchers ─────────────────────────────────────────────────────────

class RecordingDispatcher:
    """Records every dispatch; kinds in `fail_kinds` report failure, `raise_kinds` raise."""

    def __init__(self, fail_kinds=(), raise_kinds=(), fail_members=()):
        self.sent = []
        self.attempts = []
        self.fail_kinds = set(fail_kinds)
        self.raise_kinds = set(raise_kinds)
        self.fail_members = set(fail_members)

    def dispatch(self, kind, payload):
        self.attempts.append((kind, payload))
        if kind in self.raise_kinds:
            raise RuntimeError(f"{kind} relay is down")
        member_ids = {m["member_id"] for m in payload.get("members", [])}
        if kind in self.fail_kinds or member_ids & self.fail_members:
            return FAILED
        self.sent.append((kind, payload))
        return DELIVERED

    def kinds(self):
        return [kind for kind, _ in self.sent]


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def make_dispatcher():
    """`make_dispatcher(fail_members={"m-1"})` → RecordingDispatcher with failures."""
    return RecordingDispatcher


@pytest.fixture
def logging_dispatcher():
    return LoggingDispatcher()


# ── Services ────────────────────────────────────────────────────────────

@pytest.fixture
def services(r, never_lucky, dispatcher):
    """Fully wired services on fakeredis with a deterministic RNG."""
    return build_services(r, rng=never_lucky, dispatcher=dispatcher, dispatch_delay=0)


# ── Profile Factories ───────────────────────────────────────────────────

@pytest.fixture
def make_profile():
    """Factory fixture that creates MemberEngagementProfile instances.

    Usage:
        profile = make_profile(last_report_at=hours_ago(30), team="sales")
    """
    _counter = 0

    def _factory(**overrides):
        nonlocal _counter
        _counter += 1
        defaults = {
            "member_id": f"member-{_counter}",
            "display_name": f"Member {_counter}",
            "team": "growth",
            "registered_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
        }
        defaults.update(overrides)
        return MemberEngagementProfile(**defaults)

    return _factory


@pytest.fixture
def seed_member(services):
    """Register a member and persist any profile overrides on top of it.

    Usage:
        profile = seed_member("m-1", last_report_at=hours_ago(50), energy_balance=30)
    """
    def _seed(member_id, **overrides):
        profile = services.profiles.create_profile(
            member_id,
            overrides.pop("display_name", member_id.title()),
            overrides.pop("team", "growth"),
        )
        if overrides:
            for name, value in overrides.items():
                setattr(profile, name, value)
            services.profiles.write_profile(profile, profile.version)
        return profile

    return _seed
