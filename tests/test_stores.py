"""Tests for the Redis profile/ledger stores and record validation at the store boundary."""

import json

import pytest
from datetime import datetime, timezone

from guardian_core.engine.errors import DuplicateSource, InvalidInput, ProfileConflict, UnknownMember
from guardian_core.engine.ledger_store import APPEND_DUPLICATE, APPEND_OK, RedisLedgerStore
from guardian_core.engine.profile_store import RedisProfileStore
from guardian_core.models.profile import MEMBER_INDEX_KEY, EvolutionStyle, MemberEngagementProfile, parse_timestamp
from guardian_core.models.transaction import EnergyTransaction, SourceType, TransactionKind


@pytest.fixture
def profiles(r):
    return RedisProfileStore(r)


@pytest.fixture
def ledger_store(r):
    return RedisLedgerStore(r)


def _earn(amount=10, source_id="r-1", member_id="m-1"):
    return EnergyTransaction(
        member_id=member_id,
        amount=amount,
        kind=TransactionKind.EARN,
        source_type=SourceType.REPORT_SUBMISSION,
        source_id=source_id,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Profile records
# ═══════════════════════════════════════════════════════════════════════════


class TestProfileRecord:
    def test_round_trip_through_hash(self, make_profile, frozen_now):
        profile = make_profile(
            last_report_at=frozen_now,
            streak=3,
            evolution_style=EvolutionStyle.CYBER,
            unlocked_at=frozen_now,
        )
        assert MemberEngagementProfile.from_dict(profile.to_dict()) == profile

    def test_missing_fields_default(self):
        profile = MemberEngagementProfile.from_dict({"member_id": "m-1"})
        assert profile.streak == 0
        assert profile.last_report_at is None
        assert profile.evolution_style is None

    def test_cached_curse_state_and_unknown_keys_are_ignored(self):
        profile = MemberEngagementProfile.from_dict({
            "member_id": "m-1",
            "curse_state": "cursed",
            "favourite_colour": "teal",
        })
        assert not hasattr(profile, "curse_state")

    @pytest.mark.parametrize("field,value", [
        ("streak", "-1"),
        ("energy_balance", "lots"),
        ("last_report_at", "last tuesday"),
        ("evolution_style", "dragon"),
    ])
    def test_malformed_fields_rejected(self, field, value):
        with pytest.raises(InvalidInput):
            MemberEngagementProfile.from_dict({"member_id": "m-1", field: value})

    def test_member_id_required(self):
        with pytest.raises(InvalidInput):
            MemberEngagementProfile.from_dict({"streak": "3"})

    @pytest.mark.parametrize("raw,expected", [
        ("2026-02-15T12:00:00Z", datetime(2026, 2, 15, 12, tzinfo=timezone.utc)),
        ("2026-02-15T21:00:00+09:00", datetime(2026, 2, 15, 12, tzinfo=timezone.utc)),
        ("2026-02-15T12:00:00", datetime(2026, 2, 15, 12, tzinfo=timezone.utc)),
        (1771156800, datetime(2026, 2, 15, 12, tzinfo=timezone.utc)),
        ("1771156800", datetime(2026, 2, 15, 12, tzinfo=timezone.utc)),
        ("", None),
    ])
    def test_parse_timestamp(self, raw, expected):
        assert parse_timestamp(raw) == expected

    def test_negative_epoch_parses_before_epoch(self):
        assert parse_timestamp("-86400") == datetime(1969, 12, 31, tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Profile store
# ═══════════════════════════════════════════════════════════════════════════


class TestProfileStore:
    def test_create_and_read(self, profiles, frozen_now):
        created = profiles.create_profile("m-1", "Aiko", "sales", now=frozen_now)
        loaded = profiles.read_profile("m-1")
        assert loaded == created
        assert loaded.version == 1
        assert loaded.registered_at == frozen_now

    def test_create_is_idempotent(self, profiles):
        profiles.create_profile("m-1", "Aiko")
        again = profiles.create_profile("m-1", "Someone else")
        assert again.display_name == "Aiko"
        assert profiles.member_ids() == ["m-1"]

    def test_create_requires_id(self, profiles):
        with pytest.raises(InvalidInput):
            profiles.create_profile("")

    def test_read_unknown(self, profiles):
        with pytest.raises(UnknownMember):
            profiles.read_profile("ghost")

    def test_iteration_follows_registration_order(self, r, profiles):
        for member_id in ("zed", "amy", "kai"):
            profiles.create_profile(member_id)
        assert [p.member_id for p in profiles.iter_profiles()] == ["zed", "amy", "kai"]
        assert r.zcard(MEMBER_INDEX_KEY) == 3

    def test_compare_and_write(self, profiles):
        profile = profiles.create_profile("m-1")
        profile.streak = 4
        profiles.write_profile(profile, expected_version=1)

        assert profile.version == 2
        assert profiles.read_profile("m-1").streak == 4

    def test_stale_write_conflicts(self, profiles):
        first = profiles.create_profile("m-1")
        second = profiles.read_profile("m-1")

        first.streak = 1
        profiles.write_profile(first, expected_version=1)

        second.streak = 9
        with pytest.raises(ProfileConflict):
            profiles.write_profile(second, expected_version=1)
        assert profiles.read_profile("m-1").streak == 1

    def test_write_unknown_member(self, profiles):
        with pytest.raises(UnknownMember):
            profiles.write_profile(MemberEngagementProfile(member_id="ghost"), expected_version=0)

    def test_session_commits_profile_and_ledger_together(self, profiles, ledger_store):
        profiles.create_profile("m-1")
        with profiles.session("m-1", ledger_store) as session:
            session.profile.energy_balance += 10
            session.append(_earn())

        assert profiles.read_profile("m-1").energy_balance == 10
        assert ledger_store.balance("m-1") == 10

    def test_session_error_writes_nothing(self, profiles, ledger_store):
        profiles.create_profile("m-1")
        with pytest.raises(RuntimeError):
            with profiles.session("m-1", ledger_store) as session:
                session.profile.energy_balance += 10
                session.append(_earn())
                raise RuntimeError("boom")

        assert profiles.read_profile("m-1").energy_balance == 0
        assert ledger_store.transactions("m-1") == []

    def test_session_sees_pending_sources(self, profiles, ledger_store):
        profiles.create_profile("m-1")
        with profiles.session("m-1", ledger_store) as session:
            assert session.has_source(SourceType.REPORT_SUBMISSION, "r-1") is False
            session.append(_earn())
            assert session.has_source(SourceType.REPORT_SUBMISSION, "r-1") is True

    def test_session_conflict(self, r, profiles, ledger_store):
        profiles.create_profile("m-1")
        with pytest.raises(ProfileConflict):
            with profiles.session("m-1", ledger_store) as session:
                r.hset("member:m-1", "team", "elsewhere")
                session.profile.streak = 3

        assert profiles.read_profile("m-1").streak == 0

    def test_iteration_skips_corrupt_documents(self, r, profiles):
        profiles.create_profile("ok")
        profiles.create_profile("broken")
        r.hset("member:broken", "streak", "-4")
        assert [p.member_id for p in profiles.iter_profiles()] == ["ok"]


# ═══════════════════════════════════════════════════════════════════════════
# Ledger store & transactions
# ═══════════════════════════════════════════════════════════════════════════


class TestLedgerStore:
    def test_append_and_balance(self, ledger_store):
        assert ledger_store.append_transaction(_earn(10, "r-1")) == APPEND_OK
        assert ledger_store.append_transaction(_earn(15, "r-2")) == APPEND_OK
        assert ledger_store.balance("m-1") == 25

    def test_duplicate_credit(self, ledger_store):
        ledger_store.append_transaction(_earn(10, "r-1"))
        assert ledger_store.append_transaction(_earn(10, "r-1")) == APPEND_DUPLICATE
        assert ledger_store.balance("m-1") == 10

    def test_strict_duplicate_raises(self, ledger_store):
        ledger_store.append_transaction(_earn(10, "r-1"))
        with pytest.raises(DuplicateSource):
            ledger_store.append_transaction(_earn(10, "r-1"), strict=True)

    def test_spends_are_never_duplicates(self, ledger_store):
        spend = EnergyTransaction("m-1", -5, TransactionKind.SPEND, SourceType.INVESTMENT)
        assert ledger_store.append_transaction(spend) == APPEND_OK
        assert ledger_store.append_transaction(spend) == APPEND_OK
        assert ledger_store.balance("m-1") == -10

    def test_ledgers_are_per_member(self, ledger_store):
        ledger_store.append_transaction(_earn(10, "r-1", member_id="a"))
        ledger_store.append_transaction(_earn(10, "r-1", member_id="b"))
        assert ledger_store.balance("a") == ledger_store.balance("b") == 10

    def test_transaction_json(self, frozen_now):
        tx = EnergyTransaction(
            "m-1", 12, TransactionKind.EARN, SourceType.REPORT_SUBMISSION, "r-1", created_at=frozen_now,
        )
        data = json.loads(tx.to_json())
        assert data["amount"] == 12
        assert data["created_at"] == "2026-02-15T12:00:00+00:00"
        assert EnergyTransaction.from_json(tx.to_json()) == tx

    @pytest.mark.parametrize("amount,kind", [
        (0, TransactionKind.EARN),
        (-3, TransactionKind.EARN),
        (3, TransactionKind.SPEND),
        (3, "gift"),
    ])
    def test_transaction_sign_rules(self, amount, kind):
        with pytest.raises(InvalidInput):
            EnergyTransaction("m-1", amount, kind, SourceType.MISSION_REWARD)

    def test_corrupt_ledger_entry(self, r, ledger_store):
        r.rpush("ledger:m-1", "{not json")
        with pytest.raises(InvalidInput):
            ledger_store.transactions("m-1")
