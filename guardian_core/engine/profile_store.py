"""Redis-backed store for member engagement profiles.

Profiles live in hashes under ``member:{id}``; ``member:index`` is a sorted
set scored by registration sequence so full scans come back in a stable
arrival order.

Every write is a compare-and-write on the profile's ``version`` under
WATCH/MULTI. A lost race surfaces as ``ProfileConflict``; retrying is the
caller's job.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

import redis

from guardian_core.config.settings import REDIS_URL
from guardian_core.engine.errors import InvalidInput, ProfileConflict, UnknownMember
from guardian_core.engine.ledger_store import RedisLedgerStore, sources_key
from guardian_core.models.profile import (
    MEMBER_INDEX_KEY,
    MEMBER_SEQ_KEY,
    PROFILE_PREFIX,
    MemberEngagementProfile,
    utc_now,
)
from guardian_core.models.transaction import EnergyTransaction

logger = logging.getLogger(__name__)


def _get_redis() -> redis.Redis:
    return redis.Redis.from_url(REDIS_URL, decode_responses=True)


def profile_key(member_id: str) -> str:
    return f"{PROFILE_PREFIX}{member_id}"


class MemberSession:
    """One member's profile plus the ledger entries queued against it.

    Reads go through the watched pipeline; nothing is written until the
    session's context exits cleanly.
    """

    def __init__(
        self,
        pipe: redis.client.Pipeline,
        profile: MemberEngagementProfile,
        ledger: RedisLedgerStore,
    ):
        self.pipe = pipe
        self.profile = profile
        self.expected_version = profile.version
        self.pending: list[EnergyTransaction] = []
        self.aborted = False
        self._ledger = ledger

    def has_source(self, source_type: str, source_id: str) -> bool:
        key = f"{source_type}:{source_id}"
        if any(tx.source_key == key for tx in self.pending):
            return True
        return self._ledger.has_source(self.profile.member_id, source_type, source_id, client=self.pipe)

    def append(self, tx: EnergyTransaction) -> None:
        self.pending.append(tx)

    def abort(self) -> None:
        """Leave the stored profile and ledger untouched on exit."""
        self.aborted = True


class RedisProfileStore:
    def __init__(self, r: redis.Redis | None = None):
        self._r = r or _get_redis()

    # ── Registration ─────────────────────────────────────────────────────

    def create_profile(
        self,
        member_id: str,
        display_name: str = "",
        team: str = "",
        now: Optional[datetime] = None,
    ) -> MemberEngagementProfile:
        """Register a member. Returns the existing profile if already registered."""
        if not member_id:
            raise InvalidInput("member_id is required")
        key = profile_key(member_id)
        profile = MemberEngagementProfile(
            member_id=member_id,
            display_name=display_name,
            team=team,
            registered_at=now or utc_now(),
            version=1,
        )
        with self._r.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.exists(key):
                    pipe.unwatch()
                    return self.read_profile(member_id)
                seq = self._r.incr(MEMBER_SEQ_KEY)
                pipe.multi()
                pipe.hset(key, mapping=profile.to_dict())
                pipe.zadd(MEMBER_INDEX_KEY, {member_id: seq})
                pipe.execute()
            except redis.WatchError as exc:
                raise ProfileConflict(member_id) from exc
        logger.info("Registered member %s (team=%s)", member_id, team or "-")
        return profile

    # ── Reads ────────────────────────────────────────────────────────────

    def exists(self, member_id: str) -> bool:
        return bool(self._r.exists(profile_key(member_id)))

    def read_profile(self, member_id: str) -> MemberEngagementProfile:
        data = self._r.hgetall(profile_key(member_id))
        if not data:
            raise UnknownMember(member_id)
        return MemberEngagementProfile.from_dict(data)

    def member_ids(self) -> list[str]:
        return list(self._r.zrange(MEMBER_INDEX_KEY, 0, -1))

    def iter_profiles(self) -> Iterator[MemberEngagementProfile]:
        """Yield every registered profile in registration order.

        Unreadable documents are logged and skipped so one bad record never
        aborts a full scan.
        """
        for member_id in self.member_ids():
            data = self._r.hgetall(profile_key(member_id))
            if not data:
                continue
            try:
                yield MemberEngagementProfile.from_dict(data)
            except InvalidInput as exc:
                logger.warning("Skipping unreadable profile %s: %s", member_id, exc)

    # ── Writes ───────────────────────────────────────────────────────────

    def write_profile(self, profile: MemberEngagementProfile, expected_version: int) -> None:
        """Compare-and-write: persist only if the stored version still matches."""
        key = profile_key(profile.member_id)
        with self._r.pipeline() as pipe:
            try:
                pipe.watch(key)
                stored = pipe.hget(key, "version")
                if stored is None:
                    raise UnknownMember(profile.member_id)
                if int(stored) != expected_version:
                    raise ProfileConflict(profile.member_id)
                pipe.multi()
                self._stage_profile(pipe, profile, expected_version)
                pipe.execute()
            except redis.WatchError as exc:
                raise ProfileConflict(profile.member_id) from exc

    @contextmanager
    def session(self, member_id: str, ledger: RedisLedgerStore) -> Iterator[MemberSession]:
        """Atomic read-modify-write over one member's profile and ledger.

        Usage:
            with store.session("m-1", ledger) as s:
                s.profile.streak += 1
                s.append(tx)
        """
        key = profile_key(member_id)
        with self._r.pipeline() as pipe:
            try:
                pipe.watch(key, sources_key(member_id))
                data = pipe.hgetall(key)
                if not data:
                    raise UnknownMember(member_id)
                session = MemberSession(pipe, MemberEngagementProfile.from_dict(data), ledger)
                yield session
                if session.aborted:
                    return
                pipe.multi()
                self._stage_profile(pipe, session.profile, session.expected_version)
                for tx in session.pending:
                    ledger.stage_append(pipe, tx)
                pipe.execute()
            except redis.WatchError as exc:
                logger.info("Write conflict on member %s", member_id)
                raise ProfileConflict(member_id) from exc

    def _stage_profile(
        self,
        pipe: redis.client.Pipeline,
        profile: MemberEngagementProfile,
        expected_version: int,
    ) -> None:
        profile.version = expected_version + 1
        pipe.hset(profile_key(profile.member_id), mapping=profile.to_dict())
