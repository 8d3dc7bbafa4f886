"""Redis-backed append-only energy ledger.

Layout per member:
  ledger:{member_id}          list of JSON transactions, append order
  ledger:sources:{member_id}  set of "source_type:source_id" already credited
"""

from __future__ import annotations

import logging
from typing import Optional

import redis

from guardian_core.config.settings import REDIS_URL
from guardian_core.engine.errors import DuplicateSource
from guardian_core.models.transaction import (
    LEDGER_PREFIX,
    LEDGER_SOURCES_PREFIX,
    EnergyTransaction,
    TransactionKind,
)

logger = logging.getLogger(__name__)

APPEND_OK = "ok"
APPEND_DUPLICATE = "duplicate"


def _get_redis() -> redis.Redis:
    return redis.Redis.from_url(REDIS_URL, decode_responses=True)


def ledger_key(member_id: str) -> str:
    return f"{LEDGER_PREFIX}{member_id}"


def sources_key(member_id: str) -> str:
    return f"{LEDGER_SOURCES_PREFIX}{member_id}"


class RedisLedgerStore:
    def __init__(self, r: redis.Redis | None = None):
        self._r = r or _get_redis()

    def has_source(
        self,
        member_id: str,
        source_type: str,
        source_id: str,
        client: Optional[redis.client.Pipeline] = None,
    ) -> bool:
        """Whether an earn for this source was already recorded.

        Pass the watched pipeline as `client` to read inside a member session.
        """
        client = client if client is not None else self._r
        return bool(client.sismember(sources_key(member_id), f"{source_type}:{source_id}"))

    def stage_append(self, pipe: redis.client.Pipeline, tx: EnergyTransaction) -> None:
        """Queue the writes for `tx` on a pipeline already in MULTI mode."""
        pipe.rpush(ledger_key(tx.member_id), tx.to_json())
        if tx.kind == TransactionKind.EARN:
            pipe.sadd(sources_key(tx.member_id), tx.source_key)

    def append_transaction(self, tx: EnergyTransaction, strict: bool = False) -> str:
        """Append one transaction on its own; credits are de-duplicated by source.

        A replayed credit returns "duplicate", or raises DuplicateSource when
        `strict` is set.
        """
        with self._r.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(sources_key(tx.member_id))
                    if tx.kind == TransactionKind.EARN and self.has_source(
                        tx.member_id, tx.source_type, tx.source_id, client=pipe
                    ):
                        pipe.unwatch()
                        if strict:
                            raise DuplicateSource(tx.member_id, tx.source_type, tx.source_id)
                        logger.info("Ledger: duplicate credit %s for %s", tx.source_key, tx.member_id)
                        return APPEND_DUPLICATE
                    pipe.multi()
                    self.stage_append(pipe, tx)
                    pipe.execute()
                    return APPEND_OK
                except redis.WatchError:
                    # Another credit for this member landed first; re-check
                    continue

    def transactions(self, member_id: str) -> list[EnergyTransaction]:
        raw = self._r.lrange(ledger_key(member_id), 0, -1)
        return [EnergyTransaction.from_json(entry) for entry in raw]

    def balance(self, member_id: str) -> int:
        """Balance recomputed from the log: sum(earn) - sum(spend)."""
        return sum(tx.amount for tx in self.transactions(member_id))
