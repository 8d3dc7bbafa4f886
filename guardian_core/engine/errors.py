"""Error kinds raised by the engagement core.

Member-scoped errors propagate to the immediate caller. Batch-scoped errors
(dispatch failures during a scan) are counted and logged by the job instead.
"""

from __future__ import annotations


class EngagementError(Exception):
    """Base class for all engagement-core errors."""


class InvalidInput(EngagementError):
    """Malformed timestamp, negative amount or otherwise unusable input."""


class UnknownMember(EngagementError):
    def __init__(self, member_id: str):
        super().__init__(f"No engagement profile for member {member_id!r}")
        self.member_id = member_id


class InsufficientBalance(EngagementError):
    def __init__(self, member_id: str, requested: int, balance: int):
        super().__init__(
            f"Member {member_id!r} cannot spend {requested} energy (balance {balance})"
        )
        self.member_id = member_id
        self.requested = requested
        self.balance = balance


class DuplicateSource(EngagementError):
    """A credit replay for an already-recorded (source_type, source_id).

    The ledger reports this as a no-op result; it is only raised by the store
    layer when a caller asks for strict appends.
    """

    def __init__(self, member_id: str, source_type: str, source_id: str):
        super().__init__(f"{source_type}:{source_id} already credited to {member_id!r}")
        self.member_id = member_id
        self.source_type = source_type
        self.source_id = source_id


class ProfileConflict(EngagementError):
    """Concurrent write collision on one member; the caller must retry."""

    def __init__(self, member_id: str):
        super().__init__(f"Concurrent update detected for member {member_id!r}")
        self.member_id = member_id


class DispatchFailure(EngagementError):
    def __init__(self, kind: str, reason: str = ""):
        super().__init__(f"Failed to dispatch {kind!r} notification: {reason}")
        self.kind = kind
        self.reason = reason
