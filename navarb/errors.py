"""Failure taxonomy for correction cycles.

Math-layer contract faults (``OrderingViolation``, ``NoLiquidity``) are raised
to the caller. Everything raised during a cycle is turned into a
``CycleResult`` outcome by the driver; nothing here is retried automatically.
"""
from __future__ import annotations

__all__ = [
    "CorrectionError",
    "OrderingViolation",
    "NoLiquidity",
    "StateReadFailure",
    "DeadlineExpired",
    "SubmissionReverted",
    "FinalizationFailure",
]


class CorrectionError(Exception):
    """Base class for every correction-cycle fault."""


class OrderingViolation(CorrectionError, ValueError):
    """A sizing formula was called with prices ordered for the other direction."""


class NoLiquidity(CorrectionError):
    """Active liquidity is zero; no trade can move the price."""


class StateReadFailure(CorrectionError):
    """The pool-state or reference-price reader failed. Callers back off and retry."""


class DeadlineExpired(CorrectionError):
    """The deadline is not after current chain time at submission."""

    def __init__(self, deadline: int, chain_time: int) -> None:
        super().__init__(f"deadline {deadline} <= chain time {chain_time}")
        self.deadline = deadline
        self.chain_time = chain_time


class SubmissionReverted(CorrectionError):
    """The correction transaction was rejected on-chain."""

    def __init__(self, reason: str, tx_ref: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.tx_ref = tx_ref


class FinalizationFailure(CorrectionError):
    """Completing a queued redemption failed; the record stays open for manual retry."""

    def __init__(self, record_id: str, reason: str) -> None:
        super().__init__(f"finalization {record_id} failed: {reason}")
        self.record_id = record_id
        self.reason = reason
