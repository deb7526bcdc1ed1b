"""Correction driver: one in-flight correction cycle per pool.

States::

    IDLE -> SIZING -> SUBMITTING -> CONFIRMED | FAILED
                                    CONFIRMED (push price up) -> QUEUED -> COMPLETING -> FINALIZED | FAILED

A trigger arriving while a cycle holds the lock is dropped (``SKIPPED_BUSY``),
never queued: the pool state it would size against is already stale.
Scheduled finalizations do wait for the lock.

Every cycle ends in a ``CycleResult``. Cycles that reach submission also
append a ledger entry; the rest emit an explicit log event.
"""
from __future__ import annotations

__all__ = ["DriverState", "CycleOutcome", "CycleResult", "CorrectionDriver"]

import asyncio
import enum
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

import structlog
from pydantic import ValidationError
from structlog.contextvars import bound_contextvars

import navarb.config as cfg
from navarb.balance_ledger import BalanceLog, LedgerEntry, ValuationSnapshot
from navarb.chain import CorrectionAction, ExecutionClient, PoolStateReader, Receipt, Reverted
from navarb.errors import (
    DeadlineExpired,
    FinalizationFailure,
    NoLiquidity,
    StateReadFailure,
    SubmissionReverted,
)
from navarb.events import parse_event
from navarb.finalization import (
    FinalizationScheduler,
    FinalizationStatus,
    PendingFinalization,
    PendingFinalizationStore,
)
from navarb.selector import (
    ExecutionParams,
    OpportunityCheck,
    build_execution_params,
    ensure_deadline,
    evaluate_opportunity,
    gas_limit_with_margin,
    min_out_with_slippage,
)
from navarb.sizing import Direction, NoOpportunity, TradeSizing

log = structlog.get_logger()

_RETRYABLE = (FinalizationStatus.PENDING, FinalizationStatus.FAILED)


class DriverState(str, enum.Enum):
    IDLE = "idle"
    SIZING = "sizing"
    SUBMITTING = "submitting"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    QUEUED = "queued"
    COMPLETING = "completing"
    FINALIZED = "finalized"


class CycleOutcome(str, enum.Enum):
    DISABLED = "disabled"
    SKIPPED_BUSY = "skipped_busy"
    IGNORED = "ignored"
    INVALID_EVENT = "invalid_event"
    STATE_READ_FAILED = "state_read_failed"
    NO_LIQUIDITY = "no_liquidity"
    NO_OPPORTUNITY = "no_opportunity"
    REJECTED = "rejected"
    DEADLINE_EXPIRED = "deadline_expired"
    FAILED = "failed"
    CONFIRMED = "confirmed"
    QUEUED = "queued"
    FINALIZED = "finalized"
    FINALIZATION_FAILED = "finalization_failed"


@dataclass
class CycleResult:
    cycle_id: str
    outcome: CycleOutcome
    pool_id: str
    source: str
    timestamp: float
    elapsed_ms: float = 0.0
    check: OpportunityCheck | None = None
    sizing: TradeSizing | None = None
    params: ExecutionParams | None = None
    gas_limit: int | None = None
    tx_ref: str | None = None
    receipt: Receipt | None = None
    pending: PendingFinalization | None = None
    ledger_entry: LedgerEntry | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "outcome": self.outcome.value,
            "pool_id": self.pool_id,
            "source": self.source,
            "timestamp": self.timestamp,
            "elapsed_ms": round(self.elapsed_ms, 2),
            "check": self.check.to_dict() if self.check else None,
            "sizing": self.sizing.to_dict() if self.sizing else None,
            "params": self.params.to_dict() if self.params else None,
            "gas_limit": self.gas_limit,
            "tx_ref": self.tx_ref,
            "receipt": self.receipt.to_dict() if self.receipt else None,
            "pending": self.pending.to_dict() if self.pending else None,
            "ledger_entry": self.ledger_entry.to_dict() if self.ledger_entry else None,
            "error": self.error,
        }


def _new_cycle_id() -> str:
    return uuid.uuid4().hex[:12]


class CorrectionDriver:
    """Sizes, submits and records NAV corrections for a single pool.

    Tunables (trigger, slippage, deadline margin, gas margin, unlock delay,
    monitor switch) are read from ``navarb.config`` at cycle time so hot
    reloads take effect on the next trigger.
    """

    def __init__(
        self,
        reader: PoolStateReader,
        client: ExecutionClient,
        ledger: BalanceLog,
        pending_store: PendingFinalizationStore,
        pool_id: str | None = None,
        token0_decimals: int | None = None,
        token1_decimals: int | None = None,
        history_size: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._reader = reader
        self._client = client
        self._ledger = ledger
        self._pending = pending_store
        self._pool_id = pool_id or cfg.POOL_ID
        self._dec0 = cfg.TOKEN0_DECIMALS if token0_decimals is None else token0_decimals
        self._dec1 = cfg.TOKEN1_DECIMALS if token1_decimals is None else token1_decimals
        self._history_size = history_size or cfg.DRIVER_HISTORY_SIZE
        self._clock = clock

        self._lock = asyncio.Lock()
        self._state = DriverState.IDLE
        self._history: list[CycleResult] = []
        self._listeners: list[Callable[[CycleResult], None]] = []
        self._scheduler = FinalizationScheduler(self.finalize, clock=clock)

    # ── Triggers ──

    async def trigger_check(self, source: str = "manual") -> CycleResult:
        """Run one correction cycle unless one is already in flight."""
        t0 = time.time()
        result = CycleResult(
            cycle_id=_new_cycle_id(),
            outcome=CycleOutcome.FAILED,
            pool_id=self._pool_id,
            source=source,
            timestamp=t0,
        )

        if not cfg.MONITOR_ENABLED:
            log.info("driver.trigger ignored", reason="monitor disabled", source=source)
            result.outcome = CycleOutcome.DISABLED
            return self._record(result)

        if self._lock.locked():
            log.info("driver.trigger skipped", reason="cycle in flight",
                     state=self._state.value, source=source)
            result.outcome = CycleOutcome.SKIPPED_BUSY
            return self._record(result)

        async with self._lock:
            with bound_contextvars(cycle_id=result.cycle_id, pool_id=self._pool_id):
                log.debug("driver.cycle started", source=source)
                try:
                    await self._run_cycle(result)
                finally:
                    self._transition(DriverState.IDLE)
                result.elapsed_ms = (time.time() - t0) * 1000
                log.info("driver.cycle finished", outcome=result.outcome.value,
                         elapsed_ms=round(result.elapsed_ms, 2))
        return self._record(result)

    async def handle_event(self, payload: dict[str, Any]) -> CycleResult:
        """Validate a raw chain event and trigger a check for this pool."""
        try:
            event = parse_event(payload)
        except ValidationError as exc:
            log.warning("driver.invalid event", errors=exc.error_count(), kind=payload.get("kind"))
            return self._record(CycleResult(
                cycle_id=_new_cycle_id(),
                outcome=CycleOutcome.INVALID_EVENT,
                pool_id=self._pool_id,
                source="event",
                timestamp=time.time(),
                error=str(exc),
            ))

        if event.pool_id != self._pool_id:
            log.debug("driver.event ignored", event_pool=event.pool_id)
            return self._record(CycleResult(
                cycle_id=_new_cycle_id(),
                outcome=CycleOutcome.IGNORED,
                pool_id=self._pool_id,
                source=event.kind,
                timestamp=time.time(),
            ))
        return await self.trigger_check(source=event.kind)

    # ── Cycle ──

    async def _run_cycle(self, result: CycleResult) -> None:
        self._transition(DriverState.SIZING)
        try:
            pool = await self._reader.read_pool_state()
            target = await self._reader.read_reference_price()
            pool.validate()
        except Exception as exc:
            result.outcome = CycleOutcome.STATE_READ_FAILED
            result.error = str(StateReadFailure(f"pool state read failed: {exc}"))
            log.warning("driver.state read failed", error=str(exc))
            return

        try:
            check, sizing = evaluate_opportunity(pool, target, cfg.ARB_TRIGGER_BPS)
        except NoLiquidity as exc:
            result.outcome = CycleOutcome.NO_LIQUIDITY
            result.error = str(exc)
            log.warning("driver.no liquidity", error=str(exc))
            return

        result.check = check
        if isinstance(sizing, NoOpportunity):
            result.outcome = CycleOutcome.NO_OPPORTUNITY
            log.info("driver.no opportunity", reason=sizing.reason,
                     deviation_bps=check.deviation_bps, trigger_bps=check.trigger_bps)
            return

        result.sizing = sizing
        if sizing.amount_in <= 0:
            result.outcome = CycleOutcome.REJECTED
            result.error = "sized amount_in is zero"
            log.warning("driver.zero amount", direction=sizing.direction.value,
                        deviation_bps=check.deviation_bps)
            return

        self._transition(DriverState.SUBMITTING)
        try:
            params = build_execution_params(
                sizing,
                await self._client.chain_time(),
                slippage_pct=cfg.SLIPPAGE_PCT,
                margin_seconds=cfg.DEADLINE_MARGIN_SECONDS,
            )
            result.params = params
            estimate = await self._client.estimate(params.action, params)
            result.gas_limit = gas_limit_with_margin(estimate, cfg.GAS_LIMIT_MARGIN_PCT)
            ensure_deadline(params, await self._client.chain_time())
        except DeadlineExpired as exc:
            result.outcome = CycleOutcome.DEADLINE_EXPIRED
            result.error = str(exc)
            log.warning("driver.deadline expired", deadline=exc.deadline, chain_time=exc.chain_time)
            return
        except Exception as exc:
            self._transition(DriverState.FAILED)
            result.outcome = CycleOutcome.FAILED
            result.error = f"pre-submission failure: {exc}"
            log.error("driver.estimate failed", error=str(exc), direction=sizing.direction.value)
            return

        log.info("driver.submitting", action=params.action.value, amount_in=params.max_amount_in,
                 min_out=params.min_amount_out, deadline=params.deadline, gas_limit=result.gas_limit)
        tx_ref, landed = await self._submit(params, result.gas_limit)
        result.tx_ref = tx_ref

        if isinstance(landed, Reverted):
            self._transition(DriverState.FAILED)
            err = SubmissionReverted(landed.reason, landed.tx_ref or tx_ref)
            result.outcome = CycleOutcome.FAILED
            result.tx_ref = err.tx_ref
            result.error = str(err)
            log.error("driver.submission reverted", reason=err.reason, tx_ref=err.tx_ref)
            result.ledger_entry = await self._record_balances(err.tx_ref, sizing.direction)
            return

        self._transition(DriverState.CONFIRMED)
        result.receipt = landed
        result.tx_ref = landed.tx_ref
        log.info("driver.correction confirmed", tx_ref=landed.tx_ref, block=landed.block_number,
                 gas_used=landed.gas_used, direction=sizing.direction.value)
        result.ledger_entry = await self._record_balances(landed.tx_ref, sizing.direction)

        if sizing.direction is Direction.PUSH_PRICE_DOWN:
            result.outcome = CycleOutcome.CONFIRMED
            return

        self._transition(DriverState.QUEUED)
        delay = cfg.REDEMPTION_DELAY_SECONDS
        record = PendingFinalization(
            pool_id=self._pool_id,
            queue_tx_ref=landed.tx_ref,
            min_amount_out=min_out_with_slippage(sizing.amount_out, cfg.SLIPPAGE_PCT),
            unlock_at=self._clock() + delay,
        )
        self._pending.put(record)
        result.pending = record
        log.info("driver.redemption queued", record_id=record.record_id, delay_s=delay)

        if delay > 0:
            self._scheduler.schedule(record)
            result.outcome = CycleOutcome.QUEUED
            return

        entry = await self._complete(record)
        if entry is not None:
            result.ledger_entry = entry
        if record.status is FinalizationStatus.FINALIZED:
            result.outcome = CycleOutcome.FINALIZED
        else:
            result.outcome = CycleOutcome.FINALIZATION_FAILED
            result.error = _finalization_error(record)

    async def _submit(self, params: ExecutionParams, gas_limit: int | None) -> tuple[str | None, Receipt | Reverted]:
        tx_ref = None
        try:
            tx_ref = await self._client.submit(params.action, params, gas_limit)
            return tx_ref, await self._client.wait(tx_ref)
        except Exception as exc:
            return tx_ref, Reverted(reason=str(exc) or type(exc).__name__, tx_ref=tx_ref)

    async def _record_balances(self, tx_ref: str | None, direction: Direction | None) -> LedgerEntry | None:
        try:
            reading = await self._reader.read_valuation()
        except Exception as exc:
            log.error("driver.valuation read failed", error=str(exc), tx_ref=tx_ref)
            return None
        snapshot = ValuationSnapshot.from_balances(
            reading.balance_token0,
            reading.balance_token1,
            reading.share_price,
            self._dec0,
            self._dec1,
            tx_ref=tx_ref,
            direction=direction.value if direction else None,
        )
        try:
            return self._ledger.append(snapshot)
        except Exception as exc:
            log.error("driver.ledger write failed", error=str(exc), tx_ref=tx_ref,
                      total_value=snapshot.total_value)
            return None

    async def record_observation(self) -> LedgerEntry | None:
        """Append a passive balance snapshot (no direction, no tx).

        Run once before the first correction so an empty log starts from the
        pre-trade valuation instead of the first post-trade one.
        """
        async with self._lock:
            entry = await self._record_balances(None, None)
        if entry is not None:
            log.info("driver.balances observed", total_value=entry.total_value,
                     entries=self._ledger.trade_count)
        return entry

    # ── Finalization ──

    async def _complete(self, record: PendingFinalization) -> LedgerEntry | None:
        """Submit the queued-redemption completion. Caller holds the lock."""
        self._transition(DriverState.COMPLETING)
        record.status = FinalizationStatus.COMPLETING
        record.attempts += 1
        self._pending.put(record)

        params = ExecutionParams(
            action=CorrectionAction.COMPLETE_QUEUED_REDEEM,
            direction=None,
            max_amount_in=0,
            min_amount_out=record.min_amount_out,
            deadline=None,
            slippage_pct=cfg.SLIPPAGE_PCT,
        )
        try:
            estimate = await self._client.estimate(params.action, params)
            tx_ref, landed = await self._submit(params, gas_limit_with_margin(estimate, cfg.GAS_LIMIT_MARGIN_PCT))
        except asyncio.CancelledError:
            # on-chain outcome unknown; leave it for the operator
            self._fail_finalization(record, "cancelled during completion")
            raise
        except Exception as exc:
            self._fail_finalization(record, f"estimate failed: {exc}")
            return None

        if isinstance(landed, Reverted):
            record.finalize_tx_ref = landed.tx_ref or tx_ref
            self._fail_finalization(record, landed.reason)
        else:
            record.status = FinalizationStatus.FINALIZED
            record.finalize_tx_ref = landed.tx_ref
            record.last_error = None
            self._pending.put(record)
            self._transition(DriverState.FINALIZED)
            log.info("driver.redemption finalized", record_id=record.record_id,
                     tx_ref=landed.tx_ref, gas_used=landed.gas_used)
        return await self._record_balances(record.finalize_tx_ref, None)

    def _fail_finalization(self, record: PendingFinalization, reason: str) -> None:
        record.status = FinalizationStatus.FAILED
        record.last_error = reason
        self._pending.put(record)
        self._transition(DriverState.FAILED)
        log.error("driver.finalization failed", record_id=record.record_id, reason=reason,
                  attempts=record.attempts, action="retry manually via retry_finalization")

    async def finalize(self, record_id: str) -> CycleResult:
        """Scheduled completion at unlock time. Only acts on PENDING records."""
        return await self._finalize(record_id, (FinalizationStatus.PENDING,), source="scheduled")

    async def retry_finalization(self, record_id: str) -> CycleResult:
        """Operator-initiated completion of a PENDING or FAILED record.

        A record whose attempt is in flight (COMPLETING) is rejected and its
        attempt left running. A pending timer is cancelled only once the lock
        is held and the record is confirmed PENDING.
        """
        self._check_status(record_id, _RETRYABLE)
        return await self._finalize(record_id, _RETRYABLE, source="operator", cancel_timer=True)

    def _check_status(self, record_id: str, allowed: tuple[FinalizationStatus, ...]) -> PendingFinalization:
        record = self._pending.get(record_id)
        if record is None:
            raise KeyError(f"unknown finalization record {record_id}")
        if record.status not in allowed:
            raise ValueError(f"finalization record {record_id} is {record.status.value}")
        return record

    async def _finalize(
        self,
        record_id: str,
        allowed: tuple[FinalizationStatus, ...],
        source: str,
        cancel_timer: bool = False,
    ) -> CycleResult:
        t0 = time.time()
        cycle_id = _new_cycle_id()
        async with self._lock:
            with bound_contextvars(cycle_id=cycle_id, record_id=record_id):
                record = self._check_status(record_id, allowed)
                if cancel_timer and record.status is FinalizationStatus.PENDING:
                    self._scheduler.cancel(record_id)

                result = CycleResult(
                    cycle_id=cycle_id,
                    outcome=CycleOutcome.FINALIZATION_FAILED,
                    pool_id=self._pool_id,
                    source=source,
                    timestamp=t0,
                    pending=record,
                )
                try:
                    result.ledger_entry = await self._complete(record)
                finally:
                    self._transition(DriverState.IDLE)

                result.tx_ref = record.finalize_tx_ref
                if record.status is FinalizationStatus.FINALIZED:
                    result.outcome = CycleOutcome.FINALIZED
                else:
                    result.error = _finalization_error(record)
                result.elapsed_ms = (time.time() - t0) * 1000
        return self._record(result)

    async def restore_pending(self) -> list[PendingFinalization]:
        """Reschedule persisted PENDING records after a restart.

        A record left in COMPLETING was interrupted mid-attempt; its on-chain
        outcome is unknown, so it is marked FAILED for the operator.
        """
        restored = []
        for record in self._pending.list():
            if record.status is FinalizationStatus.PENDING:
                if self._scheduler.schedule(record):
                    restored.append(record)
            elif record.status is FinalizationStatus.COMPLETING:
                record.status = FinalizationStatus.FAILED
                record.last_error = "interrupted during completion"
                self._pending.put(record)
                log.warning("driver.finalization interrupted", record_id=record.record_id)
        log.info("driver.pending restored", count=len(restored))
        return restored

    async def shutdown(self) -> None:
        """Cancel finalization timers. Persisted records are left as they are."""
        await self._scheduler.stop()
        log.info("driver.shutdown", open_records=len(self._pending.open_records()))

    # ── Introspection ──

    def _transition(self, state: DriverState) -> None:
        if state is not self._state:
            log.debug("driver.state", previous=self._state.value, current=state.value)
            self._state = state

    def _record(self, result: CycleResult) -> CycleResult:
        self._history.append(result)
        if len(self._history) > self._history_size:
            self._history = self._history[-self._history_size:]
        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception:
                log.exception("driver.listener failed", cycle_id=result.cycle_id)
        return result

    def add_listener(self, listener: Callable[[CycleResult], None]) -> None:
        self._listeners.append(listener)

    @property
    def state(self) -> DriverState:
        return self._state

    @property
    def pool_id(self) -> str:
        return self._pool_id

    @property
    def ledger(self) -> BalanceLog:
        return self._ledger

    @property
    def pending_store(self) -> PendingFinalizationStore:
        return self._pending

    @property
    def scheduled(self) -> list[str]:
        return self._scheduler.scheduled

    def history(self, limit: int = 50) -> list[CycleResult]:
        return self._history[-limit:] if limit > 0 else []

    def get_status(self) -> dict[str, Any]:
        last = self._history[-1] if self._history else None
        return {
            "pool_id": self._pool_id,
            "state": self._state.value,
            "in_flight": self._lock.locked(),
            "monitor_enabled": cfg.MONITOR_ENABLED,
            "trigger_bps": cfg.ARB_TRIGGER_BPS,
            "open_finalizations": len(self._pending.open_records()),
            "scheduled_finalizations": self.scheduled,
            "cycles_recorded": len(self._history),
            "last_cycle": last.to_dict() if last else None,
        }


def _finalization_error(record: PendingFinalization) -> str:
    return str(FinalizationFailure(record.record_id, record.last_error or "unknown"))
