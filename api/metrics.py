"""Prometheus metrics for the NAV arbitrage engine."""

from prometheus_client import Counter, Gauge, Histogram

from navarb.correction_driver import CycleOutcome, CycleResult

cycle_outcomes_total = Counter(
    "navarb_cycle_outcomes_total",
    "Correction cycles by outcome",
    ["outcome"],
)

cycle_duration_seconds = Histogram(
    "navarb_cycle_duration_seconds",
    "Wall time of correction cycles that reached sizing",
    ["outcome"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

finalization_total = Counter(
    "navarb_finalization_total",
    "Queued-redemption completion attempts",
    ["status"],
)

ledger_entries = Gauge(
    "navarb_ledger_entries",
    "Entries appended to the balance ledger by this process",
)

ledger_total_value = Gauge(
    "navarb_ledger_total_value",
    "Latest ledger valuation in raw token1 units",
)

_NOT_TIMED = frozenset({
    CycleOutcome.DISABLED,
    CycleOutcome.SKIPPED_BUSY,
    CycleOutcome.IGNORED,
    CycleOutcome.INVALID_EVENT,
})


def record_cycle(result: CycleResult) -> None:
    """Driver listener."""
    cycle_outcomes_total.labels(outcome=result.outcome.value).inc()
    if result.outcome not in _NOT_TIMED:
        cycle_duration_seconds.labels(outcome=result.outcome.value).observe(result.elapsed_ms / 1000)
    if result.outcome in (CycleOutcome.FINALIZED, CycleOutcome.FINALIZATION_FAILED):
        finalization_total.labels(status=result.outcome.value).inc()
    if result.ledger_entry is not None:
        ledger_entries.inc()
        ledger_total_value.set(result.ledger_entry.total_value)
