"""Tests for navarb/balance_ledger.py — derived statistics and replay invariants."""
import dataclasses
import threading

import pandas as pd
import pytest

from navarb.balance_ledger import (
    EXPORT_COLUMNS,
    BalanceLog,
    ValuationSnapshot,
    compute_summary,
    value_in_token1,
)

START = 1_700_000_000.0


def _snap(value, ts=START, tx_ref=None, direction=None):
    return ValuationSnapshot(
        balance_token0=0,
        balance_token1=value,
        share_price=10 ** 18,
        total_value=value,
        timestamp=ts,
        tx_ref=tx_ref,
        direction=direction,
    )


@pytest.fixture
def log():
    return BalanceLog(pool_id="test", starting_balance=1_000_000_000, start_time=START)


def test_profit_and_drawdown_sequence(log):
    for i, value in enumerate([1_010_000_000, 1_005_000_000, 1_020_000_000]):
        log.append(_snap(value, ts=START + 60 * (i + 1)))

    entries = log.entries
    assert [e.cumulative_profit for e in entries] == [10_000_000, 5_000_000, 20_000_000]
    assert [e.change_from_previous for e in entries] == [None, -5_000_000, 15_000_000]
    assert entries[0].change_percent_from_previous is None
    assert entries[0].cumulative_profit_percent == pytest.approx(1.0)

    summary = log.summary()
    assert summary.has_data is True
    assert summary.trade_count == 3
    assert summary.winning_entries == 1
    assert summary.losing_entries == 1
    assert summary.win_rate == 50.0
    assert summary.max_drawdown_percent == pytest.approx(5 / 1010 * 100)
    assert summary.total_profit == 20_000_000
    assert summary.avg_profit_per_entry == pytest.approx(20_000_000 / 3)


def test_first_entry_sets_starting_balance():
    log = BalanceLog(pool_id="test", start_time=START)
    entry = log.append(_snap(500))
    assert log.starting_balance == 500
    assert entry.change_from_previous is None
    assert entry.cumulative_profit == 0
    assert entry.cumulative_profit_percent == 0.0


def test_zero_change_counts_in_win_rate_denominator(log):
    for value in (100, 100, 110):
        log.append(_snap(value))
    summary = log.summary()
    assert summary.winning_entries == 1
    assert summary.losing_entries == 0
    assert summary.win_rate == 50.0


def test_drawdown_peak_starts_at_starting_balance(log):
    log.append(_snap(900_000_000))
    assert log.summary().max_drawdown_percent == pytest.approx(10.0)


def test_hours_running_floor():
    log = BalanceLog(pool_id="test", start_time=START)
    log.append(_snap(100, ts=START))
    summary = log.summary()
    assert summary.hours_running == 0.01
    assert summary.profit_per_day == 0.0


def test_correction_count_requires_direction_and_tx(log):
    log.append(_snap(1))
    log.append(_snap(2, tx_ref="0xa", direction="push_price_down"))
    log.append(_snap(3, tx_ref="0xb"))
    assert log.summary().correction_count == 1


def test_empty_summary():
    summary = compute_summary([], None)
    assert summary.has_data is False
    assert summary.trade_count == 0


def test_value_in_token1():
    # 2 shares (18 dec) at 1.5 plus 100 base (6 dec) = 103 base
    total = value_in_token1(2 * 10 ** 18, 100 * 10 ** 6, 1_500_000_000_000_000_000, 18, 6)
    assert total == 103 * 10 ** 6

    snap = ValuationSnapshot.from_balances(2 * 10 ** 18, 100 * 10 ** 6, 1_500_000_000_000_000_000, 18, 6)
    assert snap.total_value == 103 * 10 ** 6


def test_replay_reproduces_derived_fields():
    values = [1_000, 1_200, 900, 900, 1_500, 1_100]
    log = BalanceLog(pool_id="test", start_time=START)
    for i, v in enumerate(values):
        log.append(_snap(v, ts=START + i))

    rebuilt = BalanceLog.replay((e.raw() for e in log.entries), start_time=START)
    assert rebuilt.entries == log.entries
    assert [e.to_dict() for e in rebuilt.entries] == [e.to_dict() for e in log.entries]
    assert log.verify() is True


def test_verify_detects_tampering(log):
    for v in (1_100_000_000, 1_200_000_000):
        log.append(_snap(v))
    log._entries[1] = dataclasses.replace(log._entries[1], cumulative_profit=1)
    assert log.verify() is False


def test_recent_most_recent_first(log):
    for v in (1, 2, 3, 4):
        log.append(_snap(v))
    assert [e.total_value for e in log.recent(2)] == [4, 3]
    assert [e.total_value for e in log.recent(10)] == [4, 3, 2, 1]
    assert list(log.recent(0)) == []


def test_recent_is_single_pass(log):
    log.append(_snap(1))
    it = log.recent(5)
    assert len(list(it)) == 1
    assert list(it) == []


def test_recent_snapshot_ignores_later_appends(log):
    log.append(_snap(1))
    it = log.recent(5)
    log.append(_snap(2))
    assert [e.total_value for e in it] == [1]


def test_export_columns_and_exact_ints(log):
    big = 10 ** 30
    log.append(_snap(big, tx_ref="0xabc", direction="push_price_up"))
    log.append(_snap(big + 1))
    df = log.export()

    assert list(df.columns) == EXPORT_COLUMNS
    assert len(df) == 2
    assert df["total_value"].iloc[0] == big
    assert df["change"].iloc[1] == 1
    assert pd.isna(df["change"].iloc[0])
    assert df["tx_ref"].iloc[0] == "0xabc"
    assert df["timestamp"].iloc[0].startswith("2023-11-14")


def test_export_csv(tmp_path, log):
    log.append(_snap(1_010_000_000))
    path = log.export_csv(tmp_path / "ledger.csv")
    df = pd.read_csv(path)
    assert list(df.columns) == EXPORT_COLUMNS
    assert df["total_value"].iloc[0] == 1_010_000_000


def test_reset_clears_state(log):
    log.append(_snap(1))
    log.reset()
    assert log.entries == []
    assert log.starting_balance is None
    assert log.trade_count == 0
    assert log.summary().has_data is False


def test_concurrent_appends_stay_consistent():
    log = BalanceLog(pool_id="test", start_time=START)

    def worker(offset):
        for i in range(50):
            log.append(_snap(offset + i))

    threads = [threading.Thread(target=worker, args=(k * 1_000,)) for k in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert log.trade_count == 200
    assert log.verify() is True
