"""Operator CLI for the balance ledger and queued redemptions.

Usage:
    python -m navarb.ledger_cli summary [--json]
    python -m navarb.ledger_cli recent -n 20
    python -m navarb.ledger_cli export --output ledger.csv
    python -m navarb.ledger_cli reset --yes
    python -m navarb.ledger_cli pending [--status failed]
    python -m navarb.ledger_cli verify
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root before any config access
_project_root = Path(__file__).resolve().parents[1]
load_dotenv(_project_root / ".env")

import navarb.config as cfg
from navarb.balance_ledger import BalanceLog, LedgerStore
from navarb.finalization import FinalizationStatus, PendingFinalizationStore


def _human(raw: int | None, decimals: int) -> str:
    if raw is None:
        return "-"
    sign = "-" if raw < 0 else ""
    whole, frac = divmod(abs(raw), 10 ** decimals)
    if decimals == 0:
        return f"{sign}{whole:,}"
    return f"{sign}{whole:,}.{frac:0{decimals}d}"


def _ts(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="NAV arbitrage balance ledger")
    parser.add_argument("--pool", default=cfg.POOL_ID, help=f"Pool id (default: {cfg.POOL_ID})")
    parser.add_argument("--ledger-dir", default=cfg.LEDGER_DIR, help="Ledger directory")
    parser.add_argument("--decimals", type=int, default=cfg.TOKEN1_DECIMALS,
                        help="Decimals of the valuation token for display")
    sub = parser.add_subparsers(dest="command", required=True)

    p_summary = sub.add_parser("summary", help="Profit and drawdown statistics")
    p_summary.add_argument("--json", action="store_true", help="Print raw JSON")

    p_recent = sub.add_parser("recent", help="Most recent entries, newest first")
    p_recent.add_argument("-n", type=int, default=10, help="Number of entries (default: 10)")

    p_export = sub.add_parser("export", help="Write the ledger as CSV")
    p_export.add_argument("--output", default=None, help="Output CSV path")

    p_reset = sub.add_parser("reset", help="Clear the ledger (the file is kept)")
    p_reset.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    p_pending = sub.add_parser("pending", help="Queued redemptions awaiting finalization")
    p_pending.add_argument("--status", choices=[s.value for s in FinalizationStatus], default=None)

    sub.add_parser("verify", help="Replay the raw snapshots and compare derived fields")

    return parser.parse_args(argv)


def _print_summary(log: BalanceLog, decimals: int, as_json: bool) -> None:
    summary = log.summary()
    if as_json:
        print(json.dumps(summary.to_dict(), indent=2))
        return
    if not summary.has_data:
        print("No ledger data yet.")
        return

    print("=" * 60)
    print(f"LEDGER SUMMARY  pool={log.pool_id}")
    print("=" * 60)
    print(f"Started:            {_ts(summary.start_time)}")
    print(f"Last update:        {_ts(summary.last_update_time)}")
    print(f"Running:            {summary.hours_running:.2f} h")
    print(f"Starting balance:   {_human(summary.starting_balance, decimals)}")
    print(f"Current balance:    {_human(summary.current_balance, decimals)}")
    print(f"Total profit:       {_human(summary.total_profit, decimals)} ({summary.total_profit_percent:+.4f}%)")
    print(f"Entries:            {summary.trade_count} ({summary.correction_count} corrections)")
    print(f"Win rate:           {summary.win_rate:.2f}% ({summary.winning_entries}W / {summary.losing_entries}L)")
    print(f"Avg per entry:      {summary.avg_profit_per_entry / 10 ** decimals:,.6f}")
    print(f"Profit per hour:    {summary.profit_per_hour / 10 ** decimals:,.6f}")
    print(f"Profit per day:     {summary.profit_per_day / 10 ** decimals:,.6f}")
    print(f"Max drawdown:       {summary.max_drawdown_percent:.4f}%")


def _print_recent(log: BalanceLog, n: int, decimals: int) -> None:
    rows = list(log.recent(n))
    if not rows:
        print("No ledger data yet.")
        return
    for e in rows:
        change = "-" if e.change_from_previous is None else (
            f"{_human(e.change_from_previous, decimals)} ({e.change_percent_from_previous:+.4f}%)"
        )
        print(
            f"{_ts(e.timestamp)}  value={_human(e.total_value, decimals)}  change={change}  "
            f"profit={_human(e.cumulative_profit, decimals)}  "
            f"{e.direction or '-'}  {e.tx_ref or '-'}"
        )


def _print_pending(store: PendingFinalizationStore, status: str | None) -> None:
    records = store.list(FinalizationStatus(status) if status else None)
    if not records:
        print("No queued redemptions.")
        return
    for r in records:
        line = (
            f"{r.record_id}  {r.status.value:<10}  unlock={_ts(r.unlock_at)}  "
            f"attempts={r.attempts}  queue_tx={r.queue_tx_ref}"
        )
        if r.last_error:
            line += f"  error={r.last_error}"
        print(line)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    log = BalanceLog.open(args.pool, LedgerStore(args.ledger_dir))

    if args.command == "summary":
        _print_summary(log, args.decimals, args.json)
    elif args.command == "recent":
        _print_recent(log, args.n, args.decimals)
    elif args.command == "export":
        stamp = datetime.now(tz=timezone.utc).strftime("%Y%m%d")
        output = args.output or f"ledger_{args.pool}_{stamp}.csv"
        path = log.export_csv(output)
        print(f"Exported {log.trade_count} entries to {path}")
    elif args.command == "reset":
        if not args.yes:
            answer = input(f"Reset ledger for pool {args.pool}? [y/N] ")
            if answer.strip().lower() not in ("y", "yes"):
                print("Aborted.")
                return 1
        log.reset()
        print(f"Ledger for pool {args.pool} reset.")
    elif args.command == "pending":
        _print_pending(PendingFinalizationStore.for_pool(args.ledger_dir, args.pool), args.status)
    elif args.command == "verify":
        if log.verify():
            print(f"OK: {log.trade_count} entries reproduce from raw snapshots")
        else:
            print("MISMATCH: stored derived fields differ from replay", file=sys.stderr)
            return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
