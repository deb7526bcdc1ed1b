"""Runtime configuration read from the environment.

Entry points call ``dotenv.load_dotenv`` before importing this module so a
project-level ``.env`` file can supply any of these values. Keys listed in
``navarb.hot_config.RELOADABLE_KEYS`` may be patched in place at runtime, so
consumers read them as ``cfg.NAME`` at call time instead of importing the
names directly.
"""
from __future__ import annotations

import os


def _bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


# ── Pool identity ──

POOL_ID = os.environ.get("POOL_ID", "default")
TOKEN0_DECIMALS = int(os.environ.get("TOKEN0_DECIMALS", "6"))
TOKEN1_DECIMALS = int(os.environ.get("TOKEN1_DECIMALS", "6"))

# ── Correction trigger / execution bounds ──

ARB_TRIGGER_BPS = int(os.environ.get("ARB_TRIGGER_BPS", "500"))
SLIPPAGE_PCT = int(os.environ.get("SLIPPAGE_PCT", "1"))
DEADLINE_MARGIN_SECONDS = int(os.environ.get("DEADLINE_MARGIN_SECONDS", "3000"))
GAS_LIMIT_MARGIN_PCT = int(os.environ.get("GAS_LIMIT_MARGIN_PCT", "120"))
REDEMPTION_DELAY_SECONDS = int(os.environ.get("REDEMPTION_DELAY_SECONDS", "0"))
MONITOR_ENABLED = _bool("MONITOR_ENABLED", "true")
DRIVER_HISTORY_SIZE = int(os.environ.get("DRIVER_HISTORY_SIZE", "500"))

# ── Persistence ──

LEDGER_DIR = os.environ.get("LEDGER_DIR", "data/ledger")

# ── Hot reload ──

HOT_CONFIG_ENABLED = _bool("HOT_CONFIG_ENABLED", "false")
HOT_CONFIG_POLL_INTERVAL = float(os.environ.get("HOT_CONFIG_POLL_INTERVAL", "5.0"))
HOT_CONFIG_PATH = os.environ.get("HOT_CONFIG_PATH", "")

# ── Logging ──

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FORMAT = os.environ.get("LOG_FORMAT", "console")
