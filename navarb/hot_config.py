"""Restart-less tuning of the correction thresholds.

Polls a JSON override file (``HOT_CONFIG_PATH``) and patches matching
``navarb.config`` attributes in place. The driver reads them at cycle time,
so a change applies from the next trigger. Only the allowlisted keys below
can change at runtime; pool identity, decimals and storage paths cannot.
"""
from __future__ import annotations

__all__ = ["RELOADABLE_KEYS", "HotConfigReloader", "get_reloader"]

import asyncio
import json
import logging
import os
from typing import Any

import navarb.config as _cfg

logger = logging.getLogger(__name__)

RELOADABLE_KEYS: frozenset[str] = frozenset({
    "ARB_TRIGGER_BPS",
    "SLIPPAGE_PCT",
    "DEADLINE_MARGIN_SECONDS",
    "GAS_LIMIT_MARGIN_PCT",
    "REDEMPTION_DELAY_SECONDS",
    "MONITOR_ENABLED",
})


def _coerce(key: str, value: Any) -> Any:
    current = getattr(_cfg, key, None)
    if current is None:
        return value
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes")
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


class HotConfigReloader:
    def __init__(
        self,
        poll_interval: float | None = None,
        config_path: str | None = None,
    ) -> None:
        self._poll_interval = poll_interval or _cfg.HOT_CONFIG_POLL_INTERVAL
        self._config_path = config_path or _cfg.HOT_CONFIG_PATH
        self._last_mtime: float = 0.0
        self._applied: dict[str, Any] = {}
        self._originals: dict[str, Any] = {}
        self._change_count: int = 0
        self._running: bool = False
        self._task: asyncio.Task | None = None

    # ── Public API ──

    def apply(self, overrides: dict[str, Any]) -> dict[str, Any]:
        """Apply allowlisted overrides. Returns {key: new_value} for keys that changed.

        A value that cannot be coerced to the key's type is rejected with a
        warning and the current value is kept.
        """
        applied = {}
        for key, raw_value in overrides.items():
            if key not in RELOADABLE_KEYS:
                logger.debug("hot_config: ignoring non-reloadable key %s", key)
                continue

            try:
                value = _coerce(key, raw_value)
            except (TypeError, ValueError):
                logger.warning("hot_config: rejecting %s=%r (bad type)", key, raw_value)
                continue
            if isinstance(value, int) and not isinstance(value, bool) and value < 0:
                logger.warning("hot_config: rejecting negative %s=%r", key, value)
                continue
            if key == "SLIPPAGE_PCT" and value >= 100:
                logger.warning("hot_config: rejecting SLIPPAGE_PCT=%r", value)
                continue

            old = getattr(_cfg, key)
            if old == value:
                continue

            self._originals.setdefault(key, old)
            setattr(_cfg, key, value)
            self._applied[key] = value
            self._change_count += 1
            applied[key] = value
            logger.info("hot_config: %s = %r (was %r)", key, value, old)

        return applied

    def reset(self) -> dict[str, Any]:
        """Restore every overridden key to its value before the first override."""
        reset_keys = {}
        for key, original in self._originals.items():
            old = getattr(_cfg, key)
            setattr(_cfg, key, original)
            reset_keys[key] = {"from": old, "to": original}
            logger.info("hot_config RESET: %s = %r (was %r)", key, original, old)
        self._originals.clear()
        self._applied.clear()
        return reset_keys

    def get_active_overrides(self) -> dict[str, Any]:
        return dict(self._applied)

    def get_status(self) -> dict[str, Any]:
        return {
            "enabled": _cfg.HOT_CONFIG_ENABLED,
            "running": self._running,
            "poll_interval": self._poll_interval,
            "config_path": self._config_path,
            "total_changes": self._change_count,
            "active_overrides": dict(self._applied),
        }

    # ── File watcher ──

    def _read_config_file(self) -> dict[str, Any] | None:
        if not self._config_path:
            return None
        try:
            mtime = os.path.getmtime(self._config_path)
            if mtime <= self._last_mtime:
                return None
            self._last_mtime = mtime
            with open(self._config_path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError):
            logger.warning("hot_config: failed to read config file", exc_info=True)
            return None
        if not isinstance(data, dict):
            logger.warning("hot_config: config file is not a JSON object")
            return None
        return data

    def poll_once(self) -> dict[str, Any]:
        overrides = self._read_config_file()
        if not overrides:
            return {}
        applied = self.apply(overrides)
        if applied:
            logger.info("hot_config: applied %d changes from file", len(applied))
        return applied

    async def _file_poll_loop(self) -> None:
        logger.info("hot_config: file poll loop started (path=%s, interval=%.1fs)",
                    self._config_path, self._poll_interval)
        while self._running:
            self.poll_once()
            await asyncio.sleep(self._poll_interval)

    # ── Lifecycle ──

    async def start(self) -> None:
        if not _cfg.HOT_CONFIG_ENABLED:
            logger.info("hot_config: disabled (HOT_CONFIG_ENABLED=false)")
            return
        if not self._config_path:
            logger.info("hot_config: no HOT_CONFIG_PATH set, nothing to watch")
            return

        self._running = True
        self._task = asyncio.create_task(self._file_poll_loop())
        logger.info("hot_config: reloader started")

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("hot_config: reloader stopped")


_reloader: HotConfigReloader | None = None


def get_reloader() -> HotConfigReloader:
    global _reloader
    if _reloader is None:
        _reloader = HotConfigReloader()
    return _reloader
