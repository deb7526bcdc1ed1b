"""Tests for navarb/hot_config.py — runtime tuning of correction thresholds."""
import json
import os

import pytest

import navarb.config as cfg
from navarb.hot_config import RELOADABLE_KEYS, HotConfigReloader, _coerce


@pytest.fixture
def reloader():
    r = HotConfigReloader(poll_interval=0.1)
    yield r
    r.reset()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "hot_config.json"
    path.write_text("{}")
    return path


def test_apply_reloadable_key(reloader):
    new_value = cfg.ARB_TRIGGER_BPS + 25
    applied = reloader.apply({"ARB_TRIGGER_BPS": new_value})
    assert applied == {"ARB_TRIGGER_BPS": new_value}
    assert cfg.ARB_TRIGGER_BPS == new_value
    assert reloader.get_active_overrides() == {"ARB_TRIGGER_BPS": new_value}


def test_apply_ignores_pool_identity(reloader):
    original = cfg.POOL_ID
    applied = reloader.apply({"POOL_ID": "other-pool", "TOKEN0_DECIMALS": 8, "LEDGER_DIR": "/tmp/x"})
    assert applied == {}
    assert cfg.POOL_ID == original


def test_apply_ignores_unknown_key(reloader):
    assert reloader.apply({"TOTALLY_FAKE_KEY_XYZ": 42}) == {}


def test_apply_no_change_when_same_value(reloader):
    assert reloader.apply({"SLIPPAGE_PCT": cfg.SLIPPAGE_PCT}) == {}


def test_apply_coerces_string_numbers(reloader):
    applied = reloader.apply({"DEADLINE_MARGIN_SECONDS": str(cfg.DEADLINE_MARGIN_SECONDS + 60)})
    assert isinstance(applied["DEADLINE_MARGIN_SECONDS"], int)


def test_apply_bool_coercion(reloader):
    target = not cfg.MONITOR_ENABLED
    applied = reloader.apply({"MONITOR_ENABLED": "true" if target else "false"})
    assert applied == {"MONITOR_ENABLED": target}
    assert cfg.MONITOR_ENABLED is target


@pytest.mark.parametrize("overrides", [
    {"ARB_TRIGGER_BPS": "not-a-number"},
    {"ARB_TRIGGER_BPS": -1},
    {"SLIPPAGE_PCT": 100},
    {"REDEMPTION_DELAY_SECONDS": -30},
])
def test_apply_rejects_bad_values(reloader, overrides):
    before = {k: getattr(cfg, k) for k in overrides}
    assert reloader.apply(overrides) == {}
    for key, value in before.items():
        assert getattr(cfg, key) == value


def test_reset_restores_first_original(reloader):
    original = cfg.GAS_LIMIT_MARGIN_PCT
    reloader.apply({"GAS_LIMIT_MARGIN_PCT": original + 10})
    reloader.apply({"GAS_LIMIT_MARGIN_PCT": original + 20})

    reset = reloader.reset()
    assert reset["GAS_LIMIT_MARGIN_PCT"] == {"from": original + 20, "to": original}
    assert cfg.GAS_LIMIT_MARGIN_PCT == original
    assert reloader.get_active_overrides() == {}


def test_poll_once_reads_file(config_file):
    r = HotConfigReloader(config_path=str(config_file))
    try:
        config_file.write_text(json.dumps({"ARB_TRIGGER_BPS": cfg.ARB_TRIGGER_BPS + 1, "POOL_ID": "x"}))
        applied = r.poll_once()
        assert list(applied) == ["ARB_TRIGGER_BPS"]

        # unchanged mtime is not re-read
        assert r.poll_once() == {}
    finally:
        r.reset()


def test_poll_once_picks_up_rewrite(config_file):
    r = HotConfigReloader(config_path=str(config_file))
    try:
        config_file.write_text(json.dumps({"SLIPPAGE_PCT": 2}))
        r.poll_once()
        config_file.write_text(json.dumps({"SLIPPAGE_PCT": 3}))
        mtime = os.path.getmtime(config_file) + 5
        os.utime(config_file, (mtime, mtime))
        assert r.poll_once() == {"SLIPPAGE_PCT": 3}
    finally:
        r.reset()


def test_poll_once_tolerates_bad_file(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    assert HotConfigReloader(config_path=str(path)).poll_once() == {}

    path.write_text("[1, 2]")
    assert HotConfigReloader(config_path=str(path)).poll_once() == {}


def test_poll_once_missing_file(tmp_path):
    r = HotConfigReloader(config_path=str(tmp_path / "absent.json"))
    assert r.poll_once() == {}


def test_coerce_matches_current_type():
    assert _coerce("ARB_TRIGGER_BPS", "750") == 750
    assert _coerce("MONITOR_ENABLED", "0") is False
    assert _coerce("MONITOR_ENABLED", 1) is True
    with pytest.raises(ValueError):
        _coerce("SLIPPAGE_PCT", "abc")


def test_reloadable_keys_exclude_identity():
    assert "POOL_ID" not in RELOADABLE_KEYS
    assert "LEDGER_DIR" not in RELOADABLE_KEYS
    assert "ARB_TRIGGER_BPS" in RELOADABLE_KEYS


@pytest.mark.asyncio
async def test_start_noop_when_disabled(monkeypatch, config_file):
    monkeypatch.setattr(cfg, "HOT_CONFIG_ENABLED", False)
    r = HotConfigReloader(config_path=str(config_file))
    await r.start()
    assert r.get_status()["running"] is False
    await r.stop()


@pytest.mark.asyncio
async def test_start_and_stop(monkeypatch, config_file):
    monkeypatch.setattr(cfg, "HOT_CONFIG_ENABLED", True)
    r = HotConfigReloader(poll_interval=0.05, config_path=str(config_file))
    await r.start()
    assert r.get_status()["running"] is True
    await r.stop()
    status = r.get_status()
    assert status["running"] is False
    assert status["config_path"] == str(config_file)
