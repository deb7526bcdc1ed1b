"""Tests for FastAPI endpoints using TestClient."""

import pytest
from fastapi.testclient import TestClient

import navarb.config as cfg
from api import deps
from api.main import app
from navarb.balance_ledger import BalanceLog, LedgerStore
from navarb.chain import Receipt, ValuationReading
from navarb.correction_driver import CorrectionDriver
from navarb.finalization import PendingFinalizationStore
from navarb.fixed_point import PRICE_SCALE, price_to_sqrt_price_x96
from navarb.sizing import PoolState

client = TestClient(app)

POOL = "pool-api"


class StubReader:
    def __init__(self, price_e18, tick):
        self.pool = PoolState(
            liquidity=10 ** 12,
            sqrt_price_x96=price_to_sqrt_price_x96(price_e18, 6, 6),
            tick=tick,
            token0_decimals=6,
            token1_decimals=6,
            pool_id=POOL,
        )
        self.value = 1_000_000_000

    async def read_pool_state(self):
        return self.pool

    async def read_reference_price(self):
        return PRICE_SCALE

    async def read_valuation(self):
        self.value += 500_000
        return ValuationReading(balance_token0=0, balance_token1=self.value, share_price=PRICE_SCALE)


class StubClient:
    def __init__(self):
        self.count = 0

    async def chain_time(self):
        return 1_000

    async def estimate(self, action, params):
        return 200_000

    async def submit(self, action, params, gas_limit):
        self.count += 1
        return f"0xapi{self.count}"

    async def wait(self, pending_ref):
        return Receipt(tx_ref=pending_ref, block_number=1, gas_used=150_000)


@pytest.fixture(autouse=True)
def tunables(monkeypatch):
    monkeypatch.setattr(cfg, "MONITOR_ENABLED", True)
    monkeypatch.setattr(cfg, "ARB_TRIGGER_BPS", 500)
    monkeypatch.setattr(cfg, "SLIPPAGE_PCT", 1)
    monkeypatch.setattr(cfg, "GAS_LIMIT_MARGIN_PCT", 120)
    monkeypatch.setattr(cfg, "DEADLINE_MARGIN_SECONDS", 3_000)
    monkeypatch.setattr(cfg, "REDEMPTION_DELAY_SECONDS", 0)
    monkeypatch.setenv("NAVARB_RATE_LIMIT_WRITE", "10000")
    monkeypatch.setenv("NAVARB_RATE_LIMIT_READ", "10000")
    monkeypatch.delenv("NAVARB_API_KEYS", raising=False)
    # Rebuild the middleware stack so each test gets fresh rate-limit windows.
    app.middleware_stack = None


def _wire(tmp_path, price_e18, tick):
    driver = CorrectionDriver(
        StubReader(price_e18, tick),
        StubClient(),
        BalanceLog.open(POOL, LedgerStore(tmp_path)),
        PendingFinalizationStore.for_pool(tmp_path, POOL),
        pool_id=POOL,
        token0_decimals=6,
        token1_decimals=6,
    )
    deps.set_driver(driver)
    return driver


@pytest.fixture
def above_nav(tmp_path):
    driver = _wire(tmp_path, 1_060_000_000_000_000_000, 582)
    yield driver
    deps.set_driver(None)


@pytest.fixture
def below_nav(tmp_path):
    driver = _wire(tmp_path, 940_000_000_000_000_000, -619)
    yield driver
    deps.set_driver(None)


class TestHealthAndDocs:
    def test_health(self, above_nav):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "ok"
        assert data["driver"] == "idle"

    def test_openapi_schema(self):
        r = client.get("/openapi.json")
        assert r.status_code == 200
        assert "/api/v1/arb/check" in r.json()["paths"]

    def test_metrics_exposed(self):
        r = client.get("/metrics/")
        assert r.status_code == 200
        assert "navarb_cycle_outcomes_total" in r.text

    def test_request_id_echoed(self):
        r = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert r.headers["X-Request-ID"] == "req-123"


class TestCorrectionCycle:
    def test_check_confirms_push_down(self, above_nav):
        r = client.post("/api/v1/arb/check", json={"source": "test"})
        assert r.status_code == 200, r.text
        data = r.json()
        assert data["outcome"] == "confirmed"
        assert data["source"] == "test"
        assert data["tx_ref"] == "0xapi1"
        assert data["gas_limit"] == 240_000
        assert data["ledger_entry"]["tx_ref"] == "0xapi1"

    def test_check_without_body(self, above_nav):
        r = client.post("/api/v1/arb/check")
        assert r.status_code == 200
        assert r.json()["source"] == "manual"

    def test_check_finalizes_push_up(self, below_nav):
        r = client.post("/api/v1/arb/check")
        assert r.status_code == 200
        data = r.json()
        assert data["outcome"] == "finalized"
        assert data["pending"]["status"] == "finalized"

    def test_monitor_disabled(self, above_nav, monkeypatch):
        monkeypatch.setattr(cfg, "MONITOR_ENABLED", False)
        r = client.post("/api/v1/arb/check")
        assert r.json()["outcome"] == "disabled"

    def test_event_for_pool_triggers_cycle(self, above_nav):
        r = client.post("/api/v1/arb/events", json={"kind": "nav_updated", "pool_id": POOL, "share_price": str(PRICE_SCALE)})
        assert r.status_code == 200
        data = r.json()
        assert data["outcome"] == "confirmed"
        assert data["source"] == "nav_updated"

    def test_event_for_other_pool_ignored(self, above_nav):
        r = client.post("/api/v1/arb/events", json={"kind": "price_changed", "pool_id": "elsewhere"})
        assert r.json()["outcome"] == "ignored"

    def test_invalid_event(self, above_nav):
        r = client.post("/api/v1/arb/events", json={"kind": "bogus", "pool_id": POOL})
        assert r.status_code == 200
        data = r.json()
        assert data["outcome"] == "invalid_event"
        assert data["error"]

    def test_status(self, above_nav):
        client.post("/api/v1/arb/check")
        r = client.get("/api/v1/arb/status")
        assert r.status_code == 200
        data = r.json()
        assert data["driver"]["pool_id"] == POOL
        assert data["driver"]["last_cycle"]["outcome"] == "confirmed"
        assert "running" in data["hot_config"]

    def test_check_without_driver_is_503(self):
        deps.set_driver(None)
        r = client.post("/api/v1/arb/check")
        assert r.status_code == 503


class TestLedger:
    def test_summary_and_entries(self, above_nav):
        client.post("/api/v1/arb/check")
        client.post("/api/v1/arb/check")

        r = client.get("/api/v1/arb/summary")
        assert r.status_code == 200
        summary = r.json()
        assert summary["pool_id"] == POOL
        assert summary["has_data"] is True
        assert summary["trade_count"] == 2
        assert summary["total_profit"] == 500_000

        r = client.get("/api/v1/arb/entries", params={"n": 1})
        data = r.json()
        assert data["count"] == 1
        assert data["entries"][0]["total_value"] == 1_001_000_000

    def test_entries_bounds(self, above_nav):
        assert client.get("/api/v1/arb/entries", params={"n": 0}).status_code == 422
        assert client.get("/api/v1/arb/entries", params={"n": 501}).status_code == 422

    def test_export_csv(self, above_nav):
        client.post("/api/v1/arb/check")
        r = client.get("/api/v1/arb/export")
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/csv")
        assert POOL in r.headers["content-disposition"]
        assert r.text.splitlines()[0].startswith("timestamp,balance_token0")

    def test_reset(self, above_nav):
        client.post("/api/v1/arb/check")
        r = client.post("/api/v1/arb/reset")
        assert r.status_code == 200
        assert r.json() == {"pool_id": POOL, "reset": True, "trade_count": 0}
        assert client.get("/api/v1/arb/summary").json()["has_data"] is False


class TestPending:
    def test_list_and_retry_conflict(self, below_nav):
        record_id = client.post("/api/v1/arb/check").json()["pending"]["record_id"]

        r = client.get("/api/v1/arb/pending")
        assert r.status_code == 200
        records = r.json()["records"]
        assert [rec["record_id"] for rec in records] == [record_id]

        r = client.get("/api/v1/arb/pending", params={"status": "failed"})
        assert r.json()["records"] == []

        r = client.post(f"/api/v1/arb/pending/{record_id}/finalize")
        assert r.status_code == 409

    def test_retry_unknown_record(self, below_nav):
        r = client.post("/api/v1/arb/pending/nope/finalize")
        assert r.status_code == 404

    def test_bad_status_filter(self, below_nav):
        assert client.get("/api/v1/arb/pending", params={"status": "bogus"}).status_code == 422


class TestConfigAndSecurity:
    def test_config(self, above_nav):
        r = client.get("/api/v1/arb/config")
        assert r.status_code == 200
        data = r.json()
        assert data["arb_trigger_bps"] == 500
        assert data["slippage_pct"] == 1
        assert isinstance(data["active_overrides"], dict)

    def test_api_key_required_when_configured(self, above_nav, monkeypatch):
        monkeypatch.setenv("NAVARB_API_KEYS", "k1,k2")
        assert client.get("/api/v1/arb/config").status_code == 401
        assert client.get("/api/v1/arb/config", headers={"X-API-Key": "bad"}).status_code == 401
        assert client.get("/api/v1/arb/config", headers={"X-API-Key": "k2"}).status_code == 200

    def test_health_open_with_api_keys(self, monkeypatch):
        monkeypatch.setenv("NAVARB_API_KEYS", "k1")
        assert client.get("/health").status_code == 200

    def test_rate_limit(self, above_nav, monkeypatch):
        monkeypatch.setenv("NAVARB_RATE_LIMIT_READ", "2")
        headers = {"X-Forwarded-For": "203.0.113.9"}
        assert client.get("/api/v1/arb/config", headers=headers).status_code == 200
        assert client.get("/api/v1/arb/config", headers=headers).status_code == 200
        r = client.get("/api/v1/arb/config", headers=headers)
        assert r.status_code == 429
        assert "Retry-After" in r.headers

    def test_correction_budget_separate_from_reads(self, above_nav, monkeypatch):
        monkeypatch.setenv("NAVARB_RATE_LIMIT_WRITE", "1")
        headers = {"X-Forwarded-For": "203.0.113.20"}
        r = client.post("/api/v1/arb/check", headers=headers)
        assert r.status_code == 200
        assert r.headers["X-RateLimit-Scope"] == "correction"
        r = client.post("/api/v1/arb/reset", headers=headers)
        assert r.status_code == 429
        assert r.headers["X-RateLimit-Scope"] == "correction"
        r = client.get("/api/v1/arb/summary", headers=headers)
        assert r.status_code == 200
        assert r.headers["X-RateLimit-Scope"] == "read"

    def test_finalize_counts_as_correction(self, below_nav, monkeypatch):
        monkeypatch.setenv("NAVARB_RATE_LIMIT_WRITE", "1")
        headers = {"X-Forwarded-For": "203.0.113.21"}
        assert client.post("/api/v1/arb/check", headers=headers).status_code == 200
        r = client.post("/api/v1/arb/pending/missing/finalize", headers=headers)
        assert r.status_code == 429

    def test_rate_limit_keyed_by_api_key(self, above_nav, monkeypatch):
        monkeypatch.setenv("NAVARB_API_KEYS", "k1,k2")
        monkeypatch.setenv("NAVARB_RATE_LIMIT_READ", "1")
        shared = {"X-Forwarded-For": "203.0.113.22"}
        assert client.get("/api/v1/arb/config", headers={**shared, "X-API-Key": "k1"}).status_code == 200
        assert client.get("/api/v1/arb/config", headers={**shared, "X-API-Key": "k2"}).status_code == 200
        assert client.get("/api/v1/arb/config", headers={**shared, "X-API-Key": "k1"}).status_code == 429

    def test_metrics_not_metered(self, monkeypatch):
        monkeypatch.setenv("NAVARB_RATE_LIMIT_READ", "1")
        headers = {"X-Forwarded-For": "203.0.113.23"}
        for _ in range(3):
            r = client.get("/metrics/", headers=headers)
            assert r.status_code == 200
            assert "X-RateLimit-Scope" not in r.headers


class TestLifespan:
    def test_startup_records_opening_balance(self, above_nav):
        with TestClient(app):
            pass
        entries = above_nav.ledger.entries
        assert len(entries) == 1
        assert entries[0].direction is None
        assert entries[0].tx_ref is None
        assert above_nav.ledger.starting_balance == entries[0].total_value

    def test_startup_keeps_existing_ledger(self, above_nav):
        assert client.post("/api/v1/arb/check").status_code == 200
        with TestClient(app):
            pass
        assert above_nav.ledger.trade_count == 1
