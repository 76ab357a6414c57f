import sys
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi import HTTPException

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from api import routes_health, routes_orders, routes_watch
from conftest import TOKEN_MINT, WATCHED, FakeCustody, FakeSigner
from models.trading import SOL_MINT
from services.monitor_supervisor import MonitorSupervisor
from utils.validation import OrderRequest, WatchRequest


def _order(**overrides) -> OrderRequest:
    values = dict(owner_id="alice", token_address=TOKEN_MINT, side="buy", amount=Decimal("0.5"))
    values.update(overrides)
    return OrderRequest(**values)


@pytest.fixture
def wired(monkeypatch, engine):
    custody = SimpleNamespace(key_custody=FakeCustody({"alice": FakeSigner()}))
    monkeypatch.setattr(routes_orders, "order_executor", engine)
    monkeypatch.setattr(routes_orders, "copy_trading_service", custody)
    monkeypatch.setattr(routes_health, "order_executor", engine)
    return engine


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_submit_order_returns_verified_result(wired):
    body = await routes_orders.submit_order(_order(max_slippage_bps=200))

    assert body["success"] is True
    assert body["result"]["provider"] == "jupiter"
    assert body["result"]["signature"] == "sig1"
    assert body["result"]["fees"]["platform_fee"] == "0.010000000"


@pytest.mark.asyncio
async def test_submit_order_without_custody_is_unavailable(monkeypatch, engine):
    monkeypatch.setattr(routes_orders, "order_executor", engine)
    monkeypatch.setattr(routes_orders, "copy_trading_service", SimpleNamespace(key_custody=None))

    with pytest.raises(HTTPException) as excinfo:
        await routes_orders.submit_order(_order())

    assert excinfo.value.status_code == 503


@pytest.mark.asyncio
async def test_submit_order_for_unknown_owner_is_forbidden(wired):
    with pytest.raises(HTTPException) as excinfo:
        await routes_orders.submit_order(_order(owner_id="mallory"))

    assert excinfo.value.status_code == 403


@pytest.mark.asyncio
async def test_submit_order_validation_failure_is_bad_request(wired, primary):
    with pytest.raises(HTTPException) as excinfo:
        await routes_orders.submit_order(_order(token_address=SOL_MINT))

    assert excinfo.value.status_code == 400
    assert primary.quote_calls == []


@pytest.mark.asyncio
async def test_failed_order_can_be_inspected_and_retried(wired, primary, secondary):
    primary.quote_error = "No route found for this token"
    secondary.quote_error = "No route found for this token"

    failed = await routes_orders.submit_order(_order())
    assert failed["success"] is False
    assert failed["error_type"] == "aggregated_execution_failure"
    assert failed["retry_available"] is True

    inspected = await routes_orders.get_last_failed_order("alice")
    assert inspected["has_recent_failed_order"] is True
    assert inspected["failed_order"]["amount"] == "0.5"

    primary.quote_error = None
    retried = await routes_orders.retry_last_failed_order("alice")
    assert retried["success"] is True

    with pytest.raises(HTTPException) as excinfo:
        await routes_orders.retry_last_failed_order("alice")
    assert excinfo.value.status_code == 404


# ---------------------------------------------------------------------------
# Watches
# ---------------------------------------------------------------------------


class _IdleMonitor:
    def __init__(self, address, on_event, on_health):
        self.address = address

    def start(self):
        pass

    async def stop(self):
        pass

    def get_status(self):
        return {"address": self.address}


@pytest.mark.asyncio
async def test_watch_register_list_and_remove(monkeypatch):
    supervisor = MonitorSupervisor(gateway=object(), monitor_factory=_IdleMonitor, reorder_hold_ms=0)
    monkeypatch.setattr(routes_watch, "monitor_supervisor", supervisor)

    created = await routes_watch.register_watch(WatchRequest(address=WATCHED, owner_id="alice"))
    assert created == {"address": WATCHED, "owner_id": "alice", "monitor_started": True, "owners": ["alice"]}

    listing = await routes_watch.list_watches()
    assert list(listing["supervisor"]["monitors"]) == [WATCHED]

    removed = await routes_watch.deregister_watch(WATCHED, owner_id="alice")
    assert removed["monitor_stopped"] is True


@pytest.mark.asyncio
async def test_watch_remove_rejects_bad_address():
    with pytest.raises(HTTPException) as excinfo:
        await routes_watch.deregister_watch("not_an_address!", owner_id=None)

    assert excinfo.value.status_code == 400


def test_watch_request_validates_address():
    with pytest.raises(ValueError):
        WatchRequest(address="0x1111111111111111111111111111111111111111", owner_id="alice")


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_provider_health_reports_order_and_breaker_state(wired):
    await routes_orders.submit_order(_order())

    status = await routes_health.provider_health_status()

    assert status["providers"] == ["jupiter", "raydium"]
    assert status["stats"]["confirmed"] == 1
    assert "jupiter" in status["latency"]


class _WebhookSupervisor:
    def __init__(self):
        self.batches = []

    async def ingest_webhook(self, items):
        self.batches.append(list(items))
        return {"received": len(items), "routed": 0, "unwatched": len(items), "malformed": 0}


@pytest.mark.asyncio
async def test_webhook_accepts_list_and_wrapped_payloads(monkeypatch):
    supervisor = _WebhookSupervisor()
    monkeypatch.setattr(routes_watch, "monitor_supervisor", supervisor)
    monkeypatch.setattr(routes_watch.settings, "HELIUS_WEBHOOK_AUTH_HEADER", "")

    first = await routes_watch.receive_webhook([{"signature": "sigA"}], authorization=None)
    second = await routes_watch.receive_webhook({"transactions": [{"signature": "sigB"}]}, authorization=None)

    assert first["received"] == 1 and second["received"] == 1
    assert supervisor.batches == [[{"signature": "sigA"}], [{"signature": "sigB"}]]


@pytest.mark.asyncio
async def test_webhook_rejects_bad_authorization_and_payload(monkeypatch):
    supervisor = _WebhookSupervisor()
    monkeypatch.setattr(routes_watch, "monitor_supervisor", supervisor)
    monkeypatch.setattr(routes_watch.settings, "HELIUS_WEBHOOK_AUTH_HEADER", "secret-token")

    with pytest.raises(HTTPException) as excinfo:
        await routes_watch.receive_webhook([{"signature": "sigA"}], authorization="wrong")
    assert excinfo.value.status_code == 401

    with pytest.raises(HTTPException) as excinfo:
        await routes_watch.receive_webhook({"transactions": "sigA"}, authorization="secret-token")
    assert excinfo.value.status_code == 400

    accepted = await routes_watch.receive_webhook([], authorization="secret-token")
    assert accepted["received"] == 0
    assert supervisor.batches == [[]]
