import asyncio
import sys
from decimal import Decimal
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import TOKEN_MINT, WATCHED, FakeTransport, enhanced_transaction, push_notification
from models.trading import SOL_MINT, EventChannel
from services.exceptions import TransportError
from services.wallet_activity_monitor import HeliusTransactionStream, WalletActivityMonitor, _exception_text


def _buy_push(signature, slot=100):
    return push_notification(
        WATCHED,
        signature,
        lamport_change=-2_000_000_000,
        token_mint=TOKEN_MINT,
        token_pre="0",
        token_post="1000",
        slot=slot,
    )


def _buy_enhanced(signature, slot=100):
    return enhanced_transaction(
        WATCHED,
        signature,
        native_change=-2_000_000_000,
        token_mint=TOKEN_MINT,
        token_raw_change="1000000000",
        decimals=6,
        slot=slot,
    )


async def _wait_for(predicate, timeout: float = 1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def events():
    return []


@pytest.fixture
def monitor(gateway, events):
    return WalletActivityMonitor(
        WATCHED,
        on_event=events.append,
        gateway=gateway,
        transport=FakeTransport(),
        poll_interval=60,
        poll_limit=20,
        seen_capacity=1000,
        reconnect_delay=0,
        max_reconnect_delay=5,
        degraded_after=3,
    )


def test_exception_text_falls_back_to_repr_for_empty_message():
    err = TimeoutError()
    assert _exception_text(err) == repr(err)


def test_stream_url_and_subscribe_request():
    stream = HeliusTransactionStream(ws_url="wss://stream.test", api_key="k1", ping_interval=20)

    assert stream._url() == "wss://stream.test?api-key=k1"
    request = stream.subscribe_request(WATCHED)
    assert request["method"] == "transactionSubscribe"
    assert request["params"][0]["accountInclude"] == [WATCHED]
    assert request["params"][1]["commitment"] == "confirmed"


@pytest.mark.asyncio
async def test_push_purchase_is_classified_as_acquisition(monitor, events):
    event = await monitor.handle_push_notification(_buy_push("sigA", slot=321))

    assert event is not None
    assert events == [event]
    assert event.wallet_address == WATCHED
    assert event.acquired_mint == TOKEN_MINT
    assert event.acquired_amount == Decimal("1000")
    assert event.paid_mint == SOL_MINT
    assert event.paid_amount == Decimal("2")
    assert event.channel == EventChannel.PUSH
    assert event.slot == 321


@pytest.mark.asyncio
async def test_same_signature_on_both_channels_emits_once(monitor, gateway, events):
    await monitor.handle_push_notification(_buy_push("sigA"))
    gateway.address_transactions["SWAP"] = [_buy_enhanced("sigA"), _buy_enhanced("sigB", slot=101)]

    emitted = await monitor.poll_once()

    assert [e.source_signature for e in emitted] == ["sigB"]
    assert [e.source_signature for e in events] == ["sigA", "sigB"]
    assert events[1].channel == EventChannel.POLL
    assert monitor.get_status()["stats"]["duplicates_skipped"] == 1


@pytest.mark.asyncio
async def test_webhook_shares_seen_set_with_push(monitor, events):
    await monitor.handle_push_notification(_buy_push("sigA"))

    assert await monitor.handle_webhook_transaction(_buy_enhanced("sigA")) is None
    event = await monitor.handle_webhook_transaction(_buy_enhanced("sigB", slot=101))
    assert await monitor.handle_push_notification(_buy_push("sigB", slot=101)) is None

    assert [e.source_signature for e in events] == ["sigA", "sigB"]
    assert event.channel == EventChannel.RECONCILED
    assert event.paid_amount == Decimal("2")
    assert monitor.get_status()["stats"]["duplicates_skipped"] == 2


@pytest.mark.asyncio
async def test_webhook_item_without_signature_is_skipped(monitor, events):
    assert await monitor.handle_webhook_transaction({"accountData": []}) is None
    assert await monitor.handle_webhook_transaction("not-an-object") is None

    assert events == []
    assert monitor.get_status()["stats"]["malformed_skipped"] == 2


@pytest.mark.asyncio
async def test_poll_processes_oldest_slot_first_and_merges_types(monitor, gateway, events):
    gateway.address_transactions["SWAP"] = [_buy_enhanced("s3", slot=300), _buy_enhanced("s1", slot=100)]
    gateway.address_transactions["TRANSFER"] = [_buy_enhanced("s2", slot=200), _buy_enhanced("s1", slot=100)]

    await monitor.poll_once()

    assert [e.source_signature for e in events] == ["s1", "s2", "s3"]
    assert events[0].paid_amount == Decimal("2")


@pytest.mark.asyncio
async def test_malformed_transaction_is_skipped_without_blocking_others(monitor, events):
    broken = {"signature": "bad", "slot": 5, "transaction": {"transaction": {"signatures": ["bad"]}}}

    assert await monitor.handle_push_notification(broken) is None
    assert await monitor.handle_push_notification({"slot": 6}) is None
    await monitor.handle_push_notification(_buy_push("good"))

    assert [e.source_signature for e in events] == ["good"]
    assert monitor.get_status()["stats"]["malformed_skipped"] == 2


@pytest.mark.asyncio
async def test_disposal_and_transfers_do_not_emit(monitor, events):
    sell = push_notification(
        WATCHED, "sell", lamport_change=3_000_000_000, token_mint=TOKEN_MINT, token_pre="1000", token_post="0"
    )
    airdrop = push_notification(WATCHED, "airdrop", token_mint=TOKEN_MINT, token_pre="0", token_post="50")
    failed = push_notification(
        WATCHED,
        "failed",
        lamport_change=-2_000_000_000,
        token_mint=TOKEN_MINT,
        token_pre="0",
        token_post="1000",
        err={"InstructionError": [0, "Custom"]},
    )

    for notification in (sell, airdrop, failed):
        assert await monitor.handle_push_notification(notification) is None
    assert events == []


@pytest.mark.asyncio
async def test_dust_payment_is_not_a_purchase(monitor, events):
    dust = push_notification(WATCHED, "dust", lamport_change=-10, token_mint=TOKEN_MINT, token_pre="0", token_post="1")

    assert await monitor.handle_push_notification(dust) is None


@pytest.mark.asyncio
async def test_seen_set_evicts_least_recently_seen(gateway, events):
    monitor = WalletActivityMonitor(WATCHED, on_event=events.append, gateway=gateway, transport=FakeTransport(), seen_capacity=2)

    assert monitor._check_and_mark("s1")
    assert monitor._check_and_mark("s2")
    assert not monitor._check_and_mark("s1")  # refreshes s1
    assert monitor._check_and_mark("s3")

    assert monitor.has_seen("s1")
    assert not monitor.has_seen("s2")
    assert monitor.has_seen("s3")


@pytest.mark.asyncio
async def test_push_failures_degrade_and_recover(monitor, events):
    health = []
    monitor._on_health = lambda address, healthy: health.append((address, healthy))
    transport = monitor.transport
    transport.connect_errors = [TransportError("connection reset") for _ in range(3)]
    transport.queue.put_nowait(_buy_push("afterRecovery"))

    monitor.start()
    try:
        await _wait_for(lambda: len(events) == 1)
    finally:
        await monitor.stop()

    assert health == [(WATCHED, False), (WATCHED, True)]
    assert transport.subscriptions == 4
    assert monitor.get_status()["stats"]["reconnects"] == 3
    assert not monitor.degraded
    assert not monitor.running


@pytest.mark.asyncio
async def test_quiet_stream_recovers_once_subscription_is_confirmed(monitor, events):
    health = []
    monitor._on_health = lambda address, healthy: health.append(healthy)
    transport = monitor.transport
    transport.connect_errors = [TransportError("connection refused") for _ in range(3)]

    monitor.start()
    try:
        await _wait_for(lambda: transport.connected == 1)
        await asyncio.sleep(0.01)

        assert health == [False, True]
        assert not monitor.degraded
        assert monitor.get_status()["consecutive_push_failures"] == 0
        assert events == []
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_confirmed_stream_that_drops_starts_a_new_failure_streak(monitor):
    health = []
    monitor._on_health = lambda address, healthy: health.append(healthy)
    transport = monitor.transport
    transport.queue.put_nowait(TransportError("idle connection closed"))

    monitor.start()
    try:
        await _wait_for(lambda: transport.connected == 2)
    finally:
        await monitor.stop()

    assert health == []
    assert monitor.get_status()["stats"]["reconnects"] == 1
    assert monitor.get_status()["consecutive_push_failures"] == 0


@pytest.mark.asyncio
async def test_poll_errors_do_not_stop_loop(monitor, gateway):
    calls = []

    async def flaky(address, tx_type, limit):
        calls.append(tx_type)
        raise TransportError("429 from enhanced API")

    gateway.get_address_transactions = flaky
    monitor.poll_interval = 0.001

    monitor.start()
    try:
        await _wait_for(lambda: monitor.get_status()["stats"]["poll_errors"] >= 2)
    finally:
        await monitor.stop()

    assert len(calls) >= 2
