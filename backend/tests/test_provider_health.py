import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest

from models.trading import BreakerState
from services.provider_health import RECENT_TRIPS_KEPT, BreakerConfig, ProviderCircuitBreaker


@pytest.fixture
def breaker(clock):
    return ProviderCircuitBreaker(
        config=BreakerConfig(failure_threshold=3, failure_window_seconds=30, cooldown_seconds=60),
        clock=clock,
        persist_trips=False,
    )


def test_breaker_opens_after_threshold_failures(breaker):
    assert breaker.record_failure("jupiter", "timeout") is None
    assert breaker.record_failure("jupiter", "timeout") is None
    trip = breaker.record_failure("jupiter", "timeout")

    assert trip is not None
    assert trip.provider_id == "jupiter"
    assert trip.consecutive_failures == 3
    assert breaker.is_open("jupiter")
    assert not breaker.is_open("raydium")


def test_failures_outside_window_do_not_count(breaker, clock):
    breaker.record_failure("jupiter")
    breaker.record_failure("jupiter")
    clock.advance(31)
    breaker.record_failure("jupiter")

    assert not breaker.is_open("jupiter")
    assert breaker.snapshot("jupiter").consecutive_failures == 1


def test_success_resets_counter(breaker):
    breaker.record_failure("jupiter")
    breaker.record_failure("jupiter")
    breaker.record_success("jupiter")
    breaker.record_failure("jupiter")

    assert breaker.snapshot("jupiter").consecutive_failures == 1
    assert not breaker.is_open("jupiter")


def test_cooldown_closes_breaker_with_fresh_counter(breaker, clock):
    for _ in range(3):
        breaker.record_failure("jupiter")
    clock.advance(59)
    assert breaker.is_open("jupiter")

    clock.advance(1)
    snapshot = breaker.snapshot("jupiter")
    assert snapshot.state == BreakerState.CLOSED
    assert snapshot.consecutive_failures == 0


def test_failure_while_open_restarts_cooldown(breaker, clock):
    for _ in range(3):
        breaker.record_failure("jupiter")
    clock.advance(50)
    assert breaker.record_failure("jupiter") is None

    clock.advance(20)
    assert breaker.is_open("jupiter")
    clock.advance(40)
    assert not breaker.is_open("jupiter")


def test_least_recently_opened(breaker, clock):
    breaker.trip("raydium")
    clock.advance(5)
    breaker.trip("jupiter")

    assert breaker.least_recently_opened(["jupiter", "raydium"]) == "raydium"


def test_status_reports_remaining_cooldown(breaker, clock):
    breaker.trip("jupiter", reason="manual")
    clock.advance(15)

    status = breaker.get_status()

    assert status["providers"]["jupiter"]["state"] == "open"
    assert status["providers"]["jupiter"]["cooldown_remaining_seconds"] == 45.0
    assert status["total_trips_recorded"] == 1
    assert status["config"]["failure_threshold"] == 3


def test_trip_history_is_bounded_but_count_keeps_growing(breaker):
    for i in range(RECENT_TRIPS_KEPT + 10):
        breaker.trip("jupiter", reason=f"manual-{i}")

    status = breaker.get_status()

    assert status["total_trips_recorded"] == RECENT_TRIPS_KEPT + 10
    assert len(status["recent_trips"]) == RECENT_TRIPS_KEPT
    assert status["recent_trips"][0]["reason"] == "manual-10"
    assert status["recent_trips"][-1]["reason"] == f"manual-{RECENT_TRIPS_KEPT + 9}"


def test_reset_closes_every_breaker(breaker):
    breaker.trip("jupiter")
    breaker.trip("raydium")

    breaker.reset()

    assert not breaker.is_open("jupiter")
    assert not breaker.is_open("raydium")


@pytest.mark.asyncio
async def test_save_trip_event_skipped_when_persistence_disabled(breaker, monkeypatch):
    import services.provider_health as module

    def fail_session():
        raise AssertionError("database must not be touched")

    monkeypatch.setattr(module, "AsyncSessionLocal", fail_session)
    await breaker.save_trip_event(breaker.trip("jupiter"))
