import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from config import settings
from models.database import AsyncSessionLocal, ProviderTrip
from models.trading import BreakerState, ProviderHealth
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("provider_health")

RECENT_TRIPS_KEPT = 50


# ==================== Data Classes ====================


@dataclass
class BreakerConfig:
    """Thresholds for the per-provider circuit breaker."""

    failure_threshold: int = 5  # consecutive failures that open the breaker
    failure_window_seconds: float = 120.0  # the N failures must fall inside this window
    cooldown_seconds: float = 60.0  # how long an opened breaker stays open

    @classmethod
    def from_settings(cls) -> "BreakerConfig":
        return cls(
            failure_threshold=settings.BREAKER_FAILURE_THRESHOLD,
            failure_window_seconds=settings.BREAKER_FAILURE_WINDOW_SECONDS,
            cooldown_seconds=settings.BREAKER_COOLDOWN_SECONDS,
        )


@dataclass
class ProviderTripEvent:
    """A breaker transition from closed to open."""

    provider_id: str
    reason: str
    consecutive_failures: int
    opened_at: datetime
    cooldown_seconds: float


# ==================== Provider Circuit Breaker ====================


class ProviderCircuitBreaker:
    """
    Process-wide health registry for execution providers.

    Every attempt outcome feeds ``record_success`` / ``record_failure``.
    ``failure_threshold`` consecutive failures inside ``failure_window_seconds``
    open the breaker for ``cooldown_seconds``; once the cool-down elapses the
    breaker closes with a fresh counter. A success always closes it.

    Each provider has its own lock, so bookkeeping for one provider never
    waits on another.
    """

    def __init__(
        self,
        config: Optional[BreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        persist_trips: bool = True,
    ):
        self.config = config or BreakerConfig.from_settings()
        self.persist_trips = persist_trips
        self._clock = clock
        self._health: dict[str, ProviderHealth] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._recent_trips: deque[ProviderTripEvent] = deque(maxlen=RECENT_TRIPS_KEPT)
        self._trips_recorded = 0

    def _entry(self, provider_id: str) -> tuple[threading.Lock, ProviderHealth]:
        lock = self._locks.get(provider_id)
        if lock is None:
            with self._registry_lock:
                lock = self._locks.setdefault(provider_id, threading.Lock())
                self._health.setdefault(provider_id, ProviderHealth(provider_id=provider_id))
        return lock, self._health[provider_id]

    def _expire_locked(self, health: ProviderHealth, now: float) -> None:
        if health.state == BreakerState.OPEN and health.opened_at is not None:
            if now - health.opened_at >= self.config.cooldown_seconds:
                logger.info(
                    "Provider breaker cool-down elapsed",
                    provider=health.provider_id,
                    cooldown_seconds=self.config.cooldown_seconds,
                )
                health.state = BreakerState.CLOSED
                health.opened_at = None
                health.consecutive_failures = 0
                health.failure_times.clear()

    def record_success(self, provider_id: str) -> None:
        lock, health = self._entry(provider_id)
        with lock:
            if health.state == BreakerState.OPEN:
                logger.info("Provider breaker closed after success", provider=provider_id)
            health.state = BreakerState.CLOSED
            health.opened_at = None
            health.consecutive_failures = 0
            health.failure_times.clear()

    def record_failure(self, provider_id: str, reason: str = "") -> Optional[ProviderTripEvent]:
        """Count a failure; returns a trip event when this failure opens (or re-opens) the breaker."""
        lock, health = self._entry(provider_id)
        with lock:
            now = self._clock()
            self._expire_locked(health, now)
            health.last_failure_reason = reason or None
            health.failure_times.append(now)
            cutoff = now - self.config.failure_window_seconds
            while health.failure_times and health.failure_times[0] < cutoff:
                health.failure_times.popleft()
            health.consecutive_failures = len(health.failure_times)

            if health.state == BreakerState.OPEN:
                # A failed degraded attempt restarts the cool-down.
                health.opened_at = now
                return None
            if health.consecutive_failures < self.config.failure_threshold:
                return None

            health.state = BreakerState.OPEN
            health.opened_at = now
            health.trips += 1
            event = ProviderTripEvent(
                provider_id=provider_id,
                reason=reason or "consecutive_failures",
                consecutive_failures=health.consecutive_failures,
                opened_at=utcnow(),
                cooldown_seconds=self.config.cooldown_seconds,
            )
            self._recent_trips.append(event)
            self._trips_recorded += 1
        logger.warning(
            "Provider breaker opened",
            provider=provider_id,
            consecutive_failures=event.consecutive_failures,
            cooldown_seconds=self.config.cooldown_seconds,
            reason=event.reason,
        )
        return event

    def is_open(self, provider_id: str) -> bool:
        lock, health = self._entry(provider_id)
        with lock:
            self._expire_locked(health, self._clock())
            return health.state == BreakerState.OPEN

    def snapshot(self, provider_id: str) -> ProviderHealth:
        lock, health = self._entry(provider_id)
        with lock:
            self._expire_locked(health, self._clock())
            return ProviderHealth(
                provider_id=health.provider_id,
                consecutive_failures=health.consecutive_failures,
                opened_at=health.opened_at,
                state=health.state,
                last_failure_reason=health.last_failure_reason,
                trips=health.trips,
            )

    def least_recently_opened(self, provider_ids: Iterable[str]) -> str:
        """Among open providers, the one whose breaker opened first."""
        candidates = list(provider_ids)
        return min(candidates, key=lambda p: self.snapshot(p).opened_at or 0.0)

    def trip(self, provider_id: str, reason: str = "manual") -> ProviderTripEvent:
        lock, health = self._entry(provider_id)
        with lock:
            health.state = BreakerState.OPEN
            health.opened_at = self._clock()
            health.trips += 1
            event = ProviderTripEvent(
                provider_id=provider_id,
                reason=reason,
                consecutive_failures=health.consecutive_failures,
                opened_at=utcnow(),
                cooldown_seconds=self.config.cooldown_seconds,
            )
            self._recent_trips.append(event)
            self._trips_recorded += 1
        logger.warning("Provider breaker manually opened", provider=provider_id, reason=reason)
        return event

    def reset(self, provider_id: Optional[str] = None) -> None:
        ids = [provider_id] if provider_id else list(self._health.keys())
        for pid in ids:
            self.record_success(pid)

    def get_status(self) -> dict:
        now = self._clock()
        providers = {}
        for pid in sorted(self._health.keys()):
            health = self.snapshot(pid)
            remaining = 0.0
            if health.state == BreakerState.OPEN and health.opened_at is not None:
                remaining = max(0.0, self.config.cooldown_seconds - (now - health.opened_at))
            providers[pid] = {
                "state": health.state.value,
                "consecutive_failures": health.consecutive_failures,
                "cooldown_remaining_seconds": round(remaining, 1),
                "last_failure_reason": health.last_failure_reason,
                "trips": health.trips,
            }
        return {
            "providers": providers,
            "total_trips_recorded": self._trips_recorded,
            "recent_trips": [
                {"provider": t.provider_id, "reason": t.reason, "opened_at": t.opened_at.isoformat()}
                for t in self._recent_trips
            ],
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "failure_window_seconds": self.config.failure_window_seconds,
                "cooldown_seconds": self.config.cooldown_seconds,
            },
        }

    async def save_trip_event(self, event: ProviderTripEvent):
        """Persist a trip for later inspection; storage failures are logged only."""
        if not self.persist_trips:
            return
        try:
            async with AsyncSessionLocal() as session:
                session.add(
                    ProviderTrip(
                        provider_id=event.provider_id,
                        reason=event.reason,
                        consecutive_failures=event.consecutive_failures,
                        opened_at=event.opened_at,
                        cooldown_seconds=event.cooldown_seconds,
                    )
                )
                await session.commit()
        except Exception as e:
            logger.error("Failed to save provider trip", provider=event.provider_id, error=str(e))


# ==================== Singleton ====================

provider_health = ProviderCircuitBreaker()
