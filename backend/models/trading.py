"""Domain types for detection and execution.

Amounts are ``Decimal`` in UI units (SOL, whole tokens). Raw integer units
(lamports, token base units) only appear on ``Quote`` and at the RPC seam.
"""

import time
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Deque, Optional

from utils.utcnow import utcnow

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
BASE_ASSET_MINTS = frozenset({SOL_MINT, USDC_MINT, USDT_MINT})

LAMPORTS_PER_SOL = 1_000_000_000
SOL_DECIMALS = 9


class InvalidTransition(Exception):
    """An OrderIntent or ExecutionAttempt was moved along an edge that doesn't exist."""


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderStatus(str, Enum):
    CREATED = "created"
    QUOTING = "quoting"
    READY = "ready"
    SUBMITTING = "submitting"
    VERIFYING = "verifying"
    CONFIRMED = "confirmed"
    FAILED = "failed"


# quoting -> quoting covers advancing to the next provider after a quote is rejected.
_ORDER_TRANSITIONS: dict[OrderStatus, frozenset] = {
    OrderStatus.CREATED: frozenset({OrderStatus.QUOTING, OrderStatus.FAILED}),
    OrderStatus.QUOTING: frozenset({OrderStatus.QUOTING, OrderStatus.READY, OrderStatus.FAILED}),
    OrderStatus.READY: frozenset({OrderStatus.QUOTING, OrderStatus.SUBMITTING, OrderStatus.FAILED}),
    OrderStatus.SUBMITTING: frozenset({OrderStatus.VERIFYING, OrderStatus.QUOTING, OrderStatus.FAILED}),
    OrderStatus.VERIFYING: frozenset({OrderStatus.CONFIRMED, OrderStatus.QUOTING, OrderStatus.FAILED}),
    OrderStatus.CONFIRMED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}


class AttemptOutcome(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    TIMED_OUT = "timedOut"


class EventChannel(str, Enum):
    PUSH = "push"
    POLL = "poll"
    RECONCILED = "reconciled"


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"


# ==================== DETECTION ====================


@dataclass(frozen=True)
class PurchaseEvent:
    """A watched wallet paid a base asset for some other token."""

    source_signature: str
    wallet_address: str
    acquired_mint: str
    acquired_amount: Decimal
    paid_mint: str
    paid_amount: Decimal
    observed_at: datetime
    channel: EventChannel
    slot: Optional[int] = None

    @property
    def event_id(self) -> str:
        return self.source_signature

    def to_dict(self) -> dict:
        return {
            "source_signature": self.source_signature,
            "wallet_address": self.wallet_address,
            "acquired_mint": self.acquired_mint,
            "acquired_amount": str(self.acquired_amount),
            "paid_mint": self.paid_mint,
            "paid_amount": str(self.paid_amount),
            "observed_at": self.observed_at.isoformat(),
            "channel": self.channel.value,
            "slot": self.slot,
        }


# ==================== EXECUTION ====================


@dataclass(frozen=True)
class Quote:
    """Provider quote in raw units; ``price_impact_pct`` is a percentage (1.5 == 1.5%)."""

    provider_id: str
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact_pct: float
    slippage_bps: int
    raw: dict = field(default_factory=dict, repr=False, compare=False)
    fetched_at: float = field(default_factory=time.monotonic)

    @property
    def price_impact_bps(self) -> float:
        return abs(self.price_impact_pct) * 100.0

    def age_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self.fetched_at

    def to_dict(self) -> dict:
        return {
            "provider_id": self.provider_id,
            "input_mint": self.input_mint,
            "output_mint": self.output_mint,
            "in_amount": self.in_amount,
            "out_amount": self.out_amount,
            "price_impact_pct": self.price_impact_pct,
            "slippage_bps": self.slippage_bps,
        }


@dataclass(frozen=True)
class ExecutionAttempt:
    """One provider attempt. Once ``outcome`` leaves pending the attempt is final."""

    order_id: str
    provider: str
    sequence: int
    quote: Optional[Quote] = None
    submitted_at: Optional[datetime] = None
    signature: Optional[str] = None
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    reason: Optional[str] = None
    stage: Optional[str] = None
    stage_timings_ms: dict = field(default_factory=dict, compare=False)

    @property
    def is_final(self) -> bool:
        return self.outcome != AttemptOutcome.PENDING

    def finalize(self, outcome: AttemptOutcome, **changes: Any) -> "ExecutionAttempt":
        if self.is_final:
            raise InvalidTransition(f"attempt {self.order_id}#{self.sequence} already {self.outcome.value}")
        if outcome == AttemptOutcome.PENDING:
            raise InvalidTransition("an attempt cannot be finalized as pending")
        return replace(self, outcome=outcome, **changes)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "provider": self.provider,
            "sequence": self.sequence,
            "quote": self.quote.to_dict() if self.quote else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "signature": self.signature,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "stage": self.stage,
            "stage_timings_ms": dict(self.stage_timings_ms),
        }


@dataclass
class OrderIntent:
    """A buy or sell request moving through the order status machine."""

    owner_id: str
    token_address: str
    side: OrderSide
    amount: Decimal
    max_slippage_bps: int
    amount_is_percent: bool = False
    originating_event_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: OrderStatus = OrderStatus.CREATED
    created_at: datetime = field(default_factory=utcnow)
    status_history: list = field(default_factory=list)
    attempts: list = field(default_factory=list)

    def transition(self, new_status: OrderStatus) -> None:
        if new_status not in _ORDER_TRANSITIONS[self.status]:
            raise InvalidTransition(f"order {self.id}: {self.status.value} -> {new_status.value}")
        self.status_history.append((self.status, new_status, utcnow()))
        self.status = new_status

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.CONFIRMED, OrderStatus.FAILED)

    def open_attempt(self, provider: str) -> ExecutionAttempt:
        if self.attempts and not self.attempts[-1].is_final:
            raise InvalidTransition(f"order {self.id} already has an attempt in flight")
        attempt = ExecutionAttempt(order_id=self.id, provider=provider, sequence=len(self.attempts) + 1)
        self.attempts.append(attempt)
        return attempt

    def update_attempt(self, attempt: ExecutionAttempt) -> None:
        """Replace the pending head attempt with a newer copy of itself."""
        current = self.attempts[-1] if self.attempts else None
        if current is None or current.sequence != attempt.sequence or current.is_final:
            raise InvalidTransition(f"order {self.id}: attempt #{attempt.sequence} is not the open attempt")
        self.attempts[-1] = attempt

    def close_attempt(self, outcome: AttemptOutcome, **changes: Any) -> ExecutionAttempt:
        final = self.attempts[-1].finalize(outcome, **changes)
        self.attempts[-1] = final
        return final


@dataclass(frozen=True)
class ProviderFailure:
    provider_id: str
    stage: str
    reason: str

    def to_dict(self) -> dict:
        return {"provider_id": self.provider_id, "stage": self.stage, "reason": self.reason}


@dataclass
class ExecutionResult:
    """What a confirmed order reports back to the caller."""

    order_id: str
    owner_id: str
    provider: str
    signature: str
    side: OrderSide
    token_address: str
    input_amount: Decimal
    output_amount: Decimal
    realized_price: Optional[Decimal]
    platform_fee: Decimal
    network_fee: Decimal
    price_impact_pct: float
    warnings: list = field(default_factory=list)
    attempts: list = field(default_factory=list)

    @property
    def total_fees(self) -> Decimal:
        return self.platform_fee + self.network_fee

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "owner_id": self.owner_id,
            "provider": self.provider,
            "signature": self.signature,
            "side": self.side.value,
            "token_address": self.token_address,
            "input_amount": str(self.input_amount),
            "output_amount": str(self.output_amount),
            "realized_price": str(self.realized_price) if self.realized_price is not None else None,
            "fees": {
                "platform_fee": str(self.platform_fee),
                "network_fee": str(self.network_fee),
                "total": str(self.total_fees),
            },
            "price_impact_pct": self.price_impact_pct,
            "warnings": list(self.warnings),
            "attempts": [a.to_dict() for a in self.attempts],
        }


@dataclass
class OrderResult:
    """Outcome delivered to ``on_order_result`` subscribers and API callers."""

    success: bool
    order_id: str
    owner_id: str
    result: Optional[ExecutionResult] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    failures: list = field(default_factory=list)
    retry_available: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "order_id": self.order_id,
            "owner_id": self.owner_id,
            "result": self.result.to_dict() if self.result else None,
            "error_type": self.error_type,
            "error_message": self.error_message,
            "failures": [f.to_dict() for f in self.failures],
            "retry_available": self.retry_available,
        }


@dataclass(frozen=True)
class FailedOrderRecord:
    owner_id: str
    token_address: str
    amount: Decimal
    failed_at: datetime
    side: OrderSide = OrderSide.BUY
    amount_is_percent: bool = False
    max_slippage_bps: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "owner_id": self.owner_id,
            "token_address": self.token_address,
            "amount": str(self.amount),
            "side": self.side.value,
            "amount_is_percent": self.amount_is_percent,
            "max_slippage_bps": self.max_slippage_bps,
            "failed_at": self.failed_at.isoformat(),
            "reason": self.reason,
        }


@dataclass
class ProviderHealth:
    """Breaker bookkeeping for one provider. ``opened_at`` is a monotonic timestamp."""

    provider_id: str
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    state: BreakerState = BreakerState.CLOSED
    failure_times: Deque[float] = field(default_factory=deque)
    last_failure_reason: Optional[str] = None
    trips: int = 0
