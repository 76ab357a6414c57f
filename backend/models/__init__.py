from .trading import (
    BASE_ASSET_MINTS,
    SOL_MINT,
    USDC_MINT,
    USDT_MINT,
    AttemptOutcome,
    BreakerState,
    EventChannel,
    ExecutionAttempt,
    ExecutionResult,
    FailedOrderRecord,
    InvalidTransition,
    OrderIntent,
    OrderResult,
    OrderSide,
    OrderStatus,
    ProviderFailure,
    ProviderHealth,
    PurchaseEvent,
    Quote,
)

__all__ = [
    "BASE_ASSET_MINTS",
    "SOL_MINT",
    "USDC_MINT",
    "USDT_MINT",
    "AttemptOutcome",
    "BreakerState",
    "EventChannel",
    "ExecutionAttempt",
    "ExecutionResult",
    "FailedOrderRecord",
    "InvalidTransition",
    "OrderIntent",
    "OrderResult",
    "OrderSide",
    "OrderStatus",
    "ProviderFailure",
    "ProviderHealth",
    "PurchaseEvent",
    "Quote",
]
