from .logger import setup_logging, get_logger
from .retry import RetryConfig, retry_async, with_retry
from .rate_limiter import RateLimiter
from .validation import (
    validate_solana_address,
    validate_positive_amount,
    validate_percentage,
    validate_slippage_bps,
    WatchRequest,
    OrderRequest,
)

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",

    # Retry
    "RetryConfig",
    "retry_async",
    "with_retry",

    # Rate Limiter
    "RateLimiter",

    # Validation
    "validate_solana_address",
    "validate_positive_amount",
    "validate_percentage",
    "validate_slippage_bps",
    "WatchRequest",
    "OrderRequest",
]
