import asyncio
import random
from functools import wraps
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import httpx

from utils.logger import get_logger

logger = get_logger("retry")

T = TypeVar("T")


class RetryConfig:
    """Exponential backoff policy shared by RPC and provider HTTP calls."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[BaseException], ...] = (
            httpx.TimeoutException,
            httpx.NetworkError,
            ConnectionError,
            asyncio.TimeoutError,
        ),
        retryable_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504),
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions
        self.retryable_status_codes = retryable_status_codes


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number ``attempt`` (0-based), capped at ``max_delay``."""
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay = delay * (0.5 + random.random())
    return delay


def is_retryable_error(error: BaseException, config: RetryConfig) -> bool:
    if isinstance(error, config.retryable_exceptions):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in config.retryable_status_codes
    return False


def retry_after_seconds(error: BaseException) -> Optional[float]:
    """Honour a ``Retry-After`` header on 429 responses."""
    if not isinstance(error, httpx.HTTPStatusError) or error.response.status_code != 429:
        return None
    header = error.response.headers.get("Retry-After")
    if not header:
        return None
    try:
        return max(0.0, float(header))
    except ValueError:
        return None


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    *,
    label: str,
) -> T:
    """Run ``operation`` until it succeeds, a non-retryable error occurs, or attempts run out."""
    last_error: Optional[BaseException] = None
    for attempt in range(config.max_attempts):
        try:
            return await operation()
        except Exception as e:
            last_error = e
            if not is_retryable_error(e, config):
                raise
            if attempt >= config.max_attempts - 1:
                logger.warning(
                    "All retry attempts exhausted",
                    operation=label,
                    attempts=config.max_attempts,
                    error=str(e),
                )
                break
            delay = calculate_delay(attempt, config)
            hinted = retry_after_seconds(e)
            if hinted is not None:
                delay = max(delay, min(hinted, config.max_delay))
            logger.debug(
                "Retrying after error",
                operation=label,
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay=round(delay, 3),
                error=str(e),
            )
            await asyncio.sleep(delay)
    assert last_error is not None
    raise last_error


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator form of :func:`retry_async` for coroutine functions."""
    policy = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[T]]):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await retry_async(lambda: func(*args, **kwargs), policy, label=func.__name__)

        return wrapper

    return decorator
