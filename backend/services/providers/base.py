"""Shared HTTP plumbing for swap-API execution providers."""

from __future__ import annotations

import asyncio
import base64
from typing import Any, Optional

import httpx

from config import settings
from services.exceptions import ProviderError
from utils.logger import get_logger
from utils.rate_limiter import RateLimiter
from utils.retry import RetryConfig, retry_async

logger = get_logger("providers")

# Upstream/on-chain message fragments mapped to the reason shown to the owner.
_COMMON_ERROR_REASONS: tuple = (
    ("0x1771", "Insufficient token balance or amount too small (0x1771)"),
    ("blockhash not found", "Transaction expired (blockhash not found)"),
    ("insufficient lamports", "Insufficient SOL balance"),
    ("no record of a prior credit", "Insufficient SOL balance"),
    ("insufficient funds", "Insufficient funds"),
    ("slippage", "Price moved beyond the slippage limit"),
)

provider_rate_limiter = RateLimiter(default_rate=settings.PROVIDER_REQUESTS_PER_SECOND)


def decode_transaction(encoded: str, provider_id: str) -> bytes:
    try:
        return base64.b64decode(encoded, validate=True)
    except (ValueError, TypeError) as e:
        raise ProviderError(provider_id, "build", f"undecodable transaction payload: {e}") from e


class HttpExecutionProvider:
    """Base for providers that quote and build over a JSON HTTP API.

    Subclasses set ``provider_id`` and implement ``get_quote`` /
    ``build_transaction``. Calls are rate limited per provider, bounded by
    ``PROVIDER_TIMEOUT_SECONDS`` and retried on 429/5xx/transport errors;
    anything left over becomes a ``ProviderError`` tagged with the stage.
    """

    provider_id: str = "provider"
    extra_error_reasons: tuple = ()

    def __init__(self, client: Optional[httpx.AsyncClient] = None, rate_limiter: Optional[RateLimiter] = None):
        self._client = client
        self._owns_client = client is None
        self._rate_limiter = rate_limiter or provider_rate_limiter
        self._retry_config = RetryConfig(max_attempts=settings.PROVIDER_MAX_RETRIES + 1, base_delay=0.5, max_delay=4.0)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.PROVIDER_TIMEOUT_SECONDS),
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request_json(self, method: str, url: str, stage: str, **kwargs: Any) -> Any:
        client = self._get_client()

        async def _once():
            await self._rate_limiter.acquire(self.provider_id)
            response = await client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()

        try:
            return await asyncio.wait_for(
                retry_async(_once, self._retry_config, label=f"{self.provider_id}.{stage}"),
                timeout=settings.PROVIDER_TIMEOUT_SECONDS * self._retry_config.max_attempts,
            )
        except httpx.HTTPStatusError as e:
            detail = self._error_detail(e.response)
            raise ProviderError(self.provider_id, stage, self.describe_error(detail)) from e
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            raise ProviderError(self.provider_id, stage, f"request failed: {type(e).__name__}") from e
        except ValueError as e:
            raise ProviderError(self.provider_id, stage, "invalid JSON response") from e

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        if isinstance(body, dict):
            for key in ("error", "msg", "message"):
                if body.get(key):
                    return str(body[key])
        return f"HTTP {response.status_code}"

    def describe_error(self, message: str) -> str:
        text = str(message or "")
        lowered = text.lower()
        for fragment, reason in (*self.extra_error_reasons, *_COMMON_ERROR_REASONS):
            if fragment.lower() in lowered:
                return reason
        return text or "unknown provider error"
