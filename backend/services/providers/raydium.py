"""Secondary execution provider: Raydium trade API (compute + transaction)."""

from __future__ import annotations

from typing import Optional

import httpx

from config import settings
from interfaces.execution import BuiltTransaction
from models.trading import SOL_MINT, Quote
from services.exceptions import ProviderError
from services.providers.base import HttpExecutionProvider, decode_transaction, logger
from utils.rate_limiter import RateLimiter

TX_VERSION = "V0"
DEFAULT_COMPUTE_UNIT_PRICE = 100_000  # micro-lamports, used when auto-fee is unavailable


class RaydiumProvider(HttpExecutionProvider):
    provider_id = "raydium"
    extra_error_reasons = (
        ("pool not found", "No trading pool found for this token"),
        ("no route", "No trading pool found for this token"),
        ("route_not_found", "No trading pool found for this token"),
        ("insufficient liquidity", "Insufficient liquidity for this trade amount"),
        ("tx_version_error", "Unsupported transaction version"),
    )

    def __init__(
        self,
        swap_host: Optional[str] = None,
        api_host: Optional[str] = None,
        priority_level: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(client=client, rate_limiter=rate_limiter)
        self.swap_host = (swap_host or settings.RAYDIUM_SWAP_HOST).rstrip("/")
        self.api_host = (api_host or settings.RAYDIUM_API_HOST).rstrip("/")
        self.priority_level = priority_level or settings.RAYDIUM_PRIORITY_LEVEL

    def _unwrap(self, payload, stage: str):
        if not isinstance(payload, dict):
            raise ProviderError(self.provider_id, stage, "empty response")
        if not payload.get("success", False):
            message = payload.get("msg") or payload.get("message") or payload.get("error") or "unknown error"
            raise ProviderError(self.provider_id, stage, self.describe_error(message))
        return payload.get("data")

    async def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Quote:
        payload = await self._request_json(
            "GET",
            f"{self.swap_host}/compute/swap-base-in",
            stage="quote",
            params={
                "inputMint": input_mint,
                "outputMint": output_mint,
                "amount": str(int(amount)),
                "slippageBps": int(slippage_bps),
                "txVersion": TX_VERSION,
            },
        )
        data = self._unwrap(payload, "quote")
        try:
            out_amount = int(data["outputAmount"])
            in_amount = int(data.get("inputAmount") or amount)
            price_impact = float(data.get("priceImpactPct") or 0.0)
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(self.provider_id, "quote", f"malformed quote: {e}") from e
        if out_amount <= 0:
            raise ProviderError(self.provider_id, "quote", "Invalid quote: output amount is zero")
        # Raydium reports impact already as a percentage.
        return Quote(
            provider_id=self.provider_id,
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=in_amount,
            out_amount=out_amount,
            price_impact_pct=price_impact,
            slippage_bps=int(slippage_bps),
            raw=payload,
        )

    async def get_compute_unit_price(self) -> int:
        try:
            payload = await self._request_json("GET", f"{self.api_host}/main/auto-fee", stage="priority_fee")
            fees = ((payload or {}).get("data") or {}).get("default") or {}
            return int(fees[self.priority_level])
        except (ProviderError, KeyError, TypeError, ValueError) as e:
            logger.warning(
                "Raydium auto-fee unavailable, using default",
                level=self.priority_level,
                default=DEFAULT_COMPUTE_UNIT_PRICE,
                error=str(e),
            )
            return DEFAULT_COMPUTE_UNIT_PRICE

    async def build_transaction(self, quote: Quote, owner_public_key: str) -> BuiltTransaction:
        compute_unit_price = await self.get_compute_unit_price()
        payload = await self._request_json(
            "POST",
            f"{self.swap_host}/transaction/swap-base-in",
            stage="build",
            json={
                "computeUnitPriceMicroLamports": str(compute_unit_price),
                "swapResponse": quote.raw,
                "txVersion": TX_VERSION,
                "wallet": owner_public_key,
                "wrapSol": quote.input_mint == SOL_MINT,
                "unwrapSol": quote.output_mint == SOL_MINT,
            },
        )
        data = self._unwrap(payload, "build")
        if not isinstance(data, list) or not data:
            raise ProviderError(self.provider_id, "build", "no transaction returned")
        transactions = []
        for item in data:
            encoded = (item or {}).get("transaction")
            if not encoded:
                raise ProviderError(self.provider_id, "build", "transaction entry missing payload")
            transactions.append(decode_transaction(encoded, self.provider_id))
        return BuiltTransaction(
            provider_id=self.provider_id,
            transactions=transactions,
            metadata={"compute_unit_price_micro_lamports": compute_unit_price},
        )


raydium_provider = RaydiumProvider()
