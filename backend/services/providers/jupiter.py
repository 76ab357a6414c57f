"""Primary execution provider: Jupiter swap API (quote + swap)."""

from __future__ import annotations

from typing import Optional

import httpx

from config import settings
from interfaces.execution import BuiltTransaction
from models.trading import Quote
from services.exceptions import ProviderError
from services.providers.base import HttpExecutionProvider, decode_transaction
from utils.rate_limiter import RateLimiter


class JupiterProvider(HttpExecutionProvider):
    provider_id = "jupiter"
    extra_error_reasons = (
        ("could not find any route", "No route found for this token"),
        ("no_routes_found", "No route found for this token"),
        ("token_not_tradable", "Token is not tradable"),
    )

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(client=client, rate_limiter=rate_limiter)
        self.base_url = (base_url or settings.JUPITER_API_URL).rstrip("/")

    async def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Quote:
        data = await self._request_json(
            "GET",
            f"{self.base_url}/quote",
            stage="quote",
            params={
                "inputMint": input_mint,
                "outputMint": output_mint,
                "amount": str(int(amount)),
                "slippageBps": int(slippage_bps),
                "restrictIntermediateTokens": "true",
            },
        )
        if not isinstance(data, dict) or data.get("error"):
            detail = data.get("error") if isinstance(data, dict) else "empty response"
            raise ProviderError(self.provider_id, "quote", self.describe_error(detail))
        try:
            out_amount = int(data["outAmount"])
            in_amount = int(data.get("inAmount") or amount)
            price_impact = float(data.get("priceImpactPct") or 0.0)
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(self.provider_id, "quote", f"malformed quote: {e}") from e
        if out_amount <= 0:
            raise ProviderError(self.provider_id, "quote", "No route found for this token")
        # Jupiter reports impact as a fraction ("0.0123" == 1.23%).
        return Quote(
            provider_id=self.provider_id,
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=in_amount,
            out_amount=out_amount,
            price_impact_pct=price_impact * 100.0,
            slippage_bps=int(slippage_bps),
            raw=data,
        )

    async def build_transaction(self, quote: Quote, owner_public_key: str) -> BuiltTransaction:
        data = await self._request_json(
            "POST",
            f"{self.base_url}/swap",
            stage="build",
            json={
                "quoteResponse": quote.raw,
                "userPublicKey": owner_public_key,
                "dynamicComputeUnitLimit": True,
                "dynamicSlippage": True,
                "prioritizationFeeLamports": "auto",
            },
        )
        encoded = data.get("swapTransaction") if isinstance(data, dict) else None
        if not encoded:
            detail = (data or {}).get("error") if isinstance(data, dict) else None
            raise ProviderError(self.provider_id, "build", self.describe_error(detail or "no swap transaction returned"))
        return BuiltTransaction(
            provider_id=self.provider_id,
            transactions=[decode_transaction(encoded, self.provider_id)],
            prioritization_fee_lamports=int(data.get("prioritizationFeeLamports") or 0),
            last_valid_block_height=data.get("lastValidBlockHeight"),
        )


jupiter_provider = JupiterProvider()
