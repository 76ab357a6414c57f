import base64
import json
import sys
from pathlib import Path

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.trading import SOL_MINT, Quote
from services.exceptions import ProviderError
from services.providers.jupiter import JupiterProvider
from services.providers.raydium import DEFAULT_COMPUTE_UNIT_PRICE, RaydiumProvider
from utils.rate_limiter import RateLimiter

TOKEN = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
OWNER = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
TX_B64 = base64.b64encode(b"unsigned-swap").decode()


def _client(routes: dict, seen: list) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        status, body = routes[request.url.path]
        return httpx.Response(status, json=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _limiter() -> RateLimiter:
    return RateLimiter(default_rate=1000)


# ---------------------------------------------------------------------------
# Jupiter
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_jupiter_quote_converts_fractional_price_impact():
    seen = []
    routes = {
        "/swap/v1/quote": (200, {"inAmount": "1000000000", "outAmount": "52000000", "priceImpactPct": "0.0123"})
    }
    provider = JupiterProvider(base_url="https://jup.test/swap/v1", client=_client(routes, seen), rate_limiter=_limiter())

    quote = await provider.get_quote(SOL_MINT, TOKEN, 1_000_000_000, 100)

    assert quote.provider_id == "jupiter"
    assert quote.out_amount == 52_000_000
    assert quote.price_impact_pct == pytest.approx(1.23)
    assert quote.price_impact_bps == pytest.approx(123)
    params = seen[0].url.params
    assert params["inputMint"] == SOL_MINT
    assert params["amount"] == "1000000000"
    assert params["slippageBps"] == "100"


@pytest.mark.asyncio
async def test_jupiter_no_route_is_translated():
    routes = {"/swap/v1/quote": (400, {"error": "Could not find any route", "errorCode": "COULD_NOT_FIND_ANY_ROUTE"})}
    provider = JupiterProvider(base_url="https://jup.test/swap/v1", client=_client(routes, []), rate_limiter=_limiter())

    with pytest.raises(ProviderError) as exc_info:
        await provider.get_quote(SOL_MINT, TOKEN, 1_000, 50)

    assert exc_info.value.stage == "quote"
    assert exc_info.value.reason == "No route found for this token"
    assert exc_info.value.terminal is False


@pytest.mark.asyncio
async def test_jupiter_build_decodes_swap_transaction():
    seen = []
    routes = {
        "/swap/v1/swap": (
            200,
            {"swapTransaction": TX_B64, "prioritizationFeeLamports": 12000, "lastValidBlockHeight": 99},
        )
    }
    provider = JupiterProvider(base_url="https://jup.test/swap/v1", client=_client(routes, seen), rate_limiter=_limiter())
    quote = Quote("jupiter", SOL_MINT, TOKEN, 1, 2, 0.1, 50, raw={"routePlan": []})

    built = await provider.build_transaction(quote, OWNER)

    assert built.transactions == [b"unsigned-swap"]
    assert built.prioritization_fee_lamports == 12000
    assert built.last_valid_block_height == 99
    body = json.loads(seen[0].content)
    assert body["userPublicKey"] == OWNER
    assert body["quoteResponse"] == {"routePlan": []}


@pytest.mark.asyncio
async def test_jupiter_build_rejects_undecodable_payload():
    routes = {"/swap/v1/swap": (200, {"swapTransaction": "%%%not-base64%%%"})}
    provider = JupiterProvider(base_url="https://jup.test/swap/v1", client=_client(routes, []), rate_limiter=_limiter())
    quote = Quote("jupiter", SOL_MINT, TOKEN, 1, 2, 0.1, 50)

    with pytest.raises(ProviderError, match="undecodable"):
        await provider.build_transaction(quote, OWNER)


def test_describe_error_maps_common_onchain_failures():
    provider = JupiterProvider(base_url="https://jup.test", rate_limiter=_limiter())

    assert provider.describe_error('{"InstructionError":[3,{"Custom":6001}]} 0x1771') == (
        "Insufficient token balance or amount too small (0x1771)"
    )
    assert provider.describe_error("Blockhash not found") == "Transaction expired (blockhash not found)"
    assert provider.describe_error("something odd") == "something odd"
    assert provider.describe_error("") == "unknown provider error"


# ---------------------------------------------------------------------------
# Raydium
# ---------------------------------------------------------------------------


def _raydium(routes, seen):
    return RaydiumProvider(
        swap_host="https://ray.test",
        api_host="https://ray-api.test",
        priority_level="h",
        client=_client(routes, seen),
        rate_limiter=_limiter(),
    )


@pytest.mark.asyncio
async def test_raydium_quote_keeps_percentage_impact():
    routes = {
        "/compute/swap-base-in": (
            200,
            {"success": True, "data": {"inputAmount": "5000", "outputAmount": "42", "priceImpactPct": 2.5}},
        )
    }
    provider = _raydium(routes, [])

    quote = await provider.get_quote(SOL_MINT, TOKEN, 5000, 300)

    assert quote.price_impact_pct == 2.5
    assert quote.out_amount == 42
    assert quote.raw["success"] is True


@pytest.mark.asyncio
async def test_raydium_unsuccessful_response_is_provider_error():
    routes = {"/compute/swap-base-in": (200, {"success": False, "msg": "ROUTE_NOT_FOUND"})}
    provider = _raydium(routes, [])

    with pytest.raises(ProviderError) as exc_info:
        await provider.get_quote(SOL_MINT, TOKEN, 5000, 300)

    assert exc_info.value.reason == "No trading pool found for this token"


@pytest.mark.asyncio
async def test_raydium_build_uses_auto_fee_and_wraps_sol():
    seen = []
    routes = {
        "/main/auto-fee": (200, {"data": {"default": {"vh": 500000, "h": 250000, "m": 100000}}}),
        "/transaction/swap-base-in": (
            200,
            {"success": True, "data": [{"transaction": TX_B64}, {"transaction": TX_B64}]},
        ),
    }
    provider = _raydium(routes, seen)
    quote = Quote("raydium", SOL_MINT, TOKEN, 5000, 42, 0.2, 300, raw={"success": True, "data": {}})

    built = await provider.build_transaction(quote, OWNER)

    assert built.transactions == [b"unsigned-swap", b"unsigned-swap"]
    assert built.metadata["compute_unit_price_micro_lamports"] == 250000
    body = json.loads(seen[-1].content)
    assert body["wrapSol"] is True and body["unwrapSol"] is False
    assert body["computeUnitPriceMicroLamports"] == "250000"


@pytest.mark.asyncio
async def test_raydium_falls_back_to_default_fee():
    routes = {
        "/main/auto-fee": (404, {"msg": "gone"}),
        "/transaction/swap-base-in": (200, {"success": True, "data": [{"transaction": TX_B64}]}),
    }
    provider = _raydium(routes, [])
    quote = Quote("raydium", TOKEN, SOL_MINT, 5000, 42, 0.2, 300)

    built = await provider.build_transaction(quote, OWNER)

    assert built.metadata["compute_unit_price_micro_lamports"] == DEFAULT_COMPUTE_UNIT_PRICE
