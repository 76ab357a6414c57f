"""Shared fixtures and fakes for the copy-trading core tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import asyncio
import time
from decimal import Decimal
from typing import Optional

import pytest

from interfaces.execution import BuiltTransaction
from models.trading import SOL_MINT, Quote
from services.exceptions import ProviderError
from services.failed_order_cache import FailedOrderCache
from services.latency_tracker import LatencyTracker
from services.order_executor import OrderExecutionEngine
from services.provider_health import BreakerConfig, ProviderCircuitBreaker
from services.resource_gateway import TokenBalance

OWNER_KEY = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
TOKEN_MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
WATCHED = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
WATCHED_2 = "HN7cABqLq46Es1jh92dQQisAq662SmxELLLsHHe4YWrH"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


# ---------------------------------------------------------------------------
# Transaction payload builders
# ---------------------------------------------------------------------------


def rpc_transaction(
    owner: str,
    signature: str,
    *,
    lamport_change: int = 0,
    token_mint: Optional[str] = None,
    token_pre: Optional[str] = None,
    token_post: Optional[str] = None,
    decimals: int = 6,
    fee: int = 5000,
    err=None,
    slot: int = 100,
) -> dict:
    """getTransaction-shaped payload where ``owner`` is the fee payer."""
    pre_lamports = 10_000_000_000
    meta = {
        "err": err,
        "fee": fee,
        "preBalances": [pre_lamports, 2_039_280],
        "postBalances": [pre_lamports + lamport_change - fee, 2_039_280],
        "preTokenBalances": [],
        "postTokenBalances": [],
    }
    if token_mint is not None:
        if token_pre is not None:
            meta["preTokenBalances"].append(
                {
                    "accountIndex": 1,
                    "mint": token_mint,
                    "owner": owner,
                    "uiTokenAmount": {"uiAmountString": token_pre, "decimals": decimals},
                }
            )
        if token_post is not None:
            meta["postTokenBalances"].append(
                {
                    "accountIndex": 1,
                    "mint": token_mint,
                    "owner": owner,
                    "uiTokenAmount": {"uiAmountString": token_post, "decimals": decimals},
                }
            )
    return {
        "slot": slot,
        "blockTime": 1_700_000_000,
        "meta": meta,
        "transaction": {
            "signatures": [signature],
            "message": {
                "accountKeys": [
                    {"pubkey": owner, "signer": True, "writable": True},
                    {"pubkey": "TokenAccount1111111111111111111111111111111", "signer": False, "writable": True},
                ]
            },
        },
    }


def push_notification(owner: str, signature: str, **kwargs) -> dict:
    """``transactionNotification`` result wrapping the same payload."""
    payload = rpc_transaction(owner, signature, **kwargs)
    return {
        "signature": signature,
        "slot": payload["slot"],
        "transaction": {"transaction": payload["transaction"], "meta": payload["meta"]},
    }


def enhanced_transaction(
    owner: str,
    signature: str,
    *,
    native_change: int = 0,
    token_mint: Optional[str] = None,
    token_raw_change: Optional[str] = None,
    decimals: int = 6,
    fee: int = 5000,
    slot: int = 100,
    error=None,
) -> dict:
    """Enhanced-transactions API item; ``native_change`` excludes the fee."""
    token_changes = []
    if token_mint is not None:
        token_changes.append(
            {
                "userAccount": owner,
                "mint": token_mint,
                "rawTokenAmount": {"tokenAmount": token_raw_change, "decimals": decimals},
            }
        )
    return {
        "signature": signature,
        "slot": slot,
        "timestamp": 1_700_000_000,
        "fee": fee,
        "feePayer": owner,
        "transactionError": error,
        "accountData": [
            {"account": owner, "nativeBalanceChange": native_change - fee, "tokenBalanceChanges": token_changes},
        ],
    }


def buy_confirmation(owner: str = OWNER_KEY, token: str = TOKEN_MINT, sol_spent: int = 1_000_000_000, tokens: str = "1000"):
    def _factory(signature: str) -> dict:
        return rpc_transaction(
            owner, signature, lamport_change=-sol_spent, token_mint=token, token_pre="0", token_post=tokens
        )

    return _factory


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeSigner:
    def __init__(self, public_key: str = OWNER_KEY, fail: bool = False):
        self.public_key = public_key
        self.fail = fail
        self.signed = []

    def sign(self, transaction: bytes) -> bytes:
        if self.fail:
            raise RuntimeError("hardware wallet disconnected")
        self.signed.append(transaction)
        return b"signed:" + transaction


class FakeCustody:
    def __init__(self, signers: Optional[dict] = None):
        self.signers = signers or {}

    async def signer_for(self, owner_id: str):
        return self.signers.get(owner_id)


class FakeProvider:
    """Quotes a fixed price; failures are injected per stage."""

    def __init__(
        self,
        provider_id: str,
        price_impact_pct: float = 0.1,
        quote_error: Optional[str] = None,
        build_error: Optional[str] = None,
        stale_quotes: int = 0,
        delay: float = 0.0,
        on_quote=None,
    ):
        self.provider_id = provider_id
        self.price_impact_pct = price_impact_pct
        self.quote_error = quote_error
        self.build_error = build_error
        self.stale_quotes = stale_quotes
        self.delay = delay
        self.on_quote = on_quote
        self.quote_calls = []
        self.build_calls = []

    async def get_quote(self, input_mint, output_mint, amount, slippage_bps):
        self.quote_calls.append((input_mint, output_mint, amount, slippage_bps))
        if self.on_quote is not None:
            self.on_quote(self)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.quote_error:
            raise ProviderError(self.provider_id, "quote", self.quote_error)
        fetched_at = time.monotonic()
        if self.stale_quotes > 0:
            self.stale_quotes -= 1
            fetched_at -= 3600
        out_amount = 1_000_000_000 if input_mint == SOL_MINT else amount // 1000
        return Quote(
            provider_id=self.provider_id,
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=amount,
            out_amount=out_amount,
            price_impact_pct=self.price_impact_pct,
            slippage_bps=slippage_bps,
            raw={"provider": self.provider_id},
            fetched_at=fetched_at,
        )

    async def build_transaction(self, quote, owner_public_key):
        self.build_calls.append((quote, owner_public_key))
        if self.build_error:
            raise ProviderError(self.provider_id, "build", self.build_error)
        return BuiltTransaction(
            provider_id=self.provider_id,
            transactions=[f"tx-{self.provider_id}".encode()],
            prioritization_fee_lamports=10_000,
        )

    def describe_error(self, message: str) -> str:
        if "InstructionError" in (message or ""):
            return "Swap instruction failed on-chain"
        return message or "unknown provider error"


class FakeGateway:
    """Stands in for ResourceGateway at the engine and monitor seams."""

    def __init__(self):
        self.sol_balance = Decimal("10")
        self.token_balance = TokenBalance(raw_amount=5_000_000, decimals=6)
        self.statuses: dict = {}
        self.default_status: Optional[dict] = {"confirmationStatus": "confirmed", "err": None}
        self.transactions: dict = {}
        self.transaction_factory = buy_confirmation()
        self.sent: list = []
        self.send_error: Optional[Exception] = None
        self.address_transactions: dict = {"SWAP": [], "TRANSFER": []}
        self.on_get_transaction = None
        self.mint_decimals = 6
        self.decimals_lookups: list = []

    async def get_sol_balance(self, pubkey):
        return self.sol_balance

    async def get_token_balance(self, owner, mint):
        return self.token_balance

    async def get_token_decimals(self, mint):
        self.decimals_lookups.append(mint)
        return self.mint_decimals

    async def send_raw_transaction(self, payload: bytes) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(payload)
        return f"sig{len(self.sent)}"

    async def get_signature_status(self, signature):
        return self.statuses.get(signature, self.default_status)

    async def get_transaction(self, signature):
        if self.on_get_transaction is not None:
            self.on_get_transaction(signature)
        if signature in self.transactions:
            return self.transactions[signature]
        return self.transaction_factory(signature) if self.transaction_factory else None

    async def get_address_transactions(self, address, tx_type, limit):
        return list(self.address_transactions.get(tx_type, []))


class FakeTransport:
    """PushTransport fed from a queue; ``None`` ends the stream, an exception is raised.

    ``connect_errors`` are raised one per subscribe call before the
    subscription is confirmed.
    """

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.connect_errors: list = []
        self.subscriptions = 0
        self.connected = 0

    async def subscribe(self, address, on_connected=None):
        self.subscriptions += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        self.connected += 1
        if on_connected is not None:
            await on_connected()
        while True:
            item = await self.queue.get()
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield item


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def health(clock):
    return ProviderCircuitBreaker(
        config=BreakerConfig(failure_threshold=5, failure_window_seconds=120, cooldown_seconds=60),
        clock=clock,
        persist_trips=False,
    )


@pytest.fixture
def primary():
    return FakeProvider("jupiter")


@pytest.fixture
def secondary():
    return FakeProvider("raydium")


@pytest.fixture
def failed_orders():
    return FailedOrderCache(ttl_seconds=3600)


@pytest.fixture
def engine(primary, secondary, gateway, health, failed_orders):
    return OrderExecutionEngine(
        providers=[primary, secondary],
        gateway=gateway,
        health=health,
        failed_orders=failed_orders,
        store=None,
        latency=LatencyTracker(),
        confirmation_poll_interval=0,
        confirmation_max_polls=3,
    )


@pytest.fixture
def signer():
    return FakeSigner()
