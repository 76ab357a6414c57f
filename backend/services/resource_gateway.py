"""
Resource Gateway - pooled, batched, measured access to the Solana ledger.

Everything that reads or writes chain state goes through here:
- a fixed pool of HTTP connections spread across the configured RPC
  endpoints, plus temporary overflow connections when every pooled one is
  busy (closed after use, never pooled)
- a request batcher that folds same-typed reads arriving within one flush
  interval into a single JSON-RPC round trip
- rolling latency/failure metrics per endpoint
- transport retries with exponential backoff
"""

import asyncio
import base64
import itertools
import time
from collections import OrderedDict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Deque, Optional

import httpx

from config import settings
from models.trading import LAMPORTS_PER_SOL
from services.exceptions import RpcError, TransportError
from utils.logger import get_logger
from utils.retry import RetryConfig, retry_async

logger = get_logger("resource_gateway")

ClientFactory = Callable[[str], httpx.AsyncClient]


def _default_client_factory(endpoint: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.RPC_REQUEST_TIMEOUT_SECONDS),
        limits=httpx.Limits(max_connections=4, max_keepalive_connections=2),
        headers={"Content-Type": "application/json"},
    )


# ==================== CONNECTIONS ====================


@dataclass
class PooledConnection:
    id: str
    endpoint: str
    client: httpx.AsyncClient
    temporary: bool = False
    in_use: bool = False
    failure_count: int = 0
    last_failure_at: Optional[float] = None
    last_used_at: Optional[float] = None
    requests: int = 0

    def is_healthy(self, failure_limit: int, cooldown_seconds: float, now: float) -> bool:
        if self.in_use or self.failure_count >= failure_limit:
            return False
        return self.last_failure_at is None or (now - self.last_failure_at) > cooldown_seconds

    def to_dict(self, failure_limit: int, cooldown_seconds: float, now: float) -> dict:
        return {
            "id": self.id,
            "endpoint": self.endpoint,
            "in_use": self.in_use,
            "failure_count": self.failure_count,
            "healthy": self.is_healthy(failure_limit, cooldown_seconds, now) or self.in_use,
            "requests": self.requests,
        }


@dataclass
class TokenBalance:
    raw_amount: int
    decimals: Optional[int]

    @property
    def ui_amount(self) -> Decimal:
        if not self.raw_amount or self.decimals is None:
            return Decimal(0)
        return Decimal(self.raw_amount).scaleb(-self.decimals)


# ==================== METRICS ====================


@dataclass
class _Sample:
    at: float
    endpoint: str
    method: str
    latency_ms: float
    ok: bool


@dataclass
class RollingMetrics:
    """Counters since start plus a time-bounded window of recent samples."""

    window_seconds: float = 300.0
    slow_ms: float = 1000.0
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_ms: float = 0.0
    samples: Deque[_Sample] = field(default_factory=deque)
    slow_requests: Deque[dict] = field(default_factory=lambda: deque(maxlen=100))

    def record(self, endpoint: str, method: str, latency_ms: float, ok: bool, now: Optional[float] = None):
        now = time.monotonic() if now is None else now
        self.total_requests += 1
        if ok:
            self.successful_requests += 1
        else:
            self.failed_requests += 1
        # Running mean over every request since start.
        self.average_response_ms += (latency_ms - self.average_response_ms) / self.total_requests
        self.samples.append(_Sample(now, endpoint, method, latency_ms, ok))
        if latency_ms > self.slow_ms:
            self.slow_requests.append(
                {"endpoint": endpoint, "method": method, "latency_ms": round(latency_ms, 1)}
            )
        self._trim(now)

    def _trim(self, now: float):
        cutoff = now - self.window_seconds
        while self.samples and self.samples[0].at < cutoff:
            self.samples.popleft()

    def failure_rate(self, endpoint: Optional[str] = None) -> float:
        self._trim(time.monotonic())
        window = [s for s in self.samples if endpoint is None or s.endpoint == endpoint]
        if not window:
            return 0.0
        return sum(1 for s in window if not s.ok) / len(window)

    def p95_latency_ms(self, endpoint: Optional[str] = None) -> float:
        latencies = sorted(s.latency_ms for s in self.samples if endpoint is None or s.endpoint == endpoint)
        if not latencies:
            return 0.0
        return latencies[min(len(latencies) - 1, int(round(0.95 * (len(latencies) - 1))))]

    def snapshot(self) -> dict:
        endpoints = sorted({s.endpoint for s in self.samples})
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "average_response_ms": round(self.average_response_ms, 2),
            "window_seconds": self.window_seconds,
            "window_failure_rate": round(self.failure_rate(), 4),
            "window_p95_ms": round(self.p95_latency_ms(), 2),
            "per_endpoint": {
                ep: {
                    "failure_rate": round(self.failure_rate(ep), 4),
                    "p95_ms": round(self.p95_latency_ms(ep), 2),
                }
                for ep in endpoints
            },
            "slow_requests": list(self.slow_requests)[-10:],
        }


# ==================== BATCHING ====================

BatchExecutor = Callable[[list], Awaitable[list]]


class RequestBatcher:
    """Coalesces same-kind single-key reads into one multi-key call.

    Callers ``await submit(kind, key)``; the flush task waits for the first
    request, sleeps one flush interval to collect company, then issues one
    executor call per kind (chunked at ``max_size``). Duplicate keys in one
    window share a slot. A failed chunk fails every waiter in it.
    """

    def __init__(self, executors: dict, interval_ms: float, max_size: int):
        self._executors: dict[str, BatchExecutor] = executors
        self.interval = max(0.0, interval_ms) / 1000.0
        self.max_size = max(1, max_size)
        self._queues: dict[str, "OrderedDict[str, list[asyncio.Future]]"] = {}
        self._has_work: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._stats = {"batches": 0, "items": 0, "requests": 0}

    def _ensure_running(self):
        if self._has_work is None:
            self._has_work = asyncio.Event()
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._flush_loop(), name="gateway-batch-flush")

    async def submit(self, kind: str, key: str) -> Any:
        if kind not in self._executors:
            raise ValueError(f"unknown batch kind: {kind}")
        self._ensure_running()
        future = asyncio.get_running_loop().create_future()
        self._queues.setdefault(kind, OrderedDict()).setdefault(key, []).append(future)
        self._stats["requests"] += 1
        self._has_work.set()
        return await future

    async def _flush_loop(self):
        try:
            while True:
                await self._has_work.wait()
                await asyncio.sleep(self.interval)
                self._has_work.clear()
                await self.flush()
        except asyncio.CancelledError:
            pass

    async def flush(self):
        queues, self._queues = self._queues, {}
        chunks = []
        for kind, pending in queues.items():
            keys = list(pending.keys())
            for start in range(0, len(keys), self.max_size):
                chunk_keys = keys[start : start + self.max_size]
                chunks.append((kind, chunk_keys, {k: pending[k] for k in chunk_keys}))
        if chunks:
            await asyncio.gather(*(self._run_chunk(*chunk) for chunk in chunks))

    async def _run_chunk(self, kind: str, keys: list, waiters: dict):
        self._stats["batches"] += 1
        self._stats["items"] += len(keys)
        try:
            results = await self._executors[kind](keys)
            if len(results) != len(keys):
                raise TransportError(f"{kind} batch returned {len(results)} results for {len(keys)} keys")
        except Exception as e:
            logger.warning("Batch request failed", kind=kind, size=len(keys), error=str(e))
            for futures in waiters.values():
                for fut in futures:
                    if not fut.done():
                        fut.set_exception(e)
            return
        for key, value in zip(keys, results):
            for fut in waiters[key]:
                if not fut.done():
                    fut.set_result(value)

    async def stop(self):
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        stranded, self._queues = self._queues, {}
        for pending in stranded.values():
            for futures in pending.values():
                for fut in futures:
                    if not fut.done():
                        fut.set_exception(TransportError("gateway stopped"))

    def get_stats(self) -> dict:
        pending = sum(len(p) for p in self._queues.values())
        return {**self._stats, "pending_keys": pending, "running": bool(self._task and not self._task.done())}


# ==================== GATEWAY ====================


class ResourceGateway:
    """Pooled JSON-RPC / REST access used by providers, the engine and monitors."""

    def __init__(
        self,
        endpoints: Optional[list] = None,
        pool_size: Optional[int] = None,
        client_factory: Optional[ClientFactory] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.endpoints: list[str] = list(endpoints or settings.rpc_endpoints)
        if not self.endpoints:
            raise ValueError("at least one RPC endpoint is required")
        self.pool_size = pool_size or settings.rpc_pool_size
        self._client_factory = client_factory or _default_client_factory
        self._retry_config = retry_config or RetryConfig(
            max_attempts=settings.RPC_MAX_RETRIES,
            base_delay=0.25,
            max_delay=4.0,
            retryable_exceptions=(TransportError,),
            retryable_status_codes=(),
        )
        self._pool: list[PooledConnection] = []
        self._ids = itertools.count(1)
        self._temporary_created = 0
        self._temporary_in_flight = 0
        self.metrics = RollingMetrics(
            window_seconds=settings.RPC_METRICS_WINDOW_SECONDS,
            slow_ms=settings.RPC_SLOW_REQUEST_MS,
        )
        self.batcher = RequestBatcher(
            {
                "account": self._fetch_multiple_accounts,
                "signature_status": self._fetch_signature_statuses,
            },
            interval_ms=settings.BATCH_FLUSH_INTERVAL_MS,
            max_size=settings.BATCH_MAX_SIZE,
        )
        self._started = False

    # ---------- lifecycle ----------

    def _ensure_pool(self):
        if self._pool:
            return
        for index in range(self.pool_size):
            endpoint = self.endpoints[index % len(self.endpoints)]
            self._pool.append(
                PooledConnection(id=f"pool-{next(self._ids)}", endpoint=endpoint, client=self._client_factory(endpoint))
            )

    async def start(self):
        if self._started:
            return
        self._ensure_pool()
        self._started = True
        logger.info("Resource gateway started", pool_size=len(self._pool), endpoints=len(self.endpoints))

    async def stop(self):
        await self.batcher.stop()
        pool, self._pool = self._pool, []
        for conn in pool:
            await conn.client.aclose()
        self._started = False
        logger.info("Resource gateway stopped")

    # ---------- connection selection ----------

    def _select_connection(self) -> PooledConnection:
        """Healthy pooled connection, else any idle one, else a temporary overflow connection."""
        self._ensure_pool()
        now = time.monotonic()
        healthy = [
            c
            for c in self._pool
            if c.is_healthy(settings.RPC_CONNECTION_FAILURE_LIMIT, settings.RPC_CONNECTION_COOLDOWN_SECONDS, now)
        ]
        if healthy:
            chosen = min(healthy, key=lambda c: (c.failure_count, c.last_used_at or 0.0))
        else:
            idle = [c for c in self._pool if not c.in_use]
            if idle:
                chosen = min(idle, key=lambda c: (c.failure_count, c.last_failure_at or 0.0))
            else:
                self._temporary_created += 1
                endpoint = self.endpoints[0]
                chosen = PooledConnection(
                    id=f"temp-{next(self._ids)}",
                    endpoint=endpoint,
                    client=self._client_factory(endpoint),
                    temporary=True,
                )
                logger.debug("Pool exhausted, using temporary connection", connection=chosen.id)
        chosen.in_use = True
        chosen.last_used_at = now
        chosen.requests += 1
        if chosen.temporary:
            self._temporary_in_flight += 1
        return chosen

    @asynccontextmanager
    async def connection(self):
        conn = self._select_connection()
        try:
            yield conn
        finally:
            conn.in_use = False
            if conn.temporary:
                self._temporary_in_flight -= 1
                await conn.client.aclose()

    def _mark_failed(self, conn: PooledConnection):
        conn.failure_count += 1
        conn.last_failure_at = time.monotonic()

    def _record(self, conn: PooledConnection, method: str, started: float, ok: bool):
        latency_ms = (time.monotonic() - started) * 1000.0
        self.metrics.record(conn.endpoint, method, latency_ms, ok)
        if latency_ms > settings.RPC_VERY_SLOW_REQUEST_MS:
            logger.warning("Very slow ledger request", endpoint=conn.endpoint, method=method, latency_ms=round(latency_ms))

    # ---------- raw calls ----------

    async def _rpc_once(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        async with self.connection() as conn:
            started = time.monotonic()
            try:
                response = await conn.client.post(conn.endpoint, json=payload)
                response.raise_for_status()
                body = response.json()
                if not isinstance(body, dict):
                    raise ValueError(f"expected a JSON-RPC object, got {type(body).__name__}")
            except (httpx.HTTPError, ValueError) as e:
                self._mark_failed(conn)
                self._record(conn, method, started, ok=False)
                raise TransportError(f"{method} via {conn.endpoint}: {e}", endpoint=conn.endpoint) from e
            self._record(conn, method, started, ok=True)
            conn.failure_count = 0
        error = body.get("error")
        if isinstance(error, dict):
            raise RpcError(method, error.get("code"), str(error.get("message") or error), error.get("data"))
        if error:
            raise RpcError(method, None, str(error), None)
        return body.get("result")

    async def rpc(self, method: str, params: Optional[list] = None) -> Any:
        """JSON-RPC call with transport retries; ``RpcError`` is raised without retry."""
        return await retry_async(lambda: self._rpc_once(method, params or []), self._retry_config, label=method)

    async def _get_json_once(self, url: str, params: dict, label: str) -> Any:
        async with self.connection() as conn:
            started = time.monotonic()
            try:
                response = await conn.client.get(url, params=params)
                response.raise_for_status()
                body = response.json()
            except (httpx.HTTPError, ValueError) as e:
                self._record(conn, label, started, ok=False)
                raise TransportError(f"{label}: {e}", endpoint=url) from e
            self._record(conn, label, started, ok=True)
            return body

    async def get_json(self, url: str, params: Optional[dict] = None, label: str = "rest") -> Any:
        return await retry_async(lambda: self._get_json_once(url, params or {}, label), self._retry_config, label=label)

    # ---------- batch executors ----------

    async def _fetch_multiple_accounts(self, pubkeys: list) -> list:
        result = await self.rpc("getMultipleAccounts", [pubkeys, {"encoding": "base64", "commitment": "confirmed"}])
        return list((result or {}).get("value") or [])

    async def _fetch_signature_statuses(self, signatures: list) -> list:
        result = await self.rpc("getSignatureStatuses", [signatures, {"searchTransactionHistory": True}])
        return list((result or {}).get("value") or [])

    # ---------- typed helpers ----------

    async def get_account_lamports(self, pubkey: str) -> int:
        account = await self.batcher.submit("account", pubkey)
        return int((account or {}).get("lamports") or 0)

    async def get_sol_balance(self, pubkey: str) -> Decimal:
        lamports = await self.get_account_lamports(pubkey)
        return Decimal(lamports) / Decimal(LAMPORTS_PER_SOL)

    async def get_signature_status(self, signature: str) -> Optional[dict]:
        return await self.batcher.submit("signature_status", signature)

    async def get_transaction(self, signature: str) -> Optional[dict]:
        return await self.rpc(
            "getTransaction",
            [
                signature,
                {"encoding": "jsonParsed", "commitment": "confirmed", "maxSupportedTransactionVersion": 0},
            ],
        )

    async def get_token_balance(self, owner: str, mint: str) -> TokenBalance:
        result = await self.rpc(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": "confirmed"}],
        )
        raw_total = 0
        decimals: Optional[int] = None
        for account in (result or {}).get("value") or []:
            info = (((account.get("account") or {}).get("data") or {}).get("parsed") or {}).get("info") or {}
            token_amount = info.get("tokenAmount") or {}
            raw_total += int(token_amount.get("amount") or 0)
            if token_amount.get("decimals") is not None:
                decimals = int(token_amount["decimals"])
        return TokenBalance(raw_amount=raw_total, decimals=decimals)

    async def get_token_decimals(self, mint: str) -> int:
        result = await self.rpc("getTokenSupply", [mint])
        return int(((result or {}).get("value") or {}).get("decimals") or 0)

    async def send_raw_transaction(self, signed_transaction: bytes) -> str:
        encoded = base64.b64encode(signed_transaction).decode("ascii")
        return await self.rpc(
            "sendTransaction",
            [
                encoded,
                {"encoding": "base64", "skipPreflight": False, "preflightCommitment": "confirmed", "maxRetries": 3},
            ],
        )

    async def get_address_transactions(self, address: str, tx_type: str, limit: int) -> list:
        """Enhanced (pre-parsed) transaction history for one address, newest first."""
        url = f"{settings.HELIUS_API_URL}/v0/addresses/{address}/transactions"
        params = {"api-key": settings.HELIUS_API_KEY, "type": tx_type, "limit": limit}
        body = await self.get_json(url, params, label="addressTransactions")
        return body if isinstance(body, list) else []

    async def health_check(self) -> bool:
        try:
            result = await self.rpc("getLatestBlockhash", [{"commitment": "confirmed"}])
        except (TransportError, RpcError) as e:
            logger.warning("Ledger health check failed", error=str(e))
            return False
        return bool((result or {}).get("value", {}).get("blockhash"))

    def failure_rate(self, endpoint: Optional[str] = None) -> float:
        return self.metrics.failure_rate(endpoint)

    def get_status(self) -> dict:
        now = time.monotonic()
        limit = settings.RPC_CONNECTION_FAILURE_LIMIT
        cooldown = settings.RPC_CONNECTION_COOLDOWN_SECONDS
        return {
            "started": self._started,
            "pool_size": len(self._pool),
            "connections": [c.to_dict(limit, cooldown, now) for c in self._pool],
            "temporary_created": self._temporary_created,
            "temporary_in_flight": self._temporary_in_flight,
            "metrics": self.metrics.snapshot(),
            "batcher": self.batcher.get_stats(),
        }


resource_gateway = ResourceGateway()
