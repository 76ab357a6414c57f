"""
Dual-channel wallet activity monitoring.

One ``WalletActivityMonitor`` watches one address through two independent
loops:

- push: a ``transactionSubscribe`` stream that carries full transaction
  metadata, so no extra fetch is needed per notification
- poll: enhanced transaction history fetched every few seconds, filtered to
  swaps and transfers

Both loops feed the same recently-seen set keyed by signature, so a
transaction observed by both channels yields exactly one PurchaseEvent.
"""

import asyncio
import inspect
import json
import time
from collections import OrderedDict
from decimal import Decimal
from typing import AsyncIterator, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import WebSocketException

from config import settings
from interfaces.copy_trading import PushTransport
from models.trading import EventChannel, PurchaseEvent
from services.activity_classifier import (
    ActivityKind,
    BalanceSnapshot,
    MalformedTransaction,
    classify,
    snapshot_from_enhanced_transaction,
    snapshot_from_rpc_transaction,
)
from services.exceptions import RpcError, TransportError
from services.resource_gateway import ResourceGateway, resource_gateway
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("wallet_activity_monitor")

POLL_TRANSACTION_TYPES = ("SWAP", "TRANSFER")


def _exception_text(exc: Exception) -> str:
    text = str(exc).strip()
    return text if text else repr(exc)


# ==================== PUSH TRANSPORT ====================


class HeliusTransactionStream:
    """``PushTransport`` over the Helius ``transactionSubscribe`` WebSocket."""

    def __init__(self, ws_url: Optional[str] = None, api_key: Optional[str] = None, ping_interval: Optional[float] = None):
        self.ws_url = ws_url or settings.HELIUS_WS_URL
        self.api_key = settings.HELIUS_API_KEY if api_key is None else api_key
        self.ping_interval = ping_interval or settings.MONITOR_PING_INTERVAL_SECONDS

    def _url(self) -> str:
        if not self.api_key:
            return self.ws_url
        separator = "&" if "?" in self.ws_url else "?"
        return f"{self.ws_url}{separator}api-key={self.api_key}"

    @staticmethod
    def subscribe_request(address: str) -> dict:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "transactionSubscribe",
            "params": [
                {"accountInclude": [address], "failed": False},
                {
                    "commitment": "confirmed",
                    "encoding": "jsonParsed",
                    "transactionDetails": "full",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        }

    async def subscribe(
        self, address: str, on_connected: Optional[Callable[[], Awaitable[None]]] = None
    ) -> AsyncIterator[dict]:
        try:
            async with websockets.connect(
                self._url(),
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_interval,
                close_timeout=10,
            ) as ws:
                await ws.send(json.dumps(self.subscribe_request(address)))
                confirmation = json.loads(await ws.recv())
                if "error" in confirmation:
                    raise TransportError(f"transactionSubscribe rejected: {confirmation['error']}", endpoint=self.ws_url)
                logger.info("Subscribed to wallet transactions", address=address, subscription_id=confirmation.get("result"))
                if on_connected is not None:
                    await on_connected()

                async for message in ws:
                    try:
                        data = json.loads(message)
                    except json.JSONDecodeError:
                        logger.debug("Ignoring non-JSON stream message", address=address)
                        continue
                    if data.get("method") != "transactionNotification":
                        continue
                    result = (data.get("params") or {}).get("result")
                    if isinstance(result, dict):
                        yield result
        except (WebSocketException, OSError, asyncio.TimeoutError, json.JSONDecodeError) as e:
            raise TransportError(f"push stream for {address}: {_exception_text(e)}", endpoint=self.ws_url) from e


# ==================== MONITOR ====================


class WalletActivityMonitor:
    """Push and poll observation of one watched address.

    ``on_event(event)`` receives each PurchaseEvent; ``on_health(address,
    healthy)`` is told when the push channel becomes degraded (too many
    consecutive reconnect failures) and when it recovers. Either callback may
    be a coroutine function.
    """

    def __init__(
        self,
        address: str,
        on_event: Callable,
        gateway: Optional[ResourceGateway] = None,
        transport: Optional[PushTransport] = None,
        on_health: Optional[Callable] = None,
        poll_interval: Optional[float] = None,
        poll_limit: Optional[int] = None,
        seen_capacity: Optional[int] = None,
        reconnect_delay: Optional[float] = None,
        max_reconnect_delay: Optional[float] = None,
        degraded_after: Optional[int] = None,
        min_paid_amount: Optional[Decimal] = None,
    ):
        self.address = address
        self._on_event = on_event
        self._on_health = on_health
        self.gateway = gateway or resource_gateway
        self.transport = transport or HeliusTransactionStream()
        self.poll_interval = poll_interval if poll_interval is not None else settings.MONITOR_POLL_INTERVAL_SECONDS
        self.poll_limit = poll_limit or settings.MONITOR_POLL_LIMIT
        self.seen_capacity = seen_capacity or settings.MONITOR_SEEN_CAPACITY
        self.reconnect_delay = reconnect_delay if reconnect_delay is not None else settings.MONITOR_RECONNECT_DELAY_SECONDS
        self.max_reconnect_delay = (
            max_reconnect_delay if max_reconnect_delay is not None else settings.MONITOR_MAX_RECONNECT_DELAY_SECONDS
        )
        self.degraded_after = degraded_after or settings.MONITOR_DEGRADED_AFTER_FAILURES
        self.min_paid_amount = Decimal(
            str(min_paid_amount if min_paid_amount is not None else settings.MONITOR_MIN_PAID_AMOUNT)
        )

        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._running = False
        self._push_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._degraded = False
        self._consecutive_push_failures = 0
        self._stats = {
            "push_notifications": 0,
            "poll_cycles": 0,
            "poll_errors": 0,
            "events_emitted": 0,
            "duplicates_skipped": 0,
            "malformed_skipped": 0,
            "reconnects": 0,
        }

    # ==================== RECENTLY SEEN ====================

    def _check_and_mark(self, signature: str) -> bool:
        """True the first time ``signature`` is seen; no await inside, so the two loops can't race."""
        if signature in self._seen:
            self._seen.move_to_end(signature)
            self._stats["duplicates_skipped"] += 1
            return False
        self._seen[signature] = None
        while len(self._seen) > self.seen_capacity:
            self._seen.popitem(last=False)
        return True

    def has_seen(self, signature: str) -> bool:
        return signature in self._seen

    # ==================== LIFECYCLE ====================

    @property
    def running(self) -> bool:
        return self._running

    @property
    def degraded(self) -> bool:
        return self._degraded

    def start(self):
        if self._running:
            return
        self._running = True
        self._push_task = asyncio.create_task(self._push_loop(), name=f"push:{self.address}")
        self._poll_task = asyncio.create_task(self._poll_loop(), name=f"poll:{self.address}")
        logger.info("Started wallet monitor", address=self.address)

    async def stop(self):
        """Cancel both loops and wait for them to unwind."""
        self._running = False
        tasks = [t for t in (self._push_task, self._poll_task) if t and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._push_task = None
        self._poll_task = None
        logger.info("Stopped wallet monitor", address=self.address, stats=dict(self._stats))

    # ==================== PUSH CHANNEL ====================

    async def _push_loop(self):
        delay = self.reconnect_delay
        connected = False

        async def on_connected():
            nonlocal connected, delay
            connected = True
            delay = self.reconnect_delay
            await self._push_recovered()

        while self._running:
            connected_at = time.monotonic()
            connected = False
            try:
                async for notification in self.transport.subscribe(self.address, on_connected=on_connected):
                    if not connected:
                        # Transport without subscription confirmation.
                        await on_connected()
                    self._stats["push_notifications"] += 1
                    await self.handle_push_notification(notification)
                raise TransportError("push stream ended")
            except asyncio.CancelledError:
                raise
            except TransportError as e:
                error = _exception_text(e)
            except Exception as e:
                logger.error(
                    "Push channel error", address=self.address, error_type=type(e).__name__, error=_exception_text(e), exc_info=True
                )
                error = _exception_text(e)

            if not self._running:
                break
            # A long-lived stream that dropped counts as a fresh failure streak.
            if connected or time.monotonic() - connected_at > self.max_reconnect_delay:
                self._consecutive_push_failures = 0
                delay = self.reconnect_delay
            self._consecutive_push_failures += 1
            self._stats["reconnects"] += 1
            logger.warning(
                "Push channel lost, will reconnect",
                address=self.address,
                error=error,
                consecutive_failures=self._consecutive_push_failures,
                reconnect_delay=delay,
            )
            if self._consecutive_push_failures >= self.degraded_after and not self._degraded:
                self._degraded = True
                logger.warning("Wallet monitor degraded", address=self.address, failures=self._consecutive_push_failures)
                await self._emit(self._on_health, self.address, False)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_reconnect_delay)

    async def _push_recovered(self):
        self._consecutive_push_failures = 0
        if self._degraded:
            self._degraded = False
            logger.info("Wallet monitor recovered", address=self.address)
            await self._emit(self._on_health, self.address, True)

    async def handle_push_notification(self, notification: dict) -> Optional[PurchaseEvent]:
        """Process one ``transactionNotification`` result."""
        signature = notification.get("signature")
        if not signature:
            transaction = (notification.get("transaction") or {}).get("transaction") or {}
            signatures = transaction.get("signatures") or []
            signature = signatures[0] if signatures else None

        def build() -> BalanceSnapshot:
            wrapper = notification.get("transaction")
            if not isinstance(wrapper, dict):
                raise MalformedTransaction("notification without transaction")
            payload = {
                "slot": notification.get("slot"),
                "blockTime": wrapper.get("blockTime"),
                "meta": wrapper.get("meta"),
                "transaction": wrapper.get("transaction"),
            }
            return snapshot_from_rpc_transaction(payload, self.address, signature)

        return await self._observe(signature, build, EventChannel.PUSH)

    # ==================== POLL CHANNEL ====================

    async def _poll_loop(self):
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except (TransportError, RpcError) as e:
                self._stats["poll_errors"] += 1
                logger.warning("Poll failed", address=self.address, error=_exception_text(e))
            except Exception as e:
                self._stats["poll_errors"] += 1
                logger.error("Poll error", address=self.address, error=_exception_text(e), exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def poll_once(self) -> list[PurchaseEvent]:
        """Fetch recent swaps and transfers and process unseen ones oldest slot first."""
        self._stats["poll_cycles"] += 1
        by_signature: dict = {}
        for tx_type in POLL_TRANSACTION_TYPES:
            for item in await self.gateway.get_address_transactions(self.address, tx_type, self.poll_limit):
                if isinstance(item, dict) and item.get("signature"):
                    by_signature.setdefault(item["signature"], item)

        emitted = []
        for item in sorted(by_signature.values(), key=lambda i: i.get("slot") or 0):
            event = await self._observe(
                item["signature"], lambda item=item: snapshot_from_enhanced_transaction(item, self.address), EventChannel.POLL
            )
            if event is not None:
                emitted.append(event)
        return emitted

    # ==================== WEBHOOK CHANNEL ====================

    async def handle_webhook_transaction(self, item: dict) -> Optional[PurchaseEvent]:
        """Process one enhanced transaction delivered by a Helius webhook.

        Shares the seen set with push and poll, so a signature already
        observed on another channel is not emitted again.
        """
        signature = item.get("signature") if isinstance(item, dict) else None
        return await self._observe(
            signature, lambda: snapshot_from_enhanced_transaction(item, self.address), EventChannel.RECONCILED
        )

    # ==================== CLASSIFICATION ====================

    async def _observe(self, signature: Optional[str], build: Callable[[], BalanceSnapshot], channel: EventChannel):
        if not signature:
            self._stats["malformed_skipped"] += 1
            logger.warning("Skipping transaction without signature", address=self.address, channel=channel.value)
            return None
        if not self._check_and_mark(signature):
            return None

        try:
            snapshot = build()
        except (MalformedTransaction, TypeError, ValueError, KeyError) as e:
            self._stats["malformed_skipped"] += 1
            logger.warning(
                "Skipping malformed transaction",
                address=self.address,
                signature=signature,
                channel=channel.value,
                error=_exception_text(e),
            )
            return None

        result = classify(snapshot, self.min_paid_amount)
        if result.kind != ActivityKind.ACQUISITION:
            logger.debug(
                "Wallet activity classified", address=self.address, signature=signature, kind=result.kind.value
            )
            return None

        event = PurchaseEvent(
            source_signature=signature,
            wallet_address=self.address,
            acquired_mint=result.acquired_mint,
            acquired_amount=result.acquired_amount,
            paid_mint=result.paid_mint,
            paid_amount=result.paid_amount,
            observed_at=utcnow(),
            channel=channel,
            slot=snapshot.slot,
        )
        self._stats["events_emitted"] += 1
        logger.info(
            "Purchase detected",
            address=self.address,
            signature=signature,
            channel=channel.value,
            acquired_mint=event.acquired_mint,
            acquired_amount=str(event.acquired_amount),
            paid_mint=event.paid_mint,
            paid_amount=str(event.paid_amount),
        )
        await self._emit(self._on_event, event)
        return event

    async def _emit(self, callback: Optional[Callable], *args):
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("Monitor callback error", address=self.address, error=_exception_text(e), exc_info=True)

    def get_status(self) -> dict:
        return {
            "address": self.address,
            "running": self._running,
            "degraded": self._degraded,
            "consecutive_push_failures": self._consecutive_push_failures,
            "seen": len(self._seen),
            "stats": dict(self._stats),
        }
