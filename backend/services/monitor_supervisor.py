"""
Monitor Supervisor - owns one WalletActivityMonitor per watched address and
fans PurchaseEvents out to subscribers.

Events for an address are held for a short window and released in slot
order, since the push and poll channels can observe transactions out of
order. Delivery to each subscriber runs in its own task: a slow or failing
subscriber never blocks the monitor or the other subscribers.
"""

import asyncio
import inspect
import itertools
from typing import Callable, Iterable, Mapping, Optional, Union

from config import settings
from interfaces.copy_trading import PushTransport
from models.trading import PurchaseEvent
from services.resource_gateway import ResourceGateway, resource_gateway
from services.trade_store import TradeStore, trade_store
from services.wallet_activity_monitor import HeliusTransactionStream, WalletActivityMonitor
from utils.logger import get_logger
from utils.validation import validate_solana_address

logger = get_logger("monitor_supervisor")

DesiredWatches = Union[Mapping[str, Iterable[str]], Iterable[str]]


class MonitorSupervisor:
    def __init__(
        self,
        gateway: Optional[ResourceGateway] = None,
        transport: Optional[PushTransport] = None,
        store: Optional[TradeStore] = None,
        monitor_factory: Optional[Callable] = None,
        reorder_hold_ms: Optional[float] = None,
    ):
        self.gateway = gateway or resource_gateway
        self.transport = transport
        self.store = store
        self._monitor_factory = monitor_factory or self._default_monitor
        self.reorder_hold = (settings.MONITOR_REORDER_HOLD_MS if reorder_hold_ms is None else reorder_hold_ms) / 1000.0

        self._monitors: dict[str, WalletActivityMonitor] = {}
        self._owners: dict[str, set[str]] = {}
        self._degraded: dict[str, bool] = {}
        self._subscribers: list[Callable] = []
        self._lock = asyncio.Lock()
        self._running = False

        # address -> [(slot, arrival, event)] waiting out the reorder hold
        self._pending: dict[str, list] = {}
        self._release_tasks: dict[str, asyncio.Task] = {}
        self._last_slot: dict[str, int] = {}
        self._arrival = itertools.count()
        self._delivery_tasks: set[asyncio.Task] = set()
        self._stats = {
            "events_received": 0,
            "events_delivered": 0,
            "late_events": 0,
            "subscriber_errors": 0,
            "webhook_transactions": 0,
        }

    def _default_monitor(self, address: str, on_event: Callable, on_health: Callable) -> WalletActivityMonitor:
        if self.transport is None:
            self.transport = HeliusTransactionStream()
        return WalletActivityMonitor(
            address, on_event, gateway=self.gateway, transport=self.transport, on_health=on_health
        )

    # ==================== SUBSCRIBERS ====================

    def subscribe(self, callback: Callable):
        """Register ``callback(event)`` for every PurchaseEvent; sync or async."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def owners_for(self, address: str) -> set:
        return set(self._owners.get(address, ()))

    def addresses(self) -> list:
        return sorted(self._monitors)

    # ==================== LIFECYCLE ====================

    async def start(self, desired: Optional[DesiredWatches] = None):
        self._running = True
        if desired is not None:
            await self.sync(desired)
        logger.info("Monitor supervisor started", monitors=len(self._monitors))

    async def stop(self):
        self._running = False
        async with self._lock:
            for address in list(self._monitors):
                await self._stop_monitor(address)
        for address in list(self._pending):
            self._release(address)
        if self._delivery_tasks:
            await asyncio.gather(*list(self._delivery_tasks), return_exceptions=True)
        logger.info("Monitor supervisor stopped", stats=dict(self._stats))

    def _start_monitor(self, address: str):
        monitor = self._monitor_factory(address, self._on_event, self._on_health)
        self._monitors[address] = monitor
        self._degraded[address] = False
        monitor.start()

    async def _stop_monitor(self, address: str):
        monitor = self._monitors.pop(address, None)
        self._owners.pop(address, None)
        self._degraded.pop(address, None)
        if monitor is not None:
            await monitor.stop()

    # ==================== WATCH SET ====================

    async def sync(self, desired: DesiredWatches) -> dict:
        """Make the running monitors match ``desired``; calling it twice changes nothing.

        ``desired`` is either ``{address: owner_ids}`` or a plain iterable of
        addresses (owners already known are kept).
        """
        if isinstance(desired, Mapping):
            wanted = {address: set(owners or ()) for address, owners in desired.items()}
        else:
            wanted = {address: self.owners_for(address) for address in desired}

        async with self._lock:
            current = set(self._monitors)
            to_stop = sorted(current - set(wanted))
            to_start = sorted(set(wanted) - current)
            for address in to_stop:
                await self._stop_monitor(address)
            for address in to_start:
                self._start_monitor(address)
            for address, owners in wanted.items():
                if owners or address not in self._owners:
                    self._owners[address] = set(owners)

        if to_start or to_stop:
            logger.info("Synced watched wallets", started=len(to_start), stopped=len(to_stop), total=len(self._monitors))
        return {"started": to_start, "stopped": to_stop}

    async def register_watch(self, address: str, owner_id: str) -> bool:
        """Watch ``address`` on behalf of ``owner_id``; True when a new monitor was started."""
        address = validate_solana_address(address)
        async with self._lock:
            self._owners.setdefault(address, set()).add(owner_id)
            started = address not in self._monitors
            if started:
                self._start_monitor(address)
        if self.store is not None:
            await self.store.upsert_watch(address, owner_id, active=True)
        logger.info("Registered watch", address=address, owner_id=owner_id, new_monitor=started)
        return started

    async def deregister_watch(self, address: str, owner_id: Optional[str] = None) -> bool:
        """Drop one owner's watch, or every watch when ``owner_id`` is None.

        The monitor stops once no owner is left; returns True if it stopped.
        """
        stopped = False
        async with self._lock:
            owners = self._owners.get(address)
            if owner_id is not None and owners is not None:
                owners.discard(owner_id)
            if owner_id is None or not owners:
                stopped = address in self._monitors
                await self._stop_monitor(address)
        if self.store is not None:
            await self.store.deactivate_watch(address, owner_id)
        logger.info("Deregistered watch", address=address, owner_id=owner_id, monitor_stopped=stopped)
        return stopped

    # ==================== WEBHOOK INTAKE ====================

    @staticmethod
    def _involved_addresses(item: dict) -> set:
        addresses = {item.get("feePayer"), item.get("walletAddress")}
        for entry in item.get("accountData") or []:
            if not isinstance(entry, dict):
                continue
            addresses.add(entry.get("account"))
            for change in entry.get("tokenBalanceChanges") or []:
                if isinstance(change, dict):
                    addresses.add(change.get("userAccount"))
        addresses.discard(None)
        return addresses

    async def ingest_webhook(self, items: Iterable) -> dict:
        """Route webhook-delivered enhanced transactions to the monitors they touch.

        Transactions that involve no watched address are skipped.
        """
        summary = {"received": 0, "routed": 0, "unwatched": 0, "malformed": 0}
        for item in items:
            summary["received"] += 1
            if not isinstance(item, dict) or not item.get("signature"):
                summary["malformed"] += 1
                continue
            targets = [self._monitors[a] for a in sorted(self._involved_addresses(item)) if a in self._monitors]
            if not targets:
                summary["unwatched"] += 1
                continue
            for monitor in targets:
                summary["routed"] += 1
                await monitor.handle_webhook_transaction(item)
        self._stats["webhook_transactions"] += summary["received"]
        if summary["malformed"] or summary["unwatched"]:
            logger.debug("Webhook transactions skipped", unwatched=summary["unwatched"], malformed=summary["malformed"])
        return summary

    # ==================== EVENT ROUTING ====================

    async def _on_event(self, event: PurchaseEvent):
        self._stats["events_received"] += 1
        address = event.wallet_address
        if self.reorder_hold <= 0:
            self._deliver(event)
            return
        self._pending.setdefault(address, []).append((event.slot, next(self._arrival), event))
        task = self._release_tasks.get(address)
        if task is None or task.done():
            self._release_tasks[address] = asyncio.create_task(self._release_after_hold(address))

    async def _release_after_hold(self, address: str):
        await asyncio.sleep(self.reorder_hold)
        self._release_tasks.pop(address, None)
        self._release(address)

    def _release(self, address: str):
        batch = self._pending.pop(address, [])
        # Unknown slots sort last, keeping their arrival order.
        batch.sort(key=lambda item: (item[0] is None, item[0] or 0, item[1]))
        for _, _, event in batch:
            self._deliver(event)

    def _deliver(self, event: PurchaseEvent):
        address = event.wallet_address
        if event.slot is not None:
            last = self._last_slot.get(address)
            if last is not None and event.slot < last:
                self._stats["late_events"] += 1
                logger.warning(
                    "Delivering late purchase event",
                    address=address,
                    signature=event.source_signature,
                    slot=event.slot,
                    last_delivered_slot=last,
                )
            else:
                self._last_slot[address] = event.slot

        self._stats["events_delivered"] += 1
        if self.store is not None:
            self._spawn(self._persist(event))
        for subscriber in list(self._subscribers):
            self._spawn(self._notify(subscriber, event))

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._delivery_tasks.add(task)
        task.add_done_callback(self._delivery_tasks.discard)

    async def _notify(self, subscriber: Callable, event: PurchaseEvent):
        try:
            result = subscriber(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._stats["subscriber_errors"] += 1
            logger.error(
                "Purchase event subscriber failed",
                subscriber=getattr(subscriber, "__qualname__", repr(subscriber)),
                signature=event.source_signature,
                error=str(e),
                exc_info=True,
            )

    async def _persist(self, event: PurchaseEvent):
        await self.store.record_purchase_event(event)
        await self.store.touch_wallet_activity(event.wallet_address, event.observed_at)

    async def drain(self):
        """Release held events now and wait for in-flight deliveries."""
        for address, task in list(self._release_tasks.items()):
            task.cancel()
            self._release_tasks.pop(address, None)
        for address in list(self._pending):
            self._release(address)
        while self._delivery_tasks:
            await asyncio.gather(*list(self._delivery_tasks), return_exceptions=True)

    # ==================== HEALTH ====================

    def _on_health(self, address: str, healthy: bool):
        if address not in self._monitors:
            return
        was_degraded = self._degraded.get(address, False)
        self._degraded[address] = not healthy
        if was_degraded and healthy:
            logger.info("Watched wallet monitor recovered", address=address)
        elif not was_degraded and not healthy:
            logger.warning("Watched wallet monitor degraded", address=address)

    def is_degraded(self, address: str) -> bool:
        return self._degraded.get(address, False)

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "monitors": {
                address: {
                    **monitor.get_status(),
                    "owners": sorted(self._owners.get(address, ())),
                    "degraded": self._degraded.get(address, False),
                }
                for address, monitor in sorted(self._monitors.items())
            },
            "degraded": sorted(a for a, flag in self._degraded.items() if flag),
            "subscribers": len(self._subscribers),
            "pending_events": sum(len(v) for v in self._pending.values()),
            "stats": dict(self._stats),
        }


monitor_supervisor = MonitorSupervisor(store=trade_store)
