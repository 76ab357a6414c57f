import asyncio
from collections import OrderedDict
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional

from config import settings as app_settings
from interfaces.copy_trading import CopyTradeSettings, CopyTradeSettingsProvider
from interfaces.execution import KeyCustody
from models.trading import SOL_MINT, OrderIntent, OrderResult, OrderSide, PurchaseEvent
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("copy_trader")

# Maximum size of in-memory dedup cache before eviction
_DEDUP_CACHE_MAX = 10_000


class CopyTradingService:
    """Turns PurchaseEvents on watched wallets into buy orders for their owners.

    Each owner of the watched address is handled independently with their
    own settings:
    - disabled, or not auto-confirmed: skipped
    - SOL-paid purchase: mirrors the SOL amount, capped at max_trade_amount
    - stablecoin-paid purchase: spends the owner's fixed_amount instead
    - below min_trade_amount, or past max_daily_trades for the UTC day: skipped

    Signers are requested from the key-custody collaborator for the duration
    of one order only.
    """

    def __init__(
        self,
        supervisor=None,
        engine=None,
        settings_provider: Optional[CopyTradeSettingsProvider] = None,
        key_custody: Optional[KeyCustody] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._supervisor = supervisor
        self._engine = engine
        self.settings_provider = settings_provider
        self.key_custody = key_custody
        self._clock = clock
        self._running = False
        # In-memory dedup cache: owner:signature -> first seen
        self._dedup_cache: "OrderedDict[str, datetime]" = OrderedDict()
        # owner_id -> (UTC day, orders submitted that day)
        self._daily_trades: dict[str, tuple[date, int]] = {}
        self._stats = {"events": 0, "copied": 0, "failed": 0, "skipped": 0}

    @property
    def supervisor(self):
        if self._supervisor is None:
            from services.monitor_supervisor import monitor_supervisor

            self._supervisor = monitor_supervisor
        return self._supervisor

    @property
    def engine(self):
        if self._engine is None:
            from services.order_executor import order_executor

            self._engine = order_executor
        return self._engine

    def configure(
        self,
        settings_provider: Optional[CopyTradeSettingsProvider] = None,
        key_custody: Optional[KeyCustody] = None,
    ):
        if settings_provider is not None:
            self.settings_provider = settings_provider
        if key_custody is not None:
            self.key_custody = key_custody

    # ==================== SERVICE LIFECYCLE ====================

    async def start(self):
        if self._running:
            return
        self._running = True
        self.supervisor.subscribe(self.on_purchase_event)
        logger.info(
            "Copy trading router started",
            settings_provider=self.settings_provider is not None,
            key_custody=self.key_custody is not None,
        )

    def stop(self):
        self._running = False
        self.supervisor.unsubscribe(self.on_purchase_event)
        logger.info("Copy trading router stopped", stats=dict(self._stats))

    # ==================== EVENT PROCESSING ====================

    def _dedup_check_and_mark(self, dedup_key: str) -> bool:
        """True if ``dedup_key`` was already processed; marks it otherwise."""
        if dedup_key in self._dedup_cache:
            return True
        self._dedup_cache[dedup_key] = self._clock()
        while len(self._dedup_cache) > _DEDUP_CACHE_MAX:
            self._dedup_cache.popitem(last=False)
        return False

    async def on_purchase_event(self, event: PurchaseEvent) -> list:
        """Subscriber entry point; returns the OrderResults it produced."""
        self._stats["events"] += 1
        if self.settings_provider is None or self.key_custody is None:
            logger.debug("Copy trading not configured, ignoring event", signature=event.source_signature)
            return []

        owners = sorted(self.supervisor.owners_for(event.wallet_address))
        if not owners:
            return []
        logger.info(
            "Purchase event routed to owners",
            wallet=event.wallet_address,
            signature=event.source_signature,
            owners=len(owners),
        )
        outcomes = await asyncio.gather(
            *(self._copy_for_owner(event, owner_id) for owner_id in owners), return_exceptions=True
        )
        results = []
        for owner_id, outcome in zip(owners, outcomes):
            if isinstance(outcome, BaseException):
                self._stats["failed"] += 1
                logger.error("Copy trade error", owner_id=owner_id, signature=event.source_signature, error=str(outcome))
            elif outcome is not None:
                results.append(outcome)
        return results

    def _should_copy_trade(
        self, event: PurchaseEvent, owner_id: str, config: Optional[CopyTradeSettings]
    ) -> tuple[bool, str]:
        """Determine whether an event should be copied for one owner.

        Returns (should_copy, reason) tuple.
        """
        if config is None or not config.enabled:
            return False, "copy trading disabled"
        if not config.auto_confirm:
            return False, "auto-confirm off"
        if self._trades_today(owner_id) >= config.max_daily_trades:
            return False, f"daily limit of {config.max_daily_trades} trades reached"
        if event.acquired_mint == SOL_MINT:
            return False, "acquired asset is SOL"
        return True, "ok"

    def _calculate_copy_size(self, event: PurchaseEvent, config: CopyTradeSettings) -> Optional[Decimal]:
        """SOL to spend mirroring ``event``, or None when it falls outside the owner's limits."""
        if event.paid_mint == SOL_MINT:
            amount = min(Decimal(event.paid_amount), Decimal(config.max_trade_amount))
        elif config.fixed_amount is not None:
            amount = min(Decimal(config.fixed_amount), Decimal(config.max_trade_amount))
        else:
            return None
        if amount < Decimal(config.min_trade_amount):
            return None
        return amount

    # ==================== DAILY LIMIT ====================

    def _trades_today(self, owner_id: str) -> int:
        day, count = self._daily_trades.get(owner_id, (None, 0))
        return count if day == self._clock().date() else 0

    def _reserve_trade(self, owner_id: str, limit: int) -> bool:
        today = self._clock().date()
        count = self._trades_today(owner_id)
        if count >= limit:
            return False
        self._daily_trades[owner_id] = (today, count + 1)
        return True

    def _release_trade(self, owner_id: str):
        day, count = self._daily_trades.get(owner_id, (None, 0))
        if day == self._clock().date() and count > 0:
            self._daily_trades[owner_id] = (day, count - 1)

    # ==================== TRADE EXECUTION ====================

    async def _copy_for_owner(self, event: PurchaseEvent, owner_id: str) -> Optional[OrderResult]:
        if self._dedup_check_and_mark(f"{owner_id}:{event.event_id}"):
            logger.debug("Copy dedup: already processed", owner_id=owner_id, signature=event.source_signature)
            return None

        config = await self.settings_provider.get_settings(owner_id)
        should_copy, reason = self._should_copy_trade(event, owner_id, config)
        if not should_copy:
            self._stats["skipped"] += 1
            logger.debug("Copy skip", owner_id=owner_id, reason=reason, signature=event.source_signature)
            return None

        amount = self._calculate_copy_size(event, config)
        if amount is None:
            self._stats["skipped"] += 1
            logger.info(
                "Copy skip: amount outside limits",
                owner_id=owner_id,
                paid_mint=event.paid_mint,
                paid_amount=str(event.paid_amount),
                min_trade_amount=str(config.min_trade_amount),
            )
            return None

        signer = await self.key_custody.signer_for(owner_id)
        if signer is None:
            self._stats["skipped"] += 1
            logger.warning("Copy skip: no signer available", owner_id=owner_id)
            return None

        # Reserved before awaiting the engine so concurrent events can't overshoot the cap.
        if not self._reserve_trade(owner_id, config.max_daily_trades):
            self._stats["skipped"] += 1
            logger.debug("Copy skip: daily limit reached", owner_id=owner_id)
            return None

        intent = OrderIntent(
            owner_id=owner_id,
            token_address=event.acquired_mint,
            side=OrderSide.BUY,
            amount=amount,
            max_slippage_bps=config.slippage_bps or app_settings.DEFAULT_SLIPPAGE_BPS,
            originating_event_id=event.event_id,
        )
        result = await self.engine.submit_order(intent, signer)
        if result.success:
            self._stats["copied"] += 1
        else:
            self._stats["failed"] += 1
            self._release_trade(owner_id)
        logger.info(
            "Copy trade complete",
            owner_id=owner_id,
            token=event.acquired_mint,
            amount=str(amount),
            success=result.success,
            error_type=result.error_type,
            source_signature=event.source_signature,
        )
        return result

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "configured": self.settings_provider is not None and self.key_custody is not None,
            "stats": dict(self._stats),
        }


copy_trading_service = CopyTradingService()
