"""Persistence of watch lists, detected purchases and order outcomes.

Writes are best effort: a storage error is logged and swallowed so that it
never fails an order or stops a monitor.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models.database import (
    AsyncSessionLocal,
    ExecutionAttemptRecord,
    OrderRecord,
    PurchaseEventRecord,
    WatchedWallet,
)
from models.trading import OrderIntent, OrderResult, PurchaseEvent
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("trade_store")


class TradeStore:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    # ==================== WATCH LIST ====================

    async def upsert_watch(self, address: str, owner_id: str, active: bool = True) -> None:
        try:
            async with self._session_factory() as session:
                existing = (
                    await session.execute(
                        select(WatchedWallet).where(
                            WatchedWallet.address == address, WatchedWallet.owner_id == owner_id
                        )
                    )
                ).scalar_one_or_none()
                if existing is None:
                    session.add(WatchedWallet(address=address, owner_id=owner_id, active=active))
                else:
                    existing.active = active
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to persist watch", address=address, owner_id=owner_id, error=str(e))

    async def deactivate_watch(self, address: str, owner_id: Optional[str] = None) -> None:
        stmt = update(WatchedWallet).where(WatchedWallet.address == address)
        if owner_id is not None:
            stmt = stmt.where(WatchedWallet.owner_id == owner_id)
        try:
            async with self._session_factory() as session:
                await session.execute(stmt.values(active=False))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to deactivate watch", address=address, error=str(e))

    async def list_active_watches(self) -> dict:
        """address -> set of owner ids, for every active watch."""
        try:
            async with self._session_factory() as session:
                rows = (
                    await session.execute(
                        select(WatchedWallet.address, WatchedWallet.owner_id).where(WatchedWallet.active.is_(True))
                    )
                ).all()
        except SQLAlchemyError as e:
            logger.error("Failed to load watch list", error=str(e))
            return {}
        watches: dict = {}
        for address, owner_id in rows:
            watches.setdefault(address, set()).add(owner_id)
        return watches

    async def touch_wallet_activity(self, address: str, at: Optional[datetime] = None) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(WatchedWallet)
                    .where(WatchedWallet.address == address)
                    .values(last_activity_time=at or utcnow())
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning("Failed to update wallet activity time", address=address, error=str(e))

    # ==================== ACTIVITY ====================

    async def record_purchase_event(self, event: PurchaseEvent) -> None:
        try:
            async with self._session_factory() as session:
                session.add(
                    PurchaseEventRecord(
                        source_signature=event.source_signature,
                        wallet_address=event.wallet_address,
                        acquired_mint=event.acquired_mint,
                        acquired_amount=event.acquired_amount,
                        paid_mint=event.paid_mint,
                        paid_amount=event.paid_amount,
                        slot=event.slot,
                        channel=event.channel.value,
                        observed_at=event.observed_at,
                    )
                )
                await session.commit()
        except IntegrityError:
            logger.debug("Purchase event already stored", signature=event.source_signature)
        except SQLAlchemyError as e:
            logger.error("Failed to persist purchase event", signature=event.source_signature, error=str(e))

    # ==================== ORDERS ====================

    async def record_order(self, intent: OrderIntent, result: OrderResult) -> None:
        execution = result.result
        record = OrderRecord(
            id=intent.id,
            owner_id=intent.owner_id,
            token_address=intent.token_address,
            side=intent.side.value,
            amount=intent.amount,
            amount_is_percent=intent.amount_is_percent,
            max_slippage_bps=intent.max_slippage_bps,
            originating_event_id=intent.originating_event_id,
            status=intent.status.value,
            provider=execution.provider if execution else None,
            signature=execution.signature if execution else None,
            realized_price=execution.realized_price if execution else None,
            platform_fee=execution.platform_fee if execution else None,
            network_fee=execution.network_fee if execution else None,
            price_impact_pct=execution.price_impact_pct if execution else None,
            error_type=result.error_type,
            error_message=result.error_message,
            created_at=intent.created_at,
            completed_at=utcnow(),
        )
        attempts = [
            ExecutionAttemptRecord(
                order_id=intent.id,
                sequence=attempt.sequence,
                provider=attempt.provider,
                quote=attempt.quote.to_dict() if attempt.quote else None,
                submitted_at=attempt.submitted_at,
                signature=attempt.signature,
                outcome=attempt.outcome.value,
                reason=attempt.reason,
                stage=attempt.stage,
                stage_timings_ms=dict(attempt.stage_timings_ms),
            )
            for attempt in intent.attempts
        ]
        try:
            async with self._session_factory() as session:
                session.add(record)
                await session.flush()
                session.add_all(attempts)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to persist order", order_id=intent.id, error=str(e))


trade_store = TradeStore()
