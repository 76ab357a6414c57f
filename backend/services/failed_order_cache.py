from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from config import settings
from models.trading import FailedOrderRecord, OrderIntent, OrderSide
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("failed_order_cache")


class FailedOrderCache:
    """Last failed order per owner, kept for one-touch retry.

    At most one live record per owner; a newer failure overwrites the older
    one. Records older than the TTL are treated as absent; they are evicted on
    read and swept whenever a new failure is recorded.
    """

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], datetime] = utcnow):
        self.ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else settings.FAILED_ORDER_TTL_SECONDS)
        self._clock = clock
        self._records: dict[str, FailedOrderRecord] = {}

    def _expired(self, record: FailedOrderRecord) -> bool:
        return self._clock() - record.failed_at > self.ttl

    def record_failure(self, intent: OrderIntent, reason: Optional[str] = None) -> FailedOrderRecord:
        record = FailedOrderRecord(
            owner_id=intent.owner_id,
            token_address=intent.token_address,
            amount=intent.amount,
            failed_at=self._clock(),
            side=intent.side,
            amount_is_percent=intent.amount_is_percent,
            max_slippage_bps=intent.max_slippage_bps,
            reason=reason,
        )
        purged = self.purge_expired()
        previous = self._records.get(intent.owner_id)
        self._records[intent.owner_id] = record
        logger.info(
            "Stored failed order for retry",
            owner_id=intent.owner_id,
            token=intent.token_address,
            amount=str(intent.amount),
            replaced=previous is not None,
            purged=purged,
        )
        return record

    def get_last_failed_order(self, owner_id: str) -> Optional[FailedOrderRecord]:
        record = self._records.get(owner_id)
        if record is None:
            return None
        if self._expired(record):
            del self._records[owner_id]
            logger.debug("Failed order expired", owner_id=owner_id)
            return None
        return record

    def has_recent_failed_order(self, owner_id: str) -> bool:
        return self.get_last_failed_order(owner_id) is not None

    def clear(self, owner_id: str) -> None:
        self._records.pop(owner_id, None)

    def take_for_retry(self, owner_id: str) -> Optional[OrderIntent]:
        """Fresh ``created`` intent replaying the failed order's token, side and amount."""
        record = self.get_last_failed_order(owner_id)
        if record is None:
            return None
        return OrderIntent(
            owner_id=record.owner_id,
            token_address=record.token_address,
            side=record.side if isinstance(record.side, OrderSide) else OrderSide(record.side),
            amount=Decimal(record.amount),
            amount_is_percent=record.amount_is_percent,
            max_slippage_bps=record.max_slippage_bps or settings.DEFAULT_SLIPPAGE_BPS,
        )

    def purge_expired(self) -> int:
        expired = [owner for owner, record in self._records.items() if self._expired(record)]
        for owner in expired:
            del self._records[owner]
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)


failed_order_cache = FailedOrderCache()
