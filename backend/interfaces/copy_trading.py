"""Contracts for the collaborators that feed copy-trading decisions."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol


@dataclass
class CopyTradeSettings:
    """Per-owner copy-trade constraints supplied by the settings collaborator."""

    enabled: bool = True
    auto_confirm: bool = False
    min_trade_amount: Decimal = Decimal("0.01")
    max_trade_amount: Decimal = Decimal("1")
    max_daily_trades: int = 10
    slippage_bps: Optional[int] = None
    fixed_amount: Optional[Decimal] = None  # SOL spent when the source paid in a stablecoin


class CopyTradeSettingsProvider(Protocol):
    async def get_settings(self, owner_id: str) -> Optional[CopyTradeSettings]:
        """Current settings for ``owner_id``; None disables copy trading for them."""


class PushTransport(Protocol):
    """Streaming subscription used by the push channel of a wallet monitor."""

    def subscribe(
        self, address: str, on_connected: Optional[Callable[[], Awaitable[None]]] = None
    ) -> AsyncIterator[dict]:
        """Yield transaction notifications for ``address`` until the stream drops.

        ``on_connected`` is awaited once the subscription is confirmed, before
        any notification, so a quiet but healthy stream is distinguishable
        from one that never connected. Implementations raise
        ``TransportError`` (or end the iteration) on disconnect; the caller
        owns reconnecting.
        """
