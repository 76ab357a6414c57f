"""Execution interface contracts.

Providers quote and build swaps; the key-custody collaborator hands the
engine a signer for the duration of one call. The core never sees key
material, only the ``sign`` capability.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Optional, Protocol, Union, runtime_checkable

from models.trading import Quote


@dataclass
class BuiltTransaction:
    """Unsigned transaction(s) for one quote, submitted in order; the last is the swap."""

    provider_id: str
    transactions: list
    prioritization_fee_lamports: int = 0
    last_valid_block_height: Optional[int] = None
    metadata: dict = field(default_factory=dict)


@runtime_checkable
class Signer(Protocol):
    """Ready-to-sign capability for one owner's wallet."""

    public_key: str

    def sign(self, transaction: bytes) -> Union[bytes, Awaitable[bytes]]:
        """Return the signed serialized transaction."""


class KeyCustody(Protocol):
    """Supplies signers for owners; returns None when the owner has no wallet."""

    async def signer_for(self, owner_id: str) -> Optional[Signer]:
        """Resolve a signer for ``owner_id``."""


class ExecutionProvider(Protocol):
    """Quote-and-build capability of one swap backend."""

    provider_id: str

    async def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Quote:
        """Quote swapping ``amount`` raw units of ``input_mint``."""

    async def build_transaction(self, quote: Quote, owner_public_key: str) -> BuiltTransaction:
        """Build unsigned transaction(s) executing ``quote`` for the owner."""

    def describe_error(self, message: str) -> str:
        """Translate an upstream/on-chain error message into a user-facing reason."""
