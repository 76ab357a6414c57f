import re
from decimal import Decimal, InvalidOperation
from typing import Optional

from pydantic import BaseModel, Field, field_validator

# Base58 alphabet (no 0, O, I, l); public keys encode to 32-44 characters.
SOLANA_ADDRESS_REGEX = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def validate_solana_address(address: str, name: str = "address") -> str:
    """Validate Solana public key / mint address format"""
    if not address:
        raise ValueError(f"{name} cannot be empty")

    address = str(address).strip()

    if not SOLANA_ADDRESS_REGEX.match(address):
        raise ValueError(f"Invalid {name} format: {address}")

    return address


def validate_positive_amount(value, name: str) -> Decimal:
    """Coerce to Decimal and require a finite value > 0"""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValueError(f"{name} must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValueError(f"{name} must be greater than 0")
    return amount


def validate_percentage(value: Decimal, name: str) -> Decimal:
    """Percent-of-balance amounts must fall in (0, 100]"""
    if value <= 0 or value > 100:
        raise ValueError(f"{name} must be between 0 and 100")
    return value


def validate_slippage_bps(value: int, max_bps: int) -> int:
    try:
        bps = int(value)
    except (TypeError, ValueError):
        raise ValueError("max_slippage_bps must be an integer")
    if bps != value or bps < 1 or bps > max_bps:
        raise ValueError(f"max_slippage_bps must be between 1 and {max_bps}")
    return bps


class WatchRequest(BaseModel):
    """Body of POST /api/watch"""

    address: str
    owner_id: str = Field(min_length=1, max_length=128)

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return validate_solana_address(v)


class OrderRequest(BaseModel):
    """Body of POST /api/orders"""

    owner_id: str = Field(min_length=1, max_length=128)
    token_address: str
    side: str = Field(pattern="^(buy|sell)$")
    amount: Decimal = Field(gt=0)
    amount_is_percent: bool = False
    max_slippage_bps: Optional[int] = Field(default=None, ge=1)

    @field_validator("token_address")
    @classmethod
    def validate_token(cls, v: str) -> str:
        return validate_solana_address(v, "token_address")
