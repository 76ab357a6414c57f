"""Shared SQLAlchemy column types used across ORM models."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import Numeric, TypeDecorator


class TokenAmount(TypeDecorator):
    """Persist token / SOL amounts as NUMERIC and hand them back as ``Decimal``.

    SPL tokens carry up to 9 (occasionally more) decimals and supplies well
    beyond float precision, so amounts never round-trip through ``float``.
    """

    impl = Numeric(38, 18, asdecimal=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        if isinstance(value, Decimal):
            return value
        try:
            return Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid token amount: {value!r}") from exc

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return value if isinstance(value, Decimal) else Decimal(str(value))
