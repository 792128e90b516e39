"""Exact numeric column types for token amounts and USD values.

PostgreSQL stores both natively as NUMERIC. SQLite has no arbitrary
precision numeric storage (NUMERIC columns round-trip through REAL), so
there the values are persisted as canonical decimal strings.
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Context, Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import Numeric, String, TypeDecorator

from config import settings

TOKEN_AMOUNT_PRECISION = 78  # fits uint256
USD_PRECISION = 38
_QUANTIZE_CONTEXT = Context(prec=120)


def usd_quantum(places: int | None = None) -> Decimal:
    return Decimal(1).scaleb(-(places if places is not None else settings.USD_DECIMAL_PLACES))


def quantize_usd(value: Decimal, places: int | None = None) -> Decimal:
    """Round a USD value to the configured fixed-point scale (banker's rounding)."""
    return value.quantize(usd_quantum(places), rounding=ROUND_HALF_EVEN, context=_QUANTIZE_CONTEXT)


class TokenAmount(TypeDecorator):
    """Base-unit token quantity as a Python ``int`` (no precision loss)."""

    impl = String(TOKEN_AMOUNT_PRECISION + 2)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(TOKEN_AMOUNT_PRECISION, 0, asdecimal=True))
        return dialect.type_descriptor(self.impl)

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, Decimal, str)):
            raise ValueError(f"Invalid token amount: {value!r}")
        try:
            amount = int(Decimal(str(value)))
        except (InvalidOperation, ValueError) as exc:
            raise ValueError(f"Invalid token amount: {value!r}") from exc
        if dialect.name == "postgresql":
            return Decimal(amount)
        return str(amount)

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return int(Decimal(str(value)))


class UsdAmount(TypeDecorator):
    """USD value as a ``Decimal`` quantized to ``USD_DECIMAL_PLACES``."""

    impl = String(USD_PRECISION + 4)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(
                Numeric(USD_PRECISION, settings.USD_DECIMAL_PLACES, asdecimal=True)
            )
        return dialect.type_descriptor(self.impl)

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        if isinstance(value, float):
            # repr-based conversion so 0.1 stays 0.1
            value = str(value)
        try:
            amount = quantize_usd(Decimal(str(value)))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid USD value: {value!r}") from exc
        if dialect.name == "postgresql":
            return amount
        return format(amount, "f")

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return Decimal(str(value))
