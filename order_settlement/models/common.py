"""
Shared helpers for settlement models: timestamps, money and enum parsing.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Optional, Type, TypeVar

from ..core.exceptions import ValidationError, InvalidAmount

CENTS = Decimal("0.01")

# Largest value a NUMERIC(12, 2) column holds
MAX_MONEY = Decimal("9999999999.99")

E = TypeVar("E", bound=Enum)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_money(value: Any, field: str = "amount") -> Decimal:
    """Convert a number or numeric string to a Decimal rounded to cents."""
    if isinstance(value, bool):
        raise InvalidAmount(value, field)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if not amount.is_finite():
            raise InvalidAmount(value, field)
        amount = amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(value, field)
    if abs(amount) > MAX_MONEY:
        raise InvalidAmount(value, field)
    return amount


def parse_enum(enum_cls: Type[E], value: Any, field: Optional[str] = None) -> E:
    """Parse a raw value into a closed enumeration, rejecting unknown values."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(field or enum_cls.__name__, f"must be one of: {allowed}", value)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Accept datetimes or ISO-8601 strings."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
