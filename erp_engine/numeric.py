from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

QUANTITY_PLACES = Decimal("0.001")
MONEY_PLACES = Decimal("0.01")
ZERO = Decimal("0")


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # str() first so 0.1 stays 0.1 instead of its binary expansion
        value = str(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"not a decimal value: {value!r}") from exc


def qty(value: Any) -> Decimal:
    """Quantity with three decimal places."""
    return _to_decimal(value).quantize(QUANTITY_PLACES, rounding=ROUND_HALF_UP)


def money(value: Any) -> Decimal:
    """Money amount with two decimal places."""
    return _to_decimal(value).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)
