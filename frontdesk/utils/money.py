"""Money arithmetic. All amounts are Decimals quantized to cents."""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Union

TWOPLACES = Decimal("0.01")
MONEY_EPSILON = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

MoneyLike = Union[Decimal, int, float, str]


def _quantize(val: Decimal) -> Decimal:
    return val.quantize(TWOPLACES, rounding=ROUND_HALF_UP)


def _decimal(value: MoneyLike) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = str(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"not a number: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return result


def to_money(value: MoneyLike) -> Decimal:
    """Convert to a 2-place Decimal. Floats go through str() to drop binary drift."""
    return _quantize(_decimal(value))


def to_percentage(value: MoneyLike) -> Decimal:
    return _decimal(value)


def money_sum(values: Iterable[Decimal]) -> Decimal:
    return _quantize(sum(values, ZERO))


def money_equal(a: Decimal, b: Decimal) -> bool:
    """Equal within one cent."""
    return abs(a - b) <= MONEY_EPSILON


def is_positive(amount: Decimal) -> bool:
    """True when the amount is above the one-cent tolerance."""
    return amount > MONEY_EPSILON


def format_amount(amount: Decimal) -> str:
    return f"{_quantize(amount):.2f}"
