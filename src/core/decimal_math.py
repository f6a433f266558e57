from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Context, Decimal, InvalidOperation, localcontext
from typing import Any, Iterable

from src.core.errors import DivisionByZeroError, ValidationError

# Internal precision is well beyond any quantity/currency scale so intermediate
# results are never rounded before the caller asks for it.
PRECISION = 34
QUANTITY_SCALE = 8
CURRENCY_SCALE = 2

ZERO = Decimal(0)
ONE = Decimal(1)

_CONTEXT = Context(prec=PRECISION, rounding=ROUND_HALF_EVEN)


def to_decimal(value: Any, *, field: str = "value") -> Decimal:
    """
    Coerce caller input to Decimal.

    Accepts Decimal, int and numeric strings (thousands separators allowed).
    Floats are refused: a binary float has already lost the exact value.
    """
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric, got bool", field=field)
    elif isinstance(value, int):
        d = Decimal(value)
    elif isinstance(value, float):
        raise ValidationError(f"{field} must not be a float ({value!r}); pass a str or Decimal", field=field)
    elif isinstance(value, str):
        s = value.strip().replace(",", "")
        if not s:
            raise ValidationError(f"{field} is blank", field=field)
        try:
            d = Decimal(s)
        except InvalidOperation:
            raise ValidationError(f"{field} is not a number: {value!r}", field=field) from None
    else:
        raise ValidationError(f"{field} has unsupported type {type(value).__name__}", field=field)
    if not d.is_finite():
        raise ValidationError(f"{field} must be finite", field=field)
    return d


def add(*values: Decimal) -> Decimal:
    with localcontext(_CONTEXT):
        total = ZERO
        for v in values:
            total = total + v
        return +total


def total(values: Iterable[Decimal]) -> Decimal:
    return add(*values)


def sub(a: Decimal, b: Decimal) -> Decimal:
    with localcontext(_CONTEXT):
        return a - b


def mul(a: Decimal, b: Decimal) -> Decimal:
    with localcontext(_CONTEXT):
        return a * b


def div(a: Decimal, b: Decimal, *, scale: int | None = None, rounding: str = ROUND_HALF_EVEN) -> Decimal:
    """Divide at full internal precision, or quantized to `scale` digits with `rounding`."""
    if b == 0:
        raise DivisionByZeroError(f"division by zero: {a} / {b}", numerator=a)
    with localcontext(_CONTEXT) as ctx:
        ctx.rounding = rounding
        q = a / b
    if scale is None:
        return q
    return quantize(q, scale, rounding=rounding)


def quantize(value: Decimal, scale: int, *, rounding: str = ROUND_HALF_EVEN) -> Decimal:
    if scale < 0:
        raise ValidationError(f"scale must be >= 0, got {scale}", scale=scale)
    exp = ONE.scaleb(-scale)
    with localcontext(_CONTEXT):
        return value.quantize(exp, rounding=rounding)


def within(a: Decimal, b: Decimal, epsilon: Decimal) -> bool:
    return abs(sub(a, b)) <= epsilon


def is_zero(value: Decimal, epsilon: Decimal = ZERO) -> bool:
    return abs(value) <= epsilon
