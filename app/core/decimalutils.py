from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, getcontext
from typing import Optional, Union

getcontext().prec = 28
getcontext().rounding = ROUND_HALF_UP

NumberLike = Union[str, float, int, Decimal]


def D(value: NumberLike) -> Decimal:
    """Safe Decimal constructor using string conversion to avoid float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def q_odd(value: NumberLike) -> Decimal:
    return D(value).quantize(Decimal("0.001"))


def q_prob(value: NumberLike) -> Decimal:
    return D(value).quantize(Decimal("0.0001"))


def _finite(value: Decimal) -> Optional[Decimal]:
    return value if value.is_finite() else None


def parse_odd(value) -> Optional[Decimal]:
    """Decimal odd from provider text ("2.10", 2.1); None when missing, not numeric or NaN/Infinity."""
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    try:
        parsed = _finite(D(raw))
    except InvalidOperation:
        return None
    return q_odd(parsed) if parsed is not None else None


def parse_probability(value) -> Optional[Decimal]:
    """Probability as a 0..1 fraction; accepts "45.5%" and 45.5 style percentages."""
    if value is None:
        return None
    raw = str(value).strip().rstrip("%").strip()
    if not raw:
        return None
    try:
        prob = _finite(D(raw))
    except InvalidOperation:
        return None
    if prob is None:
        return None
    if prob > 1:
        prob = prob / 100
    return q_prob(prob)
