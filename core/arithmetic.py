from __future__ import annotations

import math
from decimal import ROUND_HALF_DOWN, ROUND_HALF_UP, Context, Decimal
from typing import List, Literal, Optional

import pandas as pd

ValueKind = Literal["currency", "percentage", "count", "ratio"]

# Precision for quantizing any finite float at the ndigits used here.
_WIDE = Context(prec=400)


def to_number(value: object) -> float:
    """Coerce an absolute-value cell to float; anything unusable counts as 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, str):
        value = value.replace(",", "").replace("，", "").strip()
        if not value:
            return 0.0
    try:
        out = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(out) or math.isinf(out):
        return 0.0
    return out


def safe_divide(numerator: float, denominator: Optional[float], warning: str, warnings: List[str]) -> float:
    """Divide, or return 0 and record *warning* when the denominator is zero or undefined."""
    if denominator is None or denominator == 0 or pd.isna(denominator):
        if warning:
            warnings.append(warning)
        return 0.0
    return numerator / denominator


def round_half_up(value: object, ndigits: int = 0) -> Optional[float]:
    """
    Round halves towards positive infinity (-12.25 -> -12.2, 12.25 -> 12.3).

    Quantizes under a context wide enough for any finite float, so huge
    ratios round instead of raising; infinities pass through unchanged.
    """
    if value is None or pd.isna(value):
        return None
    number = float(value)  # type: ignore[arg-type]
    if math.isinf(number):
        return number
    exact = Decimal(str(number))
    q = Decimal(10) ** -ndigits
    rounding = ROUND_HALF_DOWN if exact < 0 else ROUND_HALF_UP
    return float(exact.quantize(q, rounding=rounding, context=_WIDE))


def format_value(value: object, kind: ValueKind) -> str:
    if value is None or pd.isna(value):
        return "-"
    number = float(value)  # type: ignore[arg-type]
    if kind == "currency":
        return f"¥{number:,.0f}"
    if kind == "percentage":
        return f"{number:.2f}%"
    if kind == "count":
        return f"{round_half_up(number):,.0f}"
    if kind == "ratio":
        return f"{number:.4f}"
    return str(value)


def growth_rate(current: float, previous: float) -> float:
    """Period-over-period growth in percent; 100 when growing from zero."""
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / previous * 100


def moving_average(values: List[float], window: int) -> List[float]:
    if window <= 0 or len(values) < window:
        return list(values)
    series = pd.Series(values, dtype=float)
    return series.rolling(window).mean().dropna().tolist()
