"""
core/aggregation.py

Groups insurance records by a dimension key and sums the absolute-value
fields of each group.

Group keys are tuples of canonical tokens, one per requested dimension.
A missing value becomes the ``NULL`` sentinel, which never compares equal
to a string, so ``("a|b",)`` and ``("a", "b")`` or ``(NULL, "x")`` and
``("x", NULL)`` always land in different groups.

Sums are taken over each group's members in input order; groups are
returned in first-seen order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

import pandas as pd

from core.arithmetic import to_number
from core.records import (
    ABSOLUTE_FIELDS,
    DIMENSION_FIELDS,
    RecordsLike,
    coerce_dimension_value,
    is_missing,
    records_to_frame,
    require_dimension,
)

logger = logging.getLogger(__name__)


class _NullToken:
    __slots__ = ()

    def __repr__(self) -> str:
        return "NULL"

    def __reduce__(self) -> str:
        return "NULL"


NULL = _NullToken()

DimensionKey = Tuple[Any, ...]


@dataclass(frozen=True)
class AggregatedGroup:
    dimensions: Dict[str, Any] = field(default_factory=dict)
    record_count: int = 0
    signed_premium_yuan: float = 0.0
    matured_premium_yuan: float = 0.0
    commercial_premium_before_discount_yuan: float = 0.0
    policy_count: float = 0.0
    claim_case_count: float = 0.0
    reported_claim_payment_yuan: float = 0.0
    expense_amount_yuan: float = 0.0
    matured_margin_contribution_yuan: float = 0.0
    variable_cost_amount_yuan: float = 0.0

    def absolute_values(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in ABSOLUTE_FIELDS}


def canonical_token(value: object) -> Any:
    """Canonical, hashable form of one dimension value."""
    if is_missing(value):
        return NULL
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if hasattr(value, "item") and not isinstance(value, str):
        # numpy scalars
        return canonical_token(value.item())  # type: ignore[union-attr]
    text = str(value).strip()
    return text if text else NULL


def dimension_key(row: Sequence[object]) -> DimensionKey:
    return tuple(canonical_token(v) for v in row)


def _restore(field_name: str, value: object) -> Any:
    return coerce_dimension_value(DIMENSION_FIELDS[field_name], value)


def _numeric_frame(frame: pd.DataFrame) -> pd.DataFrame:
    numeric = pd.DataFrame(index=frame.index)
    for col in ABSOLUTE_FIELDS:
        numeric[col] = frame[col].map(to_number).astype(float)
    return numeric


def _sum_in_order(values: pd.Series) -> float:
    total = 0.0
    for v in values.tolist():
        total += v
    return total


def aggregate(records: RecordsLike, dimension_fields: Sequence[str] = ()) -> List[AggregatedGroup]:
    """
    Partition *records* by their projection onto *dimension_fields* and sum
    every absolute-value field per partition.

    An empty dimension list collapses the whole input into one group with an
    empty dimension map. Empty input yields an empty list.
    """
    dims = [require_dimension(f) for f in dimension_fields]
    frame = records_to_frame(records)
    if frame.empty:
        return []

    frame = frame.reset_index(drop=True)
    numeric = _numeric_frame(frame)

    if not dims:
        return [_build_group({}, numeric)]

    keys = [dimension_key(row) for row in frame[dims].itertuples(index=False, name=None)]
    codes: Dict[DimensionKey, int] = {}
    group_codes = [codes.setdefault(key, len(codes)) for key in keys]
    numeric["_group"] = group_codes

    groups: List[AggregatedGroup] = []
    for _, members in numeric.groupby("_group", sort=True):
        first = members.index[0]
        dimension_values = {d: _restore(d, frame.at[first, d]) for d in dims}
        groups.append(_build_group(dimension_values, members))
    logger.debug("aggregate: %d records -> %d groups by %s", len(frame), len(groups), dims)
    return groups


def aggregate_totals(records: RecordsLike) -> AggregatedGroup:
    """Single group over all records; an all-zero group when *records* is empty."""
    groups = aggregate(records, [])
    return groups[0] if groups else AggregatedGroup()


def _build_group(dimension_values: Dict[str, Any], members: pd.DataFrame) -> AggregatedGroup:
    sums = {col: _sum_in_order(members[col]) for col in ABSOLUTE_FIELDS}
    return AggregatedGroup(dimensions=dimension_values, record_count=int(len(members)), **sums)
