from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import pandas as pd

# Dimension identifiers and the scalar type each one carries.
DIMENSION_FIELDS: Dict[str, type] = {
    "policy_start_year": int,
    "week_number": int,
    "snapshot_date": str,
    "chengdu_branch": str,
    "third_level_organization": str,
    "business_type_category": str,
    "customer_category_3": str,
    "insurance_type": str,
    "coverage_type": str,
    "renewal_status": str,
    "terminal_source": str,
    "is_new_energy_vehicle": bool,
    "is_transferred_vehicle": bool,
    "vehicle_insurance_grade": str,
    "highway_risk_grade": str,
    "large_truck_score": str,
    "small_truck_score": str,
}

ABSOLUTE_FIELDS: tuple = (
    "signed_premium_yuan",
    "matured_premium_yuan",
    "commercial_premium_before_discount_yuan",
    "policy_count",
    "claim_case_count",
    "reported_claim_payment_yuan",
    "expense_amount_yuan",
    "matured_margin_contribution_yuan",
    "variable_cost_amount_yuan",
)

RECORD_FIELDS: tuple = tuple(DIMENSION_FIELDS) + ABSOLUTE_FIELDS

FIELD_GROUPS: Dict[str, List[str]] = {
    "time": ["policy_start_year", "week_number", "snapshot_date"],
    "organization": ["chengdu_branch", "third_level_organization"],
    "business": [
        "business_type_category",
        "customer_category_3",
        "insurance_type",
        "coverage_type",
        "renewal_status",
        "terminal_source",
    ],
    "vehicle": ["is_new_energy_vehicle", "is_transferred_vehicle"],
    "risk": ["vehicle_insurance_grade", "highway_risk_grade", "large_truck_score", "small_truck_score"],
}


class InvalidQueryError(ValueError):
    """Raised when a caller passes parameters the engine cannot honour."""

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class UnknownFieldError(InvalidQueryError):
    def __init__(self, field: str, *, allowed: Iterable[str] = ()) -> None:
        allowed = sorted(allowed)
        hint = f" Allowed: {allowed}." if allowed else ""
        super().__init__(f"Unknown field '{field}'.{hint}", field=field)


@dataclass(frozen=True)
class InsuranceRecord:
    policy_start_year: Optional[int] = None
    week_number: Optional[int] = None
    snapshot_date: Optional[str] = None
    chengdu_branch: Optional[str] = None
    third_level_organization: Optional[str] = None
    business_type_category: Optional[str] = None
    customer_category_3: Optional[str] = None
    insurance_type: Optional[str] = None
    coverage_type: Optional[str] = None
    renewal_status: Optional[str] = None
    terminal_source: Optional[str] = None
    is_new_energy_vehicle: Optional[bool] = None
    is_transferred_vehicle: Optional[bool] = None
    vehicle_insurance_grade: Optional[str] = None
    highway_risk_grade: Optional[str] = None
    large_truck_score: Optional[str] = None
    small_truck_score: Optional[str] = None

    signed_premium_yuan: float = 0.0
    matured_premium_yuan: float = 0.0
    commercial_premium_before_discount_yuan: float = 0.0
    policy_count: float = 0.0
    claim_case_count: float = 0.0
    reported_claim_payment_yuan: float = 0.0
    expense_amount_yuan: float = 0.0
    matured_margin_contribution_yuan: float = 0.0
    variable_cost_amount_yuan: float = 0.0

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "InsuranceRecord":
        """Build a record from a loosely-typed row, ignoring unknown keys."""
        values: Dict[str, Any] = {}
        for name, kind in DIMENSION_FIELDS.items():
            values[name] = coerce_dimension_value(kind, row.get(name))
        for name in ABSOLUTE_FIELDS:
            raw = row.get(name)
            values[name] = 0.0 if is_missing(raw) else raw
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in RECORD_FIELDS}


RecordsLike = Union[pd.DataFrame, Sequence[InsuranceRecord], Sequence[Mapping[str, Any]]]


def is_missing(value: object) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


_TRUE_TOKENS = {"true", "1", "yes", "y", "是"}
_FALSE_TOKENS = {"false", "0", "no", "n", "否"}


def coerce_dimension_value(kind: type, value: object) -> Any:
    """Best-effort conversion of *value* to the dimension's scalar type; ``None`` when it cannot."""
    if is_missing(value):
        return None
    if kind is bool:
        if isinstance(value, bool):
            return value
        token = str(value).strip().lower()
        if token in _TRUE_TOKENS:
            return True
        if token in _FALSE_TOKENS:
            return False
        return None
    if kind is int:
        if isinstance(value, bool):
            return int(value)
        try:
            number = float(str(value).strip())
        except ValueError:
            return None
        if not number.is_integer():
            return None
        return int(number)
    text = str(value).strip()
    return text or None


def records_to_frame(records: RecordsLike) -> pd.DataFrame:
    """
    Frame with every record field as a column and dimension columns holding
    values of their declared type (or ``None``), whatever the input shape.
    """
    if isinstance(records, pd.DataFrame):
        frame = records.copy()
        for col in RECORD_FIELDS:
            if col not in frame.columns:
                frame[col] = None
    else:
        rows = []
        for record in records:
            if not isinstance(record, InsuranceRecord):
                record = InsuranceRecord.from_mapping(record)
            rows.append(record.to_dict())
        frame = pd.DataFrame(rows, columns=list(RECORD_FIELDS))
    return coerce_dimension_columns(frame)


def coerce_dimension_columns(frame: pd.DataFrame) -> pd.DataFrame:
    for name, kind in DIMENSION_FIELDS.items():
        values = [coerce_dimension_value(kind, v) for v in frame[name].tolist()]
        frame[name] = pd.Series(values, index=frame.index, dtype=object)
    return frame


def frame_to_records(frame: pd.DataFrame) -> List[InsuranceRecord]:
    if frame.empty:
        return []
    return [InsuranceRecord.from_mapping(row) for row in frame.to_dict(orient="records")]


def require_dimension(field: str) -> str:
    if field not in DIMENSION_FIELDS:
        raise UnknownFieldError(field, allowed=DIMENSION_FIELDS)
    return field


def require_record_field(field: str) -> str:
    if field not in RECORD_FIELDS:
        raise UnknownFieldError(field, allowed=RECORD_FIELDS)
    return field
