from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Literal, Mapping, Optional, Tuple

import pandas as pd

from core.config import QuerySettings, get_query_settings
from core.records import (
    DIMENSION_FIELDS,
    InvalidQueryError,
    is_missing,
    require_dimension,
    require_record_field,
)

SortOrder = Literal["asc", "desc"]
Filters = Dict[str, Tuple[Any, ...]]

_TRUE_TOKENS = {"true", "1", "yes", "y", "是"}
_FALSE_TOKENS = {"false", "0", "no", "n", "否"}


@dataclass(frozen=True)
class SortSpec:
    field: str
    order: SortOrder = "asc"


@dataclass(frozen=True)
class PageRequest:
    page: int = 1
    page_size: int = 1000


def _coerce_int(field: str, value: object) -> int:
    if isinstance(value, bool):
        raise InvalidQueryError(f"'{field}' expects an integer, got {value!r}.", field=field)
    if isinstance(value, int):
        return value
    try:
        number = float(str(value).strip())
    except ValueError:
        raise InvalidQueryError(f"'{field}' expects an integer, got {value!r}.", field=field) from None
    if not number.is_integer():
        raise InvalidQueryError(f"'{field}' expects an integer, got {value!r}.", field=field)
    return int(number)


def _coerce_bool(field: str, value: object) -> bool:
    if isinstance(value, bool):
        return value
    token = str(value).strip().lower()
    if token in _TRUE_TOKENS:
        return True
    if token in _FALSE_TOKENS:
        return False
    raise InvalidQueryError(f"'{field}' expects a boolean, got {value!r}.", field=field)


def coerce_filter_value(field: str, value: object) -> Any:
    kind = DIMENSION_FIELDS[field]
    if kind is int:
        return _coerce_int(field, value)
    if kind is bool:
        return _coerce_bool(field, value)
    return str(value).strip()


def _as_values(raw: object) -> Iterable[object]:
    if isinstance(raw, (list, tuple, set, frozenset)):
        return raw
    return [raw]


def normalize_filters(raw: Optional[Mapping[str, object]]) -> Filters:
    """
    Validate and type a loosely-typed filter mapping.

    Each key must be a dimension field. Each value is either one value or a
    collection of values (any-of). ``None`` and empty collections mean no
    constraint and are dropped. Values are coerced with the field's declared
    type and stored sorted and de-duplicated so equal filters compare equal.
    """
    if not raw:
        return {}
    out: Filters = {}
    for field in sorted(raw):
        require_dimension(field)
        value = raw[field]
        if value is None:
            continue
        values = [coerce_filter_value(field, v) for v in _as_values(value) if not is_missing(v)]
        if not values:
            continue
        out[field] = tuple(sorted(set(values), key=lambda v: (str(type(v)), str(v))))
    return out


def normalize_sort(field: Optional[str], order: Optional[str] = "asc") -> Optional[SortSpec]:
    if not field:
        return None
    require_record_field(field)
    direction = (order or "asc").strip().lower()
    if direction not in {"asc", "desc"}:
        raise InvalidQueryError(f"Sort order must be 'asc' or 'desc', got {order!r}.", field="sort_order")
    return SortSpec(field=field, order=direction)  # type: ignore[arg-type]


def normalize_page(page: object = 1, page_size: object = None, *, settings: Optional[QuerySettings] = None) -> PageRequest:
    settings = settings or get_query_settings()
    page_num = _coerce_int("page", 1 if page is None else page)
    if page_num < 1:
        raise InvalidQueryError("page must be >= 1.", field="page")
    size = settings.default_page_size if page_size is None else _coerce_int("page_size", page_size)
    size = max(1, min(settings.max_page_size, size))
    return PageRequest(page=page_num, page_size=size)


def normalize_limit(limit: object = None, *, settings: Optional[QuerySettings] = None) -> int:
    settings = settings or get_query_settings()
    if limit is None:
        return settings.default_limit
    return max(1, min(settings.max_limit, _coerce_int("limit", limit)))


def normalize_group_by(fields: Optional[Iterable[str]]) -> Tuple[str, ...]:
    if not fields:
        return ()
    seen: Dict[str, None] = {}
    for f in fields:
        seen.setdefault(require_dimension(f), None)
    return tuple(seen)


def apply_filters(frame: pd.DataFrame, filters: Filters) -> pd.DataFrame:
    if frame.empty or not filters:
        return frame
    mask = pd.Series(True, index=frame.index)
    for field, values in filters.items():
        column = frame[field]
        if DIMENSION_FIELDS[field] is str:
            column = column.astype("string").str.strip()
        mask &= column.isin(list(values)).fillna(False).astype(bool)
    return frame[mask]


def filters_to_params(filters: Filters) -> Dict[str, list]:
    return {k: list(v) for k, v in filters.items()}
