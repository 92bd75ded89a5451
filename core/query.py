"""
core/query.py

Query façade over an in-memory set of insurance records.

``QueryService`` owns the dataset and two caches: one for query and analysis
results (short TTL) and one for catalogue lookups such as the distinct values
of a dimension (long TTL). Loading, extending or clearing the dataset clears
both caches.

All parameters pass through the parse-and-validate helpers in
:mod:`core.filters`; an unknown field name raises
:class:`core.records.UnknownFieldError` instead of being ignored.
"""

from __future__ import annotations

import copy
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Sequence, Tuple, TypeVar

import pandas as pd

from core.aggregation import aggregate, aggregate_totals
from core.arithmetic import growth_rate, moving_average, to_number
from core.cache import QueryCache
from core.config import QuerySettings, get_cache_settings, get_query_settings
from core.filters import (
    Filters,
    SortSpec,
    apply_filters,
    filters_to_params,
    normalize_filters,
    normalize_group_by,
    normalize_limit,
    normalize_page,
    normalize_sort,
)
from core.metrics import DERIVED_FIELDS, AnomalyThresholds, MetricResult, derive, derive_all
from core.performance import PerformanceMonitor
from core.records import (
    ABSOLUTE_FIELDS,
    DIMENSION_FIELDS,
    InsuranceRecord,
    InvalidQueryError,
    RecordsLike,
    frame_to_records,
    is_missing,
    records_to_frame,
    require_dimension,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Granularity = Literal["year", "week", "year_week"]

TIME_SERIES_DIMENSIONS: Dict[str, Tuple[str, ...]] = {
    "year": ("policy_start_year",),
    "week": ("week_number",),
    "year_week": ("policy_start_year", "week_number"),
}

QUALITY_REPORT_FIELDS: Tuple[str, ...] = (
    "policy_start_year",
    "week_number",
    "signed_premium_yuan",
    "matured_premium_yuan",
    "policy_count",
    "claim_case_count",
)


@dataclass(frozen=True)
class RecordPage:
    data: Tuple[InsuranceRecord, ...]
    total: int
    page: int
    page_size: int
    total_pages: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": [r.to_dict() for r in self.data],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


@dataclass(frozen=True)
class TrendPoint:
    period: Dict[str, Any]
    value: float
    growth_percent: Optional[float] = None
    moving_average: Optional[float] = None


@dataclass(frozen=True)
class FieldQuality:
    total: int
    missing: int
    completeness_percent: float


@dataclass(frozen=True)
class DataQualityReport:
    total_records: int
    completeness: Dict[str, FieldQuality] = field(default_factory=dict)
    ranges: Dict[str, Tuple[float, float]] = field(default_factory=dict)
    duplicate_records: int = 0


def sort_frame(frame: pd.DataFrame, sort: Optional[SortSpec]) -> pd.DataFrame:
    """Stable sort; numbers numerically, everything else by string, missing values last."""
    if sort is None or frame.empty:
        return frame
    column = frame[sort.field]
    numeric = sort.field in ABSOLUTE_FIELDS or DIMENSION_FIELDS.get(sort.field) is int
    if numeric:
        key = pd.to_numeric(column, errors="coerce")
    else:
        key = column.map(lambda v: None if is_missing(v) else str(v))
    return frame.assign(_sort_key=key).sort_values(
        "_sort_key", ascending=sort.order == "asc", kind="mergesort", na_position="last"
    ).drop(columns="_sort_key")


class QueryService:
    """
    Filter/sort/paginate and filter/group/derive operations over one dataset.

    The caches are injected so tests and callers can control their lifetime;
    fresh instances are created from the environment settings otherwise.
    """

    def __init__(
        self,
        records: RecordsLike = (),
        *,
        cache: Optional[QueryCache] = None,
        catalog_cache: Optional[QueryCache] = None,
        thresholds: Optional[AnomalyThresholds] = None,
        settings: Optional[QuerySettings] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ) -> None:
        cache_settings = get_cache_settings()
        self.cache = cache if cache is not None else QueryCache(name="query")
        self.catalog_cache = (
            catalog_cache
            if catalog_cache is not None
            else QueryCache(ttl_seconds=cache_settings.catalog_ttl_seconds, name="catalog")
        )
        self.thresholds = thresholds or AnomalyThresholds()
        self.settings = settings or get_query_settings()
        self.monitor = (
            monitor if monitor is not None else PerformanceMonitor(slow_query_ms=self.settings.slow_query_ms)
        )
        self._frame = records_to_frame([])
        self.load(records)

    # ------------------------------------------------------------------
    # Dataset lifecycle
    # ------------------------------------------------------------------

    @property
    def record_count(self) -> int:
        return int(len(self._frame))

    def load(self, records: RecordsLike) -> int:
        self._frame = records_to_frame(records).reset_index(drop=True)
        self.clear_cache()
        logger.info("dataset loaded: %d records", len(self._frame))
        return self.record_count

    def insert_batch(self, records: RecordsLike) -> int:
        incoming = records_to_frame(records)
        if incoming.empty:
            return 0
        frames = [f for f in (self._frame, incoming) if not f.empty]
        self._frame = pd.concat(frames, ignore_index=True)
        self.clear_cache()
        logger.info("inserted %d records (total %d)", len(incoming), len(self._frame))
        return int(len(incoming))

    def truncate(self) -> None:
        self._frame = records_to_frame([])
        self.clear_cache()

    def clear_cache(self) -> None:
        self.cache.clear()
        self.catalog_cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return {
            "query": self.cache.to_dict(),
            "catalog": self.catalog_cache.to_dict(),
            "performance": self.monitor.stats(),
        }

    def _cached(self, cache: QueryCache, operation: str, params: object, compute: Callable[[], T]) -> T:
        """
        Serve *operation* from *cache* or compute and store it, timing the call.

        Callers get a deep copy so that changing a returned result never
        changes what later cache hits see.
        """
        with self.monitor.measure(operation) as timing:
            value = cache.get(operation, params)
            timing.cache_hit = value is not None
            if value is None:
                value = compute()
                cache.set(operation, params, value)
        return copy.deepcopy(value)

    def _filtered(self, filters: Filters) -> pd.DataFrame:
        return apply_filters(self._frame, filters)

    # ------------------------------------------------------------------
    # Record queries
    # ------------------------------------------------------------------

    def query(
        self,
        filters: Optional[Mapping[str, object]] = None,
        sort: Optional[str] = None,
        sort_order: Optional[str] = "asc",
        page: object = 1,
        page_size: object = None,
    ) -> RecordPage:
        flt = normalize_filters(filters)
        sort_spec = normalize_sort(sort, sort_order)
        paging = normalize_page(page, page_size, settings=self.settings)
        params = {
            "filters": filters_to_params(flt),
            "sort": [sort_spec.field, sort_spec.order] if sort_spec else None,
            "page": paging.page,
            "page_size": paging.page_size,
        }

        def compute() -> RecordPage:
            frame = sort_frame(self._filtered(flt), sort_spec)
            total = int(len(frame))
            start = (paging.page - 1) * paging.page_size
            window = frame.iloc[start : start + paging.page_size]
            return RecordPage(
                data=tuple(frame_to_records(window)),
                total=total,
                page=paging.page,
                page_size=paging.page_size,
                total_pages=math.ceil(total / paging.page_size) if total else 0,
            )

        return self._cached(self.cache, "query", params, compute)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze(
        self,
        filters: Optional[Mapping[str, object]] = None,
        group_by: Optional[Sequence[str]] = None,
        limit: object = None,
    ) -> Tuple[MetricResult, ...]:
        """
        Filter, group by *group_by*, derive metrics per group, order by
        record count (largest first) and keep the first *limit* groups.
        """
        flt = normalize_filters(filters)
        dims = normalize_group_by(group_by)
        top = normalize_limit(limit, settings=self.settings)
        params = {"filters": filters_to_params(flt), "group_by": sorted(dims), "limit": top}

        def compute() -> Tuple[MetricResult, ...]:
            groups = aggregate(self._filtered(flt), dims)
            results = derive_all(groups, self.thresholds)
            results.sort(key=lambda r: r.record_count, reverse=True)
            return tuple(results[:top])

        return self._cached(self.cache, "analyze", params, compute)

    def summary(self, filters: Optional[Mapping[str, object]] = None) -> MetricResult:
        flt = normalize_filters(filters)

        def compute() -> MetricResult:
            return derive(aggregate_totals(self._filtered(flt)), self.thresholds)

        return self._cached(self.cache, "summary", {"filters": filters_to_params(flt)}, compute)

    def time_series(
        self,
        granularity: Granularity = "year_week",
        filters: Optional[Mapping[str, object]] = None,
    ) -> Tuple[MetricResult, ...]:
        if granularity not in TIME_SERIES_DIMENSIONS:
            raise InvalidQueryError(
                f"granularity must be one of {sorted(TIME_SERIES_DIMENSIONS)}, got {granularity!r}.",
                field="granularity",
            )
        dims = TIME_SERIES_DIMENSIONS[granularity]
        results = self.analyze(filters, dims, self.settings.max_limit)
        return tuple(sorted(results, key=lambda r: tuple(r.dimensions.get(d) or 0 for d in dims)))

    def trend(
        self,
        metric: str,
        granularity: Granularity = "week",
        filters: Optional[Mapping[str, object]] = None,
        window: int = 3,
    ) -> List[TrendPoint]:
        """
        One value per period with period-over-period growth and a trailing
        moving average over *window* periods.

        The first period has no growth. Periods before the window fills have
        no moving average, so a series shorter than *window* has none at all.
        """
        if metric not in ABSOLUTE_FIELDS and metric not in DERIVED_FIELDS:
            raise InvalidQueryError(f"Unknown metric '{metric}'.", field=metric)
        series = self.time_series(granularity, filters)
        values = [to_number(getattr(r, metric)) for r in series]
        averages = moving_average(values, window) if 0 < window <= len(values) else []
        offset = len(values) - len(averages)
        points: List[TrendPoint] = []
        for idx, (result, value) in enumerate(zip(series, values)):
            points.append(
                TrendPoint(
                    period=dict(result.dimensions),
                    value=value,
                    growth_percent=growth_rate(value, values[idx - 1]) if idx else None,
                    moving_average=averages[idx - offset] if idx >= offset else None,
                )
            )
        return points

    # ------------------------------------------------------------------
    # Catalogue and data quality
    # ------------------------------------------------------------------

    def dimension_values(self, field_name: str) -> List[Any]:
        require_dimension(field_name)

        def compute() -> List[Any]:
            if self._frame.empty:
                return []
            kind = DIMENSION_FIELDS[field_name]
            seen = {}
            for record in frame_to_records(self._frame[[field_name]].drop_duplicates()):
                value = getattr(record, field_name)
                if value is not None:
                    seen.setdefault(value, None)
            return sorted(seen, key=(lambda v: v) if kind is not str else str)

        return self._cached(self.catalog_cache, "dimension_values", {"field": field_name}, compute)

    def data_quality_report(self) -> DataQualityReport:
        def compute() -> DataQualityReport:
            frame = self._frame
            total = int(len(frame))
            completeness: Dict[str, FieldQuality] = {}
            ranges: Dict[str, Tuple[float, float]] = {}
            for name in QUALITY_REPORT_FIELDS:
                values = pd.to_numeric(frame[name], errors="coerce") if total else pd.Series(dtype=float)
                missing = int(values.isna().sum())
                completeness[name] = FieldQuality(
                    total=total,
                    missing=missing,
                    completeness_percent=(total - missing) / total * 100 if total else 0.0,
                )
                present = values.dropna()
                if not present.empty:
                    ranges[name] = (float(present.min()), float(present.max()))
            duplicates = int(frame.astype(str).duplicated().sum()) if total else 0
            return DataQualityReport(
                total_records=total,
                completeness=completeness,
                ranges=ranges,
                duplicate_records=duplicates,
            )

        return self._cached(self.catalog_cache, "data_quality_report", {}, compute)

    def data_summary(self) -> Dict[str, Any]:
        frame = self._frame
        if frame.empty:
            return {
                "total_records": 0,
                "date_range": None,
                "year_range": None,
                "week_range": None,
                "organization_count": 0,
                "business_type_count": 0,
            }

        def _range(col: str) -> Optional[Tuple[Any, Any]]:
            values = frame[col].dropna()
            if col != "snapshot_date":
                values = pd.to_numeric(values, errors="coerce").dropna().astype(int)
            else:
                values = values.astype(str).sort_values()
            if values.empty:
                return None
            return (_plain(values.min()), _plain(values.max()))

        return {
            "total_records": int(len(frame)),
            "date_range": _range("snapshot_date"),
            "year_range": _range("policy_start_year"),
            "week_range": _range("week_number"),
            "organization_count": int(frame["third_level_organization"].dropna().nunique()),
            "business_type_count": int(frame["business_type_category"].dropna().nunique()),
        }

    def export_frame(self, filters: Optional[Mapping[str, object]] = None) -> pd.DataFrame:
        return self._filtered(normalize_filters(filters)).copy()


def _plain(value: Any) -> Any:
    return value.item() if hasattr(value, "item") else value

