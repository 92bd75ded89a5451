"""
tests/test_query.py

Coverage
--------
- query: filtering, sorting (missing values last), pagination
- analyze: group ordering by record count, limit, caching
- summary, time series and trend helpers
- catalogue lookups and data quality report
- dataset lifecycle clears caches
- results handed to callers are copies of what the cache holds
- string dimension values from loose rows match typed filters
- every cached operation is timed by the performance monitor
- unknown fields are rejected, never ignored
"""

from __future__ import annotations

import pandas as pd
import pytest

from core.performance import PerformanceMonitor
from core.query import QueryService
from core.records import InvalidQueryError, UnknownFieldError
from tests.conftest import make_record


class TestQuery:
    def test_filter_and_total(self, service) -> None:
        page = service.query({"week_number": 29})
        assert page.total == 3
        assert all(r.week_number == 29 for r in page.data)

    def test_pagination(self, service) -> None:
        first = service.query(sort="week_number", page=1, page_size=4)
        second = service.query(sort="week_number", page=2, page_size=4)
        assert (first.total, first.total_pages) == (6, 2)
        assert len(first.data) == 4
        assert len(second.data) == 2

    def test_page_past_end_is_empty(self, service) -> None:
        page = service.query(page=10, page_size=4)
        assert page.data == ()
        assert page.total == 6

    def test_numeric_sort_desc(self, service) -> None:
        page = service.query(sort="signed_premium_yuan", sort_order="desc")
        assert page.data[0].signed_premium_yuan == 2000.0

    def test_missing_values_sort_last(self, service) -> None:
        for order in ("asc", "desc"):
            page = service.query(sort="third_level_organization", sort_order=order)
            assert page.data[-1].third_level_organization is None

    def test_unknown_sort_field(self, service) -> None:
        with pytest.raises(UnknownFieldError):
            service.query(sort="region")

    def test_query_is_cached(self, service) -> None:
        service.query({"week_number": 28})
        service.query({"week_number": "28"})
        stats = service.cache.stats()
        assert (stats.hits, stats.entry_count) == (1, 1)


class TestAnalyze:
    def test_sorted_by_record_count(self, service) -> None:
        results = service.analyze(group_by=["third_level_organization"])
        counts = [r.record_count for r in results]
        assert counts == sorted(counts, reverse=True)
        assert sum(counts) == 6

    def test_ties_keep_first_seen_order(self, service) -> None:
        results = service.analyze(group_by=["third_level_organization"])
        orgs = [r.dimensions["third_level_organization"] for r in results]
        assert orgs == ["天府", "高新", "青羊", None]

    def test_limit(self, service) -> None:
        assert len(service.analyze(group_by=["third_level_organization"], limit=2)) == 2

    def test_filtered(self, service) -> None:
        results = service.analyze({"policy_start_year": 2025}, ["week_number"])
        assert len(results) == 1
        assert results[0].dimensions == {"week_number": 29}

    def test_dimension_order_shares_cache_entry(self, service) -> None:
        service.analyze(group_by=["week_number", "insurance_type"])
        service.analyze(group_by=["insurance_type", "week_number"])
        assert service.cache.stats().hits == 1

    def test_unknown_group_by(self, service) -> None:
        with pytest.raises(UnknownFieldError):
            service.analyze(group_by=["region"])

    def test_empty_dataset(self) -> None:
        assert QueryService([]).analyze(group_by=["week_number"]) == ()


class TestSummaries:
    def test_summary_matches_totals(self, service, sample_records) -> None:
        summary = service.summary()
        assert summary.record_count == len(sample_records)
        assert summary.signed_premium_yuan == pytest.approx(sum(r.signed_premium_yuan for r in sample_records))

    def test_summary_of_empty_selection(self, service) -> None:
        summary = service.summary({"third_level_organization": "nowhere"})
        assert summary.record_count == 0
        assert summary.data_quality_score == 0

    def test_time_series_sorted(self, service) -> None:
        series = service.time_series("year_week")
        keys = [(r.dimensions["policy_start_year"], r.dimensions["week_number"]) for r in series]
        assert keys == [(2024, 27), (2024, 28), (2024, 29), (2025, 29)]

    def test_time_series_granularity(self, service) -> None:
        with pytest.raises(InvalidQueryError):
            service.time_series("month")

    def test_trend(self, service) -> None:
        points = service.trend("policy_count", granularity="week", window=2)
        assert [p.period["week_number"] for p in points] == [27, 28, 29]
        assert [p.value for p in points] == [2.0, 6.0, 6.0]
        assert points[0].growth_percent is None
        assert points[1].growth_percent == pytest.approx(200.0)
        assert points[2].growth_percent == pytest.approx(0.0)
        assert points[0].moving_average is None
        assert points[1].moving_average == pytest.approx(4.0)
        assert points[2].moving_average == pytest.approx(6.0)

    def test_trend_shorter_than_window_has_no_average(self, service) -> None:
        points = service.trend("policy_count", granularity="week", window=5)
        assert [p.value for p in points] == [2.0, 6.0, 6.0]
        assert [p.moving_average for p in points] == [None, None, None]

    def test_trend_unknown_metric(self, service) -> None:
        with pytest.raises(InvalidQueryError):
            service.trend("nope")


class TestCatalogue:
    def test_dimension_values(self, service) -> None:
        assert service.dimension_values("week_number") == [27, 28, 29]
        assert service.dimension_values("third_level_organization") == ["天府", "青羊", "高新"]
        assert service.dimension_values("is_new_energy_vehicle") == [False, True]

    def test_dimension_values_use_catalog_cache(self, service) -> None:
        service.dimension_values("week_number")
        service.dimension_values("week_number")
        assert service.catalog_cache.stats().hits == 1
        assert service.cache.stats().entry_count == 0

    def test_unknown_dimension(self, service) -> None:
        with pytest.raises(UnknownFieldError):
            service.dimension_values("region")

    def test_data_quality_report(self, service) -> None:
        report = service.data_quality_report()
        assert report.total_records == 6
        assert report.completeness["policy_count"].completeness_percent == 100.0
        assert report.ranges["week_number"] == (27.0, 29.0)

    def test_data_summary(self, service) -> None:
        summary = service.data_summary()
        assert summary["total_records"] == 6
        assert summary["year_range"] == (2024, 2025)
        assert summary["week_range"] == (27, 29)
        assert summary["organization_count"] == 3


class TestLifecycle:
    def test_insert_batch_clears_caches(self, service) -> None:
        service.analyze(group_by=["week_number"])
        service.dimension_values("week_number")
        assert service.insert_batch([make_record(week_number=30)]) == 1
        assert service.cache.stats().entry_count == 0
        assert service.dimension_values("week_number") == [27, 28, 29, 30]
        assert service.record_count == 7

    def test_truncate(self, service) -> None:
        service.truncate()
        assert service.record_count == 0
        assert service.query().total == 0
        assert service.data_summary()["total_records"] == 0

    def test_load_replaces(self, service) -> None:
        assert service.load([make_record()]) == 1
        assert service.summary().record_count == 1


class TestCachedResultsAreIsolated:
    def test_mutating_analysis_result_does_not_touch_cache(self, service) -> None:
        first = service.analyze(group_by=["third_level_organization"])
        assert isinstance(first, tuple)
        first[0].dimensions["third_level_organization"] = "Z"
        second = service.analyze(group_by=["third_level_organization"])
        assert service.cache.stats().hits == 1
        assert second[0].dimensions["third_level_organization"] == "天府"

    def test_mutating_summary_dimensions_does_not_touch_cache(self, service) -> None:
        service.summary().dimensions["week_number"] = 99
        assert "week_number" not in service.summary().dimensions

    def test_mutating_catalogue_does_not_touch_cache(self, service) -> None:
        service.dimension_values("week_number").append(99)
        assert service.dimension_values("week_number") == [27, 28, 29]
        assert service.catalog_cache.stats().hits == 1

    def test_time_series_is_tuple(self, service) -> None:
        assert isinstance(service.time_series("year"), tuple)


class TestLooseRows:
    def test_string_year_matches_integer_filter(self) -> None:
        row = make_record().to_dict()
        row["policy_start_year"] = "2024"
        row["week_number"] = "28"
        service = QueryService([row])
        assert service.query({"policy_start_year": 2024}).total == 1
        assert service.query({"week_number": 28}).total == 1
        assert service.dimension_values("policy_start_year") == [2024]

    def test_string_flag_in_dataframe(self) -> None:
        frame = pd.DataFrame([make_record(is_new_energy_vehicle=None).to_dict()])
        frame["is_new_energy_vehicle"] = ["true"]
        frame["policy_start_year"] = ["2024"]
        service = QueryService(frame)
        assert service.query({"is_new_energy_vehicle": True}).total == 1
        assert service.query({"policy_start_year": 2024}).total == 1


class TestPerformance:
    def test_operations_are_timed_with_cache_hits(self, sample_records, clock) -> None:
        monitor = PerformanceMonitor(slow_query_ms=1000, clock=clock)
        service = QueryService(sample_records, monitor=monitor)
        service.summary()
        service.summary()
        service.dimension_values("week_number")
        stats = service.cache_stats()["performance"]
        assert stats["total_queries"] == 3
        assert stats["cache_hit_rate"] == pytest.approx(100 / 3)
        assert stats["by_operation"]["summary"]["count"] == 2
        assert stats["slow_queries"] == 0

    def test_slow_query_is_flagged(self, sample_records) -> None:
        ticks = iter([0.0, 2.5])
        monitor = PerformanceMonitor(slow_query_ms=2000, clock=lambda: next(ticks))
        service = QueryService(sample_records, monitor=monitor)
        service.summary()
        (sample,) = monitor.samples()
        assert sample.operation == "summary"
        assert sample.duration_ms == pytest.approx(2500.0)
        assert sample.slow and not sample.cache_hit
