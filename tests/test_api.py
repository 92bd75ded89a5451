from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from api.main import app, get_query_service


@pytest.fixture()
def client(service):
    app.dependency_overrides[get_query_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestAnalysisEndpoints:
    def test_analysis(self, client) -> None:
        resp = client.post("/analysis", json={"group_by": ["third_level_organization"], "limit": 2})
        assert resp.status_code == 200
        body = resp.json()
        assert body["count"] == 2
        assert body["results"][0]["record_count"] == 2
        assert isinstance(body["results"][0]["calculation_warnings"], list)

    def test_unknown_group_by_is_400(self, client) -> None:
        resp = client.post("/analysis", json={"group_by": ["region"]})
        assert resp.status_code == 400
        body = resp.json()
        assert body["type"] == "UnknownFieldError"
        assert body["field"] == "region"

    def test_invalid_filter_value_is_400(self, client) -> None:
        resp = client.post("/analysis", json={"filters": {"week_number": "abc"}})
        assert resp.status_code == 400
        assert resp.json()["field"] == "week_number"

    def test_summary(self, client) -> None:
        resp = client.post("/analysis/summary", json={"filters": {"week_number": [28]}})
        assert resp.status_code == 200
        assert resp.json()["record_count"] == 2

    def test_time_series(self, client) -> None:
        resp = client.post("/analysis/time-series", json={"granularity": "week"})
        assert resp.status_code == 200
        weeks = [r["dimensions"]["week_number"] for r in resp.json()["results"]]
        assert weeks == [27, 28, 29]

    def test_trend(self, client) -> None:
        resp = client.post("/analysis/trend", json={"metric": "policy_count", "window": 2})
        assert resp.status_code == 200
        assert [p["value"] for p in resp.json()["points"]] == [2.0, 6.0, 6.0]


class TestRecordEndpoints:
    def test_query(self, client) -> None:
        resp = client.post("/records/query", json={"sort": "signed_premium_yuan", "sort_order": "desc", "page_size": 2})
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 6
        assert body["total_pages"] == 3
        assert body["data"][0]["signed_premium_yuan"] == 2000.0

    def test_bad_page(self, client) -> None:
        resp = client.post("/records/query", json={"page": 0})
        assert resp.status_code == 400

    def test_export_csv(self, client) -> None:
        resp = client.get("/export/records", params={"week_number": 28})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        lines = resp.text.strip().splitlines()
        assert len(lines) == 3


class TestMetaEndpoints:
    def test_fields(self, client) -> None:
        body = client.get("/meta/fields").json()
        assert body["dimensions"]["week_number"] == "int"
        assert "combined_ratio_percent" in body["derived"]

    def test_dimension_values(self, client) -> None:
        resp = client.get("/meta/dimensions/week_number")
        assert resp.json() == {"values": [27, 28, 29]}

    def test_unknown_dimension(self, client) -> None:
        assert client.get("/meta/dimensions/region").status_code == 400

    def test_data_quality(self, client) -> None:
        body = client.get("/meta/data-quality").json()
        assert body["report"]["total_records"] == 6
        assert body["summary"]["week_range"] == [27, 29]

    def test_cache_roundtrip(self, client) -> None:
        client.post("/analysis", json={})
        client.post("/analysis", json={})
        stats = client.get("/cache/stats").json()
        assert stats["query"]["hits"] == 1
        assert stats["performance"]["total_queries"] == 2
        assert stats["performance"]["cache_hit_rate"] == pytest.approx(50.0)
        assert stats["performance"]["by_operation"]["analyze"]["count"] == 2
        assert client.post("/cache/clear").json() == {"cleared": True}
        assert client.get("/cache/stats").json()["query"]["entry_count"] == 0
