from __future__ import annotations

import logging
import math
from functools import lru_cache
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from fastapi import Depends, FastAPI, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from api.schemas import (
    AnalysisRequestModel,
    MetaListResponse,
    RecordQueryModel,
    SummaryRequestModel,
    TimeSeriesRequestModel,
    TrendRequestModel,
)
from core.data import dataset_signature, load_dataset
from core.metrics import DERIVED_FIELDS
from core.query import QueryService
from core.records import ABSOLUTE_FIELDS, DIMENSION_FIELDS, FIELD_GROUPS, InvalidQueryError

app = FastAPI(title="Insurance Analytics API", version="0.1.0")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=2)
def _service_for(signature: Tuple[Tuple[str, float], ...]) -> QueryService:
    result = load_dataset()
    if result.errors:
        logger.warning("dataset load reported %d row errors", len(result.errors))
    return QueryService(result.records)


def get_query_service() -> QueryService:
    """One façade per on-disk dataset version; a changed file set builds a new one."""
    return _service_for(dataset_signature())


def _json(data: object) -> JSONResponse:
    """Return JSON with safe encoding for pandas/numpy objects."""

    def _safe_float(value: object) -> float | None:
        try:
            out = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None
        if math.isnan(out) or math.isinf(out):
            return None
        return out

    return JSONResponse(
        content=jsonable_encoder(
            data,
            custom_encoder={
                type(pd.NA): lambda _: None,
                np.integer: int,
                float: _safe_float,
                np.floating: _safe_float,
                np.bool_: bool,
                np.ndarray: lambda arr: arr.tolist(),
                pd.Timestamp: lambda ts: ts.isoformat(),
            },
        )
    )


def _bad_request(exc: InvalidQueryError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": str(exc), "type": type(exc).__name__, "field": exc.field},
    )


def _server_error(name: str, exc: Exception) -> JSONResponse:
    logger.exception("%s failed", name)
    return JSONResponse(status_code=500, content={"error": str(exc), "type": type(exc).__name__})


@app.post("/records/query")
def records_query(body: RecordQueryModel, service: QueryService = Depends(get_query_service)):
    try:
        page = service.query(
            body.filters,
            sort=body.sort,
            sort_order=body.sort_order,
            page=body.page,
            page_size=body.page_size,
        )
        return _json(page.to_dict())
    except InvalidQueryError as exc:
        return _bad_request(exc)
    except Exception as exc:
        return _server_error("records_query", exc)


@app.post("/analysis")
def analysis(body: AnalysisRequestModel, service: QueryService = Depends(get_query_service)):
    try:
        results = service.analyze(body.filters, body.group_by, body.limit)
        return _json({"results": [r.to_dict() for r in results], "count": len(results)})
    except InvalidQueryError as exc:
        return _bad_request(exc)
    except Exception as exc:
        return _server_error("analysis", exc)


@app.post("/analysis/summary")
def analysis_summary(body: SummaryRequestModel, service: QueryService = Depends(get_query_service)):
    try:
        return _json(service.summary(body.filters).to_dict())
    except InvalidQueryError as exc:
        return _bad_request(exc)
    except Exception as exc:
        return _server_error("analysis_summary", exc)


@app.post("/analysis/time-series")
def analysis_time_series(body: TimeSeriesRequestModel, service: QueryService = Depends(get_query_service)):
    try:
        results = service.time_series(body.granularity, body.filters)
        return _json({"granularity": body.granularity, "results": [r.to_dict() for r in results]})
    except InvalidQueryError as exc:
        return _bad_request(exc)
    except Exception as exc:
        return _server_error("analysis_time_series", exc)


@app.post("/analysis/trend")
def analysis_trend(body: TrendRequestModel, service: QueryService = Depends(get_query_service)):
    try:
        points = service.trend(body.metric, body.granularity, body.filters, window=body.window)
        return _json({"metric": body.metric, "points": points})
    except InvalidQueryError as exc:
        return _bad_request(exc)
    except Exception as exc:
        return _server_error("analysis_trend", exc)


@app.get("/meta/fields")
def meta_fields():
    return _json(
        {
            "dimensions": {name: kind.__name__ for name, kind in DIMENSION_FIELDS.items()},
            "groups": FIELD_GROUPS,
            "absolute": list(ABSOLUTE_FIELDS),
            "derived": list(DERIVED_FIELDS),
        }
    )


@app.get("/meta/dimensions/{field}")
def meta_dimension_values(field: str, service: QueryService = Depends(get_query_service)):
    try:
        return _json(MetaListResponse(values=service.dimension_values(field)))
    except InvalidQueryError as exc:
        return _bad_request(exc)
    except Exception as exc:
        return _server_error("meta_dimension_values", exc)


@app.get("/meta/data-quality")
def meta_data_quality(service: QueryService = Depends(get_query_service)):
    try:
        return _json({"report": service.data_quality_report(), "summary": service.data_summary()})
    except Exception as exc:
        return _server_error("meta_data_quality", exc)


@app.get("/cache/stats")
def cache_stats(service: QueryService = Depends(get_query_service)):
    return _json(service.cache_stats())


@app.post("/cache/clear")
def cache_clear(service: QueryService = Depends(get_query_service)):
    service.clear_cache()
    return _json({"cleared": True})


@app.get("/export/records")
def export_records(
    third_level_organization: Optional[str] = Query(default=None),
    business_type_category: Optional[str] = Query(default=None),
    policy_start_year: Optional[int] = Query(default=None),
    week_number: Optional[int] = Query(default=None),
    service: QueryService = Depends(get_query_service),
):
    filters = {
        "third_level_organization": third_level_organization,
        "business_type_category": business_type_category,
        "policy_start_year": policy_start_year,
        "week_number": week_number,
    }
    try:
        export_df = service.export_frame(filters)
    except InvalidQueryError as exc:
        return _bad_request(exc)
    csv_bytes = export_df.to_csv(index=False).encode("utf-8")
    return Response(
        content=csv_bytes,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=records.csv"},
    )
