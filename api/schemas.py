from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

FilterValue = Any


class RecordQueryModel(BaseModel):
    filters: Dict[str, FilterValue] = Field(default_factory=dict)
    sort: Optional[str] = None
    sort_order: Literal["asc", "desc"] = "asc"
    page: int = 1
    page_size: Optional[int] = None


class AnalysisRequestModel(BaseModel):
    filters: Dict[str, FilterValue] = Field(default_factory=dict)
    group_by: List[str] = Field(default_factory=list)
    limit: Optional[int] = None


class SummaryRequestModel(BaseModel):
    filters: Dict[str, FilterValue] = Field(default_factory=dict)


class TimeSeriesRequestModel(BaseModel):
    filters: Dict[str, FilterValue] = Field(default_factory=dict)
    granularity: Literal["year", "week", "year_week"] = "year_week"


class TrendRequestModel(BaseModel):
    filters: Dict[str, FilterValue] = Field(default_factory=dict)
    metric: str = "signed_premium_yuan"
    granularity: Literal["year", "week", "year_week"] = "week"
    window: int = Field(default=3, ge=1)


class MetaListResponse(BaseModel):
    values: List[Any]
