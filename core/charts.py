from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import altair as alt
import pandas as pd

from core.metrics import MetricResult

alt.data_transformers.disable_max_rows()

PERCENT_METRICS = {
    "claim_frequency_percent",
    "matured_loss_ratio_percent",
    "expense_ratio_percent",
    "variable_cost_ratio_percent",
    "matured_margin_contribution_rate_percent",
    "combined_ratio_percent",
    "profit_margin_percent",
}


def results_frame(results: Sequence[MetricResult]) -> pd.DataFrame:
    return pd.DataFrame([r.flat_dict() for r in results])


def _axis_format(metric: str) -> str:
    if metric in PERCENT_METRICS:
        return ".1f"
    if metric == "commercial_auto_underwriting_factor":
        return ".4f"
    return ",.0f"


def metric_bar_chart(results: Sequence[MetricResult], dimension: str, metric: str, height: int = 280) -> Optional[alt.Chart]:
    df = results_frame(results)
    if df.empty or dimension not in df.columns or metric not in df.columns:
        return None
    df = df[[dimension, "record_count", metric]].copy()
    df[dimension] = df[dimension].astype(str)
    return (
        alt.Chart(df)
        .mark_bar()
        .encode(
            x=alt.X(f"{dimension}:N", sort="-y", title=dimension),
            y=alt.Y(f"{metric}:Q", axis=alt.Axis(format=_axis_format(metric))),
            tooltip=[dimension, "record_count", alt.Tooltip(f"{metric}:Q", format=_axis_format(metric))],
        )
        .properties(height=height)
    )


def time_series_chart(results: Sequence[MetricResult], metrics: List[str], height: int = 280) -> Optional[alt.Chart]:
    """Weekly line chart of one or more metrics, one line per policy year."""
    df = results_frame(results)
    if df.empty or "week_number" not in df.columns:
        return None
    if "policy_start_year" not in df.columns:
        df["policy_start_year"] = "all"
    metrics = [m for m in metrics if m in df.columns]
    df = df[["policy_start_year", "week_number", *metrics]]
    long = df.melt(
        id_vars=["policy_start_year", "week_number"],
        value_vars=metrics,
        var_name="metric",
        value_name="value",
    )
    return (
        alt.Chart(long)
        .mark_line(point=True)
        .encode(
            x=alt.X("week_number:O", title="Week", axis=alt.Axis(format="d")),
            y=alt.Y("value:Q", axis=alt.Axis(format=",")),
            color=alt.Color("policy_start_year:N", title="Policy Year"),
            strokeDash="metric:N",
            tooltip=["policy_start_year", "week_number", "metric", alt.Tooltip("value:Q", format=",.1f")],
        )
        .properties(height=height)
    )


def to_vega_spec(chart: alt.Chart) -> Dict[str, Any]:
    """Convert an Altair chart into a Vega-Lite spec dict (JSON-serializable)."""
    return chart.to_dict()
