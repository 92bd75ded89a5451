import altair as alt
import pandas as pd
import streamlit as st
from contextlib import contextmanager
from typing import Dict, List, Optional

from core.arithmetic import format_value
from core.charts import metric_bar_chart, results_frame, time_series_chart
from core.data import load_dataset
from core.metrics import DERIVED_FIELDS, MetricResult
from core.query import QueryService
from core.records import DIMENSION_FIELDS, FIELD_GROUPS, InvalidQueryError

alt.data_transformers.disable_max_rows()

FILTER_FIELDS = [
    "policy_start_year",
    "week_number",
    "third_level_organization",
    "business_type_category",
    "insurance_type",
    "renewal_status",
    "is_new_energy_vehicle",
]


# ---------- UI / layout helpers ----------
def inject_base_styles():
    if st.session_state.get("_base_css_injected"):
        return
    st.markdown(
        """
        <style>
        .card {border: 1px solid #e5e7eb;border-radius: 12px;padding: 16px;background: #ffffff;
               box-shadow: 0 1px 2px rgba(0,0,0,0.04); margin-bottom: 12px;}
        .card-title {font-weight: 600;font-size: 1.0rem;color: #111827;margin-bottom: 8px;}
        .chip-row {display: flex;flex-wrap: wrap;gap: 6px;margin-top: 6px;}
        .chip {background: #f3f4f6;border: 1px solid #e5e7eb;border-radius: 14px;padding: 4px 10px;font-size: 0.85rem;color: #374151;}
        </style>
        """,
        unsafe_allow_html=True,
    )
    st.session_state["_base_css_injected"] = True


@contextmanager
def card(title: str):
    container = st.container()
    container.markdown(f"<div class='card'><div class='card-title'>{title}</div>", unsafe_allow_html=True)
    body = container.container()
    with body:
        yield body
    container.markdown("</div>", unsafe_allow_html=True)


def format_filter_summary(filters: Dict[str, List], group_by: List[str]) -> str:
    chips = [f"{k}: {', '.join(str(v) for v in vals)}" for k, vals in filters.items() if vals]
    if not chips:
        chips = ["Filters: All"]
    chips.append(f"Group by: {', '.join(group_by) if group_by else 'none'}")
    return "".join(f"<span class='chip'>{txt}</span>" for txt in chips)


@st.cache_resource
def get_service() -> QueryService:
    result = load_dataset()
    return QueryService(result.records)


def render_kpi_tiles(summary: MetricResult):
    cols = st.columns(5)
    cols[0].metric("Signed Premium", format_value(summary.signed_premium_yuan, "currency"))
    cols[1].metric("Policies", format_value(summary.policy_count, "count"))
    cols[2].metric("Loss Ratio", format_value(summary.matured_loss_ratio_percent, "percentage"))
    cols[3].metric("Expense Ratio", format_value(summary.expense_ratio_percent, "percentage"))
    cols[4].metric(
        "Combined Ratio",
        format_value(summary.combined_ratio_percent, "percentage"),
        help="Expense ratio + matured loss ratio.",
    )
    for flag in summary.anomaly_flags:
        st.warning(flag)
    if summary.calculation_warnings:
        with st.expander(f"Calculation warnings ({len(summary.calculation_warnings)})"):
            for w in summary.calculation_warnings:
                st.write(w)


# ---------- UI setup ----------
st.set_page_config(page_title="Insurance Policy Analytics", layout="wide")
inject_base_styles()
st.title("Insurance Policy Analytics")
st.caption("Filter, group and compare premium, claim and cost ratios.")

service = get_service()
if service.record_count == 0:
    st.error("No records found. Place weekly CSV exports under the data directory.")
    st.stop()

with st.sidebar:
    st.markdown("### Filters")
    selected: Dict[str, List] = {}
    for name in FILTER_FIELDS:
        options = service.dimension_values(name)
        selected[name] = st.multiselect(name, options=options, default=[])

    st.markdown("---")
    st.markdown("### Analysis")
    group_field_options = [f for group in FIELD_GROUPS.values() for f in group if f in DIMENSION_FIELDS]
    group_by = st.multiselect("Group by", options=group_field_options, default=["third_level_organization"])
    metric = st.selectbox("Chart metric", options=list(DERIVED_FIELDS), index=list(DERIVED_FIELDS).index("combined_ratio_percent"))
    limit = st.slider("Top N groups", min_value=5, max_value=100, value=20, step=5)
    if st.button("Clear cache"):
        service.clear_cache()

st.markdown(f"<div class='chip-row'>{format_filter_summary(selected, group_by)}</div>", unsafe_allow_html=True)

try:
    summary = service.summary(selected)
    results = service.analyze(selected, group_by, limit)
    series = service.time_series("year_week", selected)
except InvalidQueryError as exc:
    st.error(str(exc))
    st.stop()

with card("KPI Tiles"):
    render_kpi_tiles(summary)

left, right = st.columns(2)
with left:
    with card(f"{metric} by {group_by[0] if group_by else 'total'}"):
        chart = metric_bar_chart(results, group_by[0], metric) if group_by else None
        if chart is None:
            st.info("Select a group-by field to chart.")
        else:
            st.altair_chart(chart, use_container_width=True)
with right:
    with card("Weekly Trend"):
        line = time_series_chart(series, [metric])
        if line is None:
            st.info("Not enough data for trend.")
        else:
            st.altair_chart(line, use_container_width=True)

with card("Group Results"):
    table = results_frame(results)
    if table.empty:
        st.info("No groups for the selected filters.")
    else:
        st.dataframe(table, hide_index=True, use_container_width=True)
        st.download_button(
            "Export CSV",
            data=table.to_csv(index=False).encode("utf-8"),
            file_name="analysis.csv",
            mime="text/csv",
        )

with card("Records"):
    page_cols = st.columns(3)
    sort_field: Optional[str] = page_cols[0].selectbox("Sort by", options=[None] + list(DIMENSION_FIELDS), index=0)
    sort_order = page_cols[1].radio("Order", ["asc", "desc"], horizontal=True)
    page_num = page_cols[2].number_input("Page", min_value=1, value=1, step=1)
    page = service.query(selected, sort=sort_field, sort_order=sort_order, page=int(page_num), page_size=50)
    st.caption(f"{page.total:,} records, page {page.page} of {max(page.total_pages, 1)}")
    st.dataframe(pd.DataFrame([r.to_dict() for r in page.data]), hide_index=True, use_container_width=True)

with st.expander("Data quality and cache"):
    st.json(service.data_summary())
    st.json(service.cache_stats())
