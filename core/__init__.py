"""Core (UI-agnostic) insurance analytics logic.

This package contains:
- the record model and field catalogue
- aggregation by dimension key and derived-metric calculation
- a TTL/size-bounded query cache and the query façade over them
- CSV ingestion and chart helpers (Altair -> Vega-Lite spec dict)
"""
