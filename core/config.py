"""
core/config.py

Environment-driven settings for the analytics engine.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def _get_int_env(name: str, default: int) -> int:
    """
    Read an integer from environment variables with safe fallback.
    """

    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """
    Read a float from environment variables with safe fallback.
    """

    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return float(raw_value)
    except ValueError:
        return default


def _get_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    stripped = value.strip()
    return stripped if stripped else default


@dataclass(frozen=True)
class CacheSettings:
    """
    Bounds and lifetimes for the query result caches.
    """

    ttl_seconds: float = 300.0
    catalog_ttl_seconds: float = 24 * 60 * 60.0
    max_entries: int = 100
    max_bytes: int = 100 * 1024 * 1024


@dataclass(frozen=True)
class QuerySettings:
    default_page_size: int = 1000
    max_page_size: int = 50_000
    default_limit: int = 1000
    max_limit: int = 1000
    slow_query_ms: float = 2000.0


@dataclass(frozen=True)
class DataSettings:
    data_dir: Path = PROJECT_ROOT / "data"
    file_glob: str = "*.csv"


@lru_cache(maxsize=1)
def get_cache_settings() -> CacheSettings:
    """
    Return cached cache settings from environment variables.
    """

    defaults = CacheSettings()
    return CacheSettings(
        ttl_seconds=_get_float_env("INSURANCE_CACHE_TTL_SECONDS", defaults.ttl_seconds),
        catalog_ttl_seconds=_get_float_env("INSURANCE_CATALOG_TTL_SECONDS", defaults.catalog_ttl_seconds),
        max_entries=max(1, _get_int_env("INSURANCE_CACHE_MAX_ENTRIES", defaults.max_entries)),
        max_bytes=max(1, _get_int_env("INSURANCE_CACHE_MAX_BYTES", defaults.max_bytes)),
    )


@lru_cache(maxsize=1)
def get_query_settings() -> QuerySettings:
    """
    Return cached pagination and result-size settings from environment variables.
    """

    defaults = QuerySettings()
    max_page_size = max(1, _get_int_env("INSURANCE_MAX_PAGE_SIZE", defaults.max_page_size))
    max_limit = max(1, _get_int_env("INSURANCE_MAX_LIMIT", defaults.max_limit))
    return QuerySettings(
        default_page_size=min(max_page_size, max(1, _get_int_env("INSURANCE_DEFAULT_PAGE_SIZE", defaults.default_page_size))),
        max_page_size=max_page_size,
        default_limit=min(max_limit, defaults.default_limit),
        max_limit=max_limit,
        slow_query_ms=_get_float_env("INSURANCE_SLOW_QUERY_MS", defaults.slow_query_ms),
    )


@lru_cache(maxsize=1)
def get_data_settings() -> DataSettings:
    defaults = DataSettings()
    return DataSettings(
        data_dir=Path(_get_str_env("INSURANCE_DATA_DIR", str(defaults.data_dir))),
        file_glob=_get_str_env("INSURANCE_FILE_GLOB", defaults.file_glob),
    )
