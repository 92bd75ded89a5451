from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import IO, Any, Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

from core.config import get_data_settings
from core.records import (
    ABSOLUTE_FIELDS,
    DIMENSION_FIELDS,
    RECORD_FIELDS,
    InsuranceRecord,
    coerce_dimension_value,
    is_missing,
)

logger = logging.getLogger(__name__)

CSV_FIELD_MAPPING: Dict[str, str] = {
    "业务类型分类": "business_type_category",
    "机构层级": "chengdu_branch",
    "三级机构": "third_level_organization",
    "客户三级分类": "customer_category_3",
    "险种类型": "insurance_type",
    "是否新能源车": "is_new_energy_vehicle",
    "险别组合": "coverage_type",
    "是否过户车": "is_transferred_vehicle",
    "新续转状态": "renewal_status",
    "车险分等级": "vehicle_insurance_grade",
    "高速风险等级": "highway_risk_grade",
    "大货车评分": "large_truck_score",
    "小货车评分": "small_truck_score",
    "终端来源": "terminal_source",
    "起保年度": "policy_start_year",
    "周序号": "week_number",
    "数据快照日期": "snapshot_date",
    "签单保费": "signed_premium_yuan",
    "满期保费": "matured_premium_yuan",
    "商业险折前保费": "commercial_premium_before_discount_yuan",
    "保单件数": "policy_count",
    "赔案件数": "claim_case_count",
    "已报告赔款": "reported_claim_payment_yuan",
    "费用金额": "expense_amount_yuan",
    "满期边际贡献额": "matured_margin_contribution_yuan",
    "变动成本金额": "variable_cost_amount_yuan",
}

STR_FIELDS = [f for f, kind in DIMENSION_FIELDS.items() if kind is str]
INT_FIELDS = [f for f, kind in DIMENSION_FIELDS.items() if kind is int]
BOOL_FIELDS = [f for f, kind in DIMENSION_FIELDS.items() if kind is bool]

YEAR_RANGE = (2020, 2030)
WEEK_RANGE = (1, 53)


@dataclass
class ImportResult:
    total_rows: int = 0
    valid_rows: int = 0
    error_rows: int = 0
    records: List[InsuranceRecord] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.valid_rows > 0


@dataclass(frozen=True)
class ValidationResult:
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors


def parse_year_week_from_name(filename: str) -> Tuple[Optional[int], Optional[int]]:
    """Parse names like ``2024保单第28周变动成本明细表.csv`` -> (2024, 28)."""
    match = re.search(r"(\d{4})\D*?第\s*(\d{1,2})\s*周", filename)
    if not match:
        match = re.search(r"(\d{4})[-_ ]?[Ww](\d{1,2})", filename)
    if not match:
        return None, None
    return int(match.group(1)), int(match.group(2))


def get_source_files(data_dir: Optional[Path] = None, file_glob: Optional[str] = None) -> List[Path]:
    settings = get_data_settings()
    base = Path(data_dir) if data_dir is not None else settings.data_dir
    return sorted(base.glob(file_glob or settings.file_glob))


def file_signature(files: List[Path]) -> Tuple[Tuple[str, float], ...]:
    return tuple((str(f), f.stat().st_mtime) for f in files)


def numericize(df: pd.DataFrame, cols: Iterable[str]) -> pd.DataFrame:
    for col in cols:
        if col in df.columns:
            series = df[col]
            if series.dtype == object:
                series = series.astype(str).str.replace(r"[,，]", "", regex=True)
            df[col] = pd.to_numeric(series, errors="coerce")
    return df


def coerce_str_safe(df: pd.DataFrame, cols: Iterable[str]) -> pd.DataFrame:
    for col in cols:
        if col in df.columns:
            series = df[col].astype("string").str.strip()
            series = series.replace({"nan": pd.NA, "None": pd.NA, "": pd.NA})
            df[col] = series
    return df


def coerce_bool_safe(df: pd.DataFrame, cols: Iterable[str]) -> pd.DataFrame:
    for col in cols:
        if col in df.columns:
            df[col] = df[col].map(lambda v: coerce_dimension_value(bool, v)).astype(object)
    return df


def validate_record(record: InsuranceRecord) -> ValidationResult:
    errors: List[str] = []
    warnings: List[str] = []

    if not record.policy_start_year:
        errors.append("policy_start_year is required")
    if not record.week_number:
        errors.append("week_number is required")
    if is_missing(record.policy_count) or record.policy_count <= 0:
        errors.append("policy_count must be greater than 0")

    if record.policy_start_year and not YEAR_RANGE[0] <= record.policy_start_year <= YEAR_RANGE[1]:
        errors.append(f"policy_start_year outside {YEAR_RANGE[0]}-{YEAR_RANGE[1]}")
    if record.week_number and not WEEK_RANGE[0] <= record.week_number <= WEEK_RANGE[1]:
        errors.append(f"week_number outside {WEEK_RANGE[0]}-{WEEK_RANGE[1]}")

    for name in ("signed_premium_yuan", "matured_premium_yuan", "reported_claim_payment_yuan"):
        if getattr(record, name) < 0:
            errors.append(f"{name} must not be negative")

    if record.claim_case_count and record.policy_count and record.claim_case_count > record.policy_count:
        warnings.append("claim_case_count exceeds policy_count")
    if (
        record.matured_premium_yuan
        and record.signed_premium_yuan
        and abs(record.matured_premium_yuan - record.signed_premium_yuan) / record.signed_premium_yuan > 0.5
    ):
        warnings.append("matured_premium_yuan differs from signed_premium_yuan by more than 50%")

    return ValidationResult(errors=tuple(errors), warnings=tuple(warnings))


def prepare_frame(raw: pd.DataFrame) -> pd.DataFrame:
    df = raw.rename(columns=lambda c: str(c).strip()).rename(columns=CSV_FIELD_MAPPING)
    df = df.loc[:, ~df.columns.duplicated()]
    for col in RECORD_FIELDS:
        if col not in df.columns:
            df[col] = pd.NA
    df = df[list(RECORD_FIELDS)].copy()
    df = coerce_str_safe(df, STR_FIELDS)
    df = numericize(df, INT_FIELDS + list(ABSOLUTE_FIELDS))
    df = coerce_bool_safe(df, BOOL_FIELDS)
    df[list(ABSOLUTE_FIELDS)] = df[list(ABSOLUTE_FIELDS)].fillna(0.0)
    return df


def load_records_csv(
    source: Union[str, Path, IO[Any]],
    *,
    year: Optional[int] = None,
    week: Optional[int] = None,
) -> ImportResult:
    """
    Read one CSV export into validated records.

    *year* and *week* fill ``policy_start_year``/``week_number`` where the file
    leaves them blank (weekly exports usually encode them in the file name).
    """
    result = ImportResult()
    try:
        raw = pd.read_csv(source, dtype=str, keep_default_na=False, skip_blank_lines=True)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
        result.errors.append(f"failed to read CSV: {exc}")
        return result

    df = prepare_frame(raw)
    if year is not None:
        df["policy_start_year"] = df["policy_start_year"].fillna(year)
    if week is not None:
        df["week_number"] = df["week_number"].fillna(week)

    result.total_rows = len(df)
    for idx, row in enumerate(df.to_dict(orient="records")):
        line = idx + 2  # header is line 1
        record = InsuranceRecord.from_mapping(row)
        check = validate_record(record)
        if check.is_valid:
            result.records.append(record)
            result.valid_rows += 1
        else:
            result.error_rows += 1
            result.errors.append(f"line {line}: {', '.join(check.errors)}")
        if check.warnings:
            result.warnings.append(f"line {line}: {', '.join(check.warnings)}")
    logger.info("loaded %d/%d valid rows", result.valid_rows, result.total_rows)
    return result


@lru_cache(maxsize=4)
def _load_dataset_cached(files_sig: Tuple[Tuple[str, float], ...]) -> ImportResult:
    combined = ImportResult()
    for name, _ in files_sig:
        path = Path(name)
        year, week = parse_year_week_from_name(path.name)
        part = load_records_csv(path, year=year, week=week)
        combined.total_rows += part.total_rows
        combined.valid_rows += part.valid_rows
        combined.error_rows += part.error_rows
        combined.records.extend(part.records)
        combined.errors.extend(f"{path.name}: {e}" for e in part.errors)
        combined.warnings.extend(f"{path.name}: {w}" for w in part.warnings)
    return combined


def load_dataset(data_dir: Optional[Path] = None) -> ImportResult:
    files = get_source_files(data_dir)
    if not files:
        logger.info("no source files found under %s", data_dir or get_data_settings().data_dir)
        return ImportResult()
    return _load_dataset_cached(file_signature(files))


def dataset_signature(data_dir: Optional[Path] = None) -> Tuple[Tuple[str, float], ...]:
    return file_signature(get_source_files(data_dir))
