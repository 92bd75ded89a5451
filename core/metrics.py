"""
core/metrics.py

Derived ratios over one aggregated group.

Formulas
--------
average premium per policy  = signed_premium / policy_count
average claim payment       = reported_claim_payment / claim_case_count
expense ratio %             = expense_amount / signed_premium * 100
matured loss ratio %        = reported_claim_payment / matured_premium * 100
claim frequency %           = (claim_case_count / policy_count)
                              * (matured_premium / signed_premium) * 100
variable cost ratio %       = (expense_amount / signed_premium
                               + reported_claim_payment / matured_premium) * 100
margin contribution rate %  = matured_margin_contribution / matured_premium * 100
commercial pricing factor   = signed_premium / commercial_premium_before_discount
combined ratio %            = expense ratio % + matured loss ratio %
profit margin %             = 100 - combined ratio %

Every formula is evaluated on unrounded intermediates; rounding happens once
on the exposed values. A zero denominator yields 0 for that factor and a
calculation warning. Out-of-range ratios are reported as anomaly flags.
Nothing here raises on bad numeric input.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.aggregation import AggregatedGroup, aggregate, aggregate_totals
from core.arithmetic import round_half_up, safe_divide, to_number
from core.records import RecordsLike

DERIVED_FIELDS: tuple = (
    "average_premium_per_policy_yuan",
    "average_claim_payment_yuan",
    "claim_frequency_percent",
    "matured_loss_ratio_percent",
    "expense_ratio_percent",
    "variable_cost_ratio_percent",
    "matured_margin_contribution_rate_percent",
    "commercial_auto_underwriting_factor",
    "combined_ratio_percent",
    "profit_margin_percent",
)


@dataclass(frozen=True)
class Range:
    min: float
    max: float

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max


@dataclass(frozen=True)
class AnomalyThresholds:
    variable_cost_ratio: Range = Range(0.0, 150.0)
    matured_loss_ratio: Range = Range(0.0, 100.0)
    expense_ratio: Range = Range(0.0, 50.0)
    margin_contribution_ratio: Range = Range(-50.0, 100.0)


@dataclass(frozen=True)
class QualityPenalties:
    per_warning: int = 10
    per_anomaly: int = 15
    zero_signed_premium: int = 20
    zero_matured_premium: int = 15
    zero_policy_count: int = 25


@dataclass(frozen=True)
class MetricResult:
    dimensions: Dict[str, Any] = field(default_factory=dict)
    record_count: int = 0

    signed_premium_yuan: float = 0.0
    matured_premium_yuan: float = 0.0
    commercial_premium_before_discount_yuan: float = 0.0
    policy_count: float = 0.0
    claim_case_count: float = 0.0
    reported_claim_payment_yuan: float = 0.0
    expense_amount_yuan: float = 0.0
    matured_margin_contribution_yuan: float = 0.0
    variable_cost_amount_yuan: float = 0.0

    average_premium_per_policy_yuan: float = 0.0
    average_claim_payment_yuan: float = 0.0
    claim_frequency_percent: float = 0.0
    matured_loss_ratio_percent: float = 0.0
    expense_ratio_percent: float = 0.0
    variable_cost_ratio_percent: float = 0.0
    matured_margin_contribution_rate_percent: float = 0.0
    commercial_auto_underwriting_factor: float = 0.0
    combined_ratio_percent: float = 0.0
    profit_margin_percent: float = 0.0

    calculation_warnings: Tuple[str, ...] = ()
    anomaly_flags: Tuple[str, ...] = ()
    data_quality_score: int = 100

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["calculation_warnings"] = list(self.calculation_warnings)
        out["anomaly_flags"] = list(self.anomaly_flags)
        return out

    def flat_dict(self) -> Dict[str, Any]:
        """Dimension values lifted to top-level columns, for tables and charts."""
        out = self.to_dict()
        dims = out.pop("dimensions")
        return {**dims, **out}


def derive(
    group: AggregatedGroup,
    thresholds: Optional[AnomalyThresholds] = None,
    penalties: Optional[QualityPenalties] = None,
) -> MetricResult:
    thresholds = thresholds or AnomalyThresholds()
    penalties = penalties or QualityPenalties()
    warnings: List[str] = []

    signed = to_number(group.signed_premium_yuan)
    matured = to_number(group.matured_premium_yuan)
    before_discount = to_number(group.commercial_premium_before_discount_yuan)
    policies = to_number(group.policy_count)
    claims = to_number(group.claim_case_count)
    claim_payment = to_number(group.reported_claim_payment_yuan)
    expense = to_number(group.expense_amount_yuan)
    margin = to_number(group.matured_margin_contribution_yuan)

    avg_premium = safe_divide(signed, policies, "average_premium_per_policy_yuan: policy_count is 0", warnings)
    avg_claim = safe_divide(claim_payment, claims, "average_claim_payment_yuan: claim_case_count is 0", warnings)
    expense_ratio = safe_divide(expense, signed, "expense_ratio_percent: signed_premium_yuan is 0", warnings) * 100
    loss_ratio = safe_divide(claim_payment, matured, "matured_loss_ratio_percent: matured_premium_yuan is 0", warnings) * 100
    claim_frequency = (
        safe_divide(claims, policies, "claim_frequency_percent: policy_count is 0", warnings)
        * safe_divide(matured, signed, "claim_frequency_percent: signed_premium_yuan is 0", warnings)
        * 100
    )
    # Component divisions already warned above.
    variable_cost_ratio = (safe_divide(expense, signed, "", warnings) + safe_divide(claim_payment, matured, "", warnings)) * 100
    margin_rate = safe_divide(
        margin, matured, "matured_margin_contribution_rate_percent: matured_premium_yuan is 0", warnings
    ) * 100
    pricing_factor = safe_divide(
        signed,
        before_discount,
        "commercial_auto_underwriting_factor: commercial_premium_before_discount_yuan is 0",
        warnings,
    )
    combined_ratio = expense_ratio + loss_ratio
    profit_margin = 100 - combined_ratio

    exposed = {
        "average_premium_per_policy_yuan": round_half_up(avg_premium, 0),
        "average_claim_payment_yuan": round_half_up(avg_claim, 0),
        "claim_frequency_percent": round_half_up(claim_frequency, 1),
        "matured_loss_ratio_percent": round_half_up(loss_ratio, 1),
        "expense_ratio_percent": round_half_up(expense_ratio, 1),
        "variable_cost_ratio_percent": round_half_up(variable_cost_ratio, 1),
        "matured_margin_contribution_rate_percent": round_half_up(margin_rate, 1),
        "commercial_auto_underwriting_factor": round_half_up(pricing_factor, 4),
        "combined_ratio_percent": round_half_up(combined_ratio, 1),
        "profit_margin_percent": round_half_up(profit_margin, 1),
    }

    anomalies = detect_anomalies(exposed, thresholds)
    score = data_quality_score(
        warning_count=len(warnings),
        anomaly_count=len(anomalies),
        signed_premium=signed,
        matured_premium=matured,
        policy_count=policies,
        penalties=penalties,
    )

    return MetricResult(
        dimensions=dict(group.dimensions),
        record_count=group.record_count,
        **group.absolute_values(),
        **exposed,
        calculation_warnings=tuple(warnings),
        anomaly_flags=tuple(anomalies),
        data_quality_score=score,
    )


_ANOMALY_CHECKS: tuple = (
    ("variable_cost_ratio_percent", "variable_cost_ratio", "variable cost ratio"),
    ("matured_loss_ratio_percent", "matured_loss_ratio", "matured loss ratio"),
    ("expense_ratio_percent", "expense_ratio", "expense ratio"),
    ("matured_margin_contribution_rate_percent", "margin_contribution_ratio", "margin contribution rate"),
)


def detect_anomalies(values: Dict[str, Any], thresholds: AnomalyThresholds) -> List[str]:
    flags: List[str] = []
    for field_name, threshold_name, label in _ANOMALY_CHECKS:
        value = values.get(field_name) or 0.0
        allowed: Range = getattr(thresholds, threshold_name)
        if not allowed.contains(value):
            flags.append(f"{label} out of range: {value}%")
    return flags


def data_quality_score(
    *,
    warning_count: int,
    anomaly_count: int,
    signed_premium: float,
    matured_premium: float,
    policy_count: float,
    penalties: QualityPenalties = QualityPenalties(),
) -> int:
    score = 100
    score -= warning_count * penalties.per_warning
    score -= anomaly_count * penalties.per_anomaly
    if signed_premium == 0:
        score -= penalties.zero_signed_premium
    if matured_premium == 0:
        score -= penalties.zero_matured_premium
    if policy_count == 0:
        score -= penalties.zero_policy_count
    return max(0, min(100, score))


def derive_all(groups: Sequence[AggregatedGroup], thresholds: Optional[AnomalyThresholds] = None) -> List[MetricResult]:
    return [derive(g, thresholds) for g in groups]


def calculate_all_metrics(records: RecordsLike, thresholds: Optional[AnomalyThresholds] = None) -> MetricResult:
    return derive(aggregate_totals(records), thresholds)


def calculate_metrics_by_dimensions(
    records: RecordsLike,
    dimensions: Sequence[str],
    thresholds: Optional[AnomalyThresholds] = None,
) -> List[MetricResult]:
    return derive_all(aggregate(records, dimensions), thresholds)
