from __future__ import annotations

from typing import List

import pytest

from core.cache import QueryCache
from core.query import QueryService
from core.records import InsuranceRecord


class FakeClock:
    """Manually advanced time source for cache tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_record(**overrides) -> InsuranceRecord:
    base = dict(
        policy_start_year=2024,
        week_number=28,
        third_level_organization="A",
        business_type_category="非营业个人客车",
        insurance_type="商业险",
        is_new_energy_vehicle=False,
        signed_premium_yuan=1000.0,
        matured_premium_yuan=900.0,
        commercial_premium_before_discount_yuan=1200.0,
        policy_count=2.0,
        claim_case_count=1.0,
        reported_claim_payment_yuan=300.0,
        expense_amount_yuan=100.0,
        matured_margin_contribution_yuan=200.0,
        variable_cost_amount_yuan=400.0,
    )
    base.update(overrides)
    return InsuranceRecord(**base)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sample_records() -> List[InsuranceRecord]:
    return [
        make_record(third_level_organization="天府", week_number=27),
        make_record(third_level_organization="天府", week_number=28, signed_premium_yuan=2000.0, policy_count=4.0),
        make_record(third_level_organization="高新", week_number=28, is_new_energy_vehicle=True),
        make_record(third_level_organization="高新", week_number=29, policy_start_year=2025),
        make_record(third_level_organization="青羊", week_number=29, insurance_type="交强险"),
        make_record(third_level_organization=None, week_number=29),
    ]


@pytest.fixture()
def service(sample_records, clock) -> QueryService:
    """Fresh façade with its own caches for each test."""
    return QueryService(
        sample_records,
        cache=QueryCache(ttl_seconds=300, max_entries=100, clock=clock),
        catalog_cache=QueryCache(ttl_seconds=86400, max_entries=100, clock=clock, name="catalog"),
    )
