"""Tests for KPI aggregation, including the zero-denominator rules."""
import math
from decimal import Decimal

import pytest

from app.crm.modules.customers.kpi import compute_kpis
from app.crm.modules.customers.models import Customer, Note


def _customer(stage="new", revenue=0.0, touchpoints=0, agents=()):
    return Customer(
        name="c",
        stage=stage,
        total_revenue=revenue,
        touchpoints=touchpoints,
        notes=[Note(type="call", content="x", sales_agent=a) for a in agents],
    )


def _finite(summary) -> bool:
    return all(
        math.isfinite(v)
        for v in (summary.clv, summary.conversion_rate, summary.average_touchpoints, summary.revenue_per_touchpoint)
    )


def test_empty_set_is_all_zero():
    k = compute_kpis([])
    assert k.clv == 0
    assert k.conversion_rate == 0
    assert k.average_touchpoints == 0
    assert k.revenue_per_touchpoint == 0
    assert k.activity_per_sales_agent == {}
    assert k.customer_count == 0
    assert k.stage_counts == {"new": 0, "engaged": 0, "ordered": 0, "closed lost": 0}


def test_clv_only_counts_ordered_customers():
    customers = [
        _customer("ordered", 100.0, 2),
        _customer("ordered", 300.0, 2),
        _customer("closed lost", 1000.0, 4),
        _customer("engaged", 0.0, 1),
    ]
    k = compute_kpis(customers)
    assert k.clv == 200.0
    assert k.conversion_rate == 50.0
    assert k.average_touchpoints == 9 / 4
    assert k.revenue_per_touchpoint == pytest.approx(1400.0 / 9)
    assert k.total_revenue == 1400.0
    assert k.stage_counts["ordered"] == 2


def test_no_ordered_customers_gives_zero_clv():
    k = compute_kpis([_customer("engaged", 0.0, 3)])
    assert k.clv == 0
    assert k.conversion_rate == 0


def test_activity_per_sales_agent_counts_notes():
    customers = [
        _customer("engaged", touchpoints=3, agents=("dana", "lee", "dana")),
        _customer("ordered", 50.0, touchpoints=1, agents=("lee",)),
    ]
    k = compute_kpis(customers)
    assert k.activity_per_sales_agent == {"dana": 2, "lee": 2}


def test_zero_touchpoints_do_not_produce_nan():
    customers = [_customer("ordered", 100.0, 0), _customer("new", 0.0, 0)]
    k = compute_kpis(customers)
    assert _finite(k)
    assert k.average_touchpoints == 0
    assert k.revenue_per_touchpoint == 0
    assert k.clv == 100.0
    assert k.conversion_rate == 50.0


def test_mixed_touchpoints_average():
    k = compute_kpis([_customer("engaged", 0.0, 2), _customer("new", 0.0, 0)])
    assert k.average_touchpoints == 1.0
    assert k.revenue_per_touchpoint == 0


def test_single_customer_after_order_removed():
    # note added, order of 100 added then removed: stage stays ordered, revenue back to 0
    c = _customer("ordered", 0.0, 1, agents=("dana",))
    k = compute_kpis([c])
    assert k.clv == 0
    assert k.conversion_rate == 100.0
    assert k.average_touchpoints == 1.0
    assert k.revenue_per_touchpoint == 0
    assert k.activity_per_sales_agent == {"dana": 1}


def test_fractional_revenue_sums_exactly():
    k = compute_kpis([_customer("ordered", Decimal("0.10"), 1), _customer("ordered", 0.2, 1)])
    assert k.total_revenue == 0.3
    assert k.clv == 0.15
    assert k.revenue_per_touchpoint == 0.15


def test_to_dict_keys():
    d = compute_kpis([_customer("ordered", 10.0, 1)]).to_dict()
    assert set(d) == {
        "clv",
        "conversion_rate",
        "average_touchpoints",
        "activity_per_sales_agent",
        "revenue_per_touchpoint",
        "customer_count",
        "total_revenue",
        "stage_counts",
    }
