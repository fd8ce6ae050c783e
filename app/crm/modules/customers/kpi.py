"""
KPI aggregation over a set of customers.

Read-only and recomputed on every call. Every ratio whose denominator is zero
is reported as 0 (never NaN or infinity), also when the set is a single customer.
"""
from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from app.crm.modules.customers.lifecycle import STAGE_SEQUENCE, Stage, current_stage, to_money


def _ratio(numerator: Decimal | float, denominator: float) -> float:
    if not denominator:
        return 0
    return float(numerator / denominator)


@dataclass(frozen=True)
class KpiSummary:
    clv: float = 0
    conversion_rate: float = 0
    average_touchpoints: float = 0
    activity_per_sales_agent: dict[str, int] = field(default_factory=dict)
    revenue_per_touchpoint: float = 0
    customer_count: int = 0
    total_revenue: float = 0
    stage_counts: dict[str, int] = field(default_factory=lambda: {s.value: 0 for s in STAGE_SEQUENCE})

    def to_dict(self) -> dict[str, Any]:
        return {
            "clv": self.clv,
            "conversion_rate": self.conversion_rate,
            "average_touchpoints": self.average_touchpoints,
            "activity_per_sales_agent": dict(self.activity_per_sales_agent),
            "revenue_per_touchpoint": self.revenue_per_touchpoint,
            "customer_count": self.customer_count,
            "total_revenue": self.total_revenue,
            "stage_counts": dict(self.stage_counts),
        }


def compute_kpis(customers: Iterable[Any]) -> KpiSummary:
    customers = list(customers)
    total = len(customers)

    stage_counts = {s.value: 0 for s in STAGE_SEQUENCE}
    ordered_revenue = Decimal("0")
    revenue = Decimal("0")
    touchpoints = 0
    agents: Counter[str] = Counter()

    for c in customers:
        stage = current_stage(c)
        stage_counts[stage.value] += 1
        c_revenue = to_money(c.total_revenue)
        revenue += c_revenue
        touchpoints += c.touchpoints or 0
        if stage is Stage.ORDERED:
            ordered_revenue += c_revenue
        for note in c.notes:
            agents[note.sales_agent or ""] += 1

    ordered = stage_counts[Stage.ORDERED.value]
    return KpiSummary(
        clv=_ratio(ordered_revenue, ordered),
        conversion_rate=_ratio(100 * ordered, total),
        average_touchpoints=_ratio(touchpoints, total),
        activity_per_sales_agent=dict(agents),
        revenue_per_touchpoint=_ratio(revenue, touchpoints),
        customer_count=total,
        total_revenue=float(revenue),
        stage_counts=stage_counts,
    )
