from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Final


@dataclass(frozen=True)
class PlanLimits:
    # Soft: agents are warned when approaching; never blocks writes.
    soft_limit_per_project: float
    # Hard: org-wide ceiling that blocks creation of new keys.
    hard_limit_org: float


DEFAULT_PLAN_ID: Final = "free"

PLANS: Final[dict[str, PlanLimits]] = {
    "free": PlanLimits(soft_limit_per_project=200, hard_limit_org=500),
    "lite": PlanLimits(soft_limit_per_project=1_000, hard_limit_org=10_000),
    "pro": PlanLimits(soft_limit_per_project=5_000, hard_limit_org=100_000),
    "business": PlanLimits(soft_limit_per_project=10_000, hard_limit_org=500_000),
    "scale": PlanLimits(soft_limit_per_project=25_000, hard_limit_org=2_000_000),
    "enterprise": PlanLimits(soft_limit_per_project=math.inf, hard_limit_org=math.inf),
}


def is_plan_id(value: str) -> bool:
    return value in PLANS


def limits_for_plan(plan_id: str | None) -> PlanLimits:
    normalized = (plan_id or "").strip().lower()
    if not is_plan_id(normalized):
        normalized = DEFAULT_PLAN_ID
    return PLANS[normalized]
