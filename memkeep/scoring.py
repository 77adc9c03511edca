from __future__ import annotations

import datetime as dt
import math
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final, Literal

from .store.utils import parse_iso8601

if TYPE_CHECKING:
    from .store.types import Memory

SECONDS_PER_DAY: Final = 86_400.0

AGE_HALF_LIFE_DAYS: Final = 14.0
FRESHNESS_SCALE_DAYS: Final = 7.0
FACTOR_MAX: Final = 25.0
ACCESS_WEIGHT: Final = 2.5
FEEDBACK_WEIGHT: Final = 2.5

DEFAULT_DECAY_RATE: Final = 0.03
DEFAULT_PIN_BOOST: Final = 1.5

RelevanceBucket = Literal["excellent", "good", "fair", "poor"]


@dataclass(frozen=True)
class HealthFactors:
    age: float
    access: float
    feedback: float
    freshness: float

    @property
    def total(self) -> float:
        return round(_clamp(self.age + self.access + self.feedback + self.freshness, 0.0, 100.0), 2)

    def to_dict(self) -> dict[str, float]:
        return {
            "age": round(self.age, 2),
            "access": round(self.access, 2),
            "feedback": round(self.feedback, 2),
            "freshness": round(self.freshness, 2),
        }


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _days_between(start: str | None, now: dt.datetime) -> float | None:
    if not start:
        return None
    parsed = parse_iso8601(start)
    if parsed is None:
        return None
    # Clock skew can put timestamps in the future; treat those as "just now".
    return max(0.0, (now - parsed).total_seconds() / SECONDS_PER_DAY)


def age_days(memory: Memory, now: dt.datetime) -> float:
    return _days_between(memory.created_at, now) or 0.0


def days_since_access(memory: Memory, now: dt.datetime) -> float:
    days = _days_between(memory.last_accessed_at, now)
    return math.inf if days is None else days


def health_factors(memory: Memory, now: dt.datetime) -> HealthFactors:
    age = max(0.0, FACTOR_MAX - age_days(memory, now) / AGE_HALF_LIFE_DAYS)
    access = min(FACTOR_MAX, max(0, memory.access_count) * ACCESS_WEIGHT)
    net = (memory.helpful_count - memory.unhelpful_count) * FEEDBACK_WEIGHT
    feedback = FACTOR_MAX / 2 + _clamp(net, -FACTOR_MAX / 2, FACTOR_MAX / 2)
    since = days_since_access(memory, now)
    freshness = 0.0 if math.isinf(since) else max(0.0, FACTOR_MAX - since / FRESHNESS_SCALE_DAYS)
    return HealthFactors(age=age, access=access, feedback=feedback, freshness=freshness)


def health_score(memory: Memory, now: dt.datetime) -> float:
    return health_factors(memory, now).total


def relevance_score(
    memory: Memory,
    now: dt.datetime,
    *,
    decay_rate: float = DEFAULT_DECAY_RATE,
    pin_boost: float = DEFAULT_PIN_BOOST,
) -> float:
    priority_weight = max(memory.priority, 1) / 100
    access_weight = 1 + math.log1p(max(0, memory.access_count))
    reference = memory.last_accessed_at or memory.created_at
    days = _days_between(reference, now) or 0.0
    decay = math.exp(-decay_rate * days)
    total_feedback = memory.helpful_count + memory.unhelpful_count
    feedback_factor = 0.5 + memory.helpful_count / total_feedback if total_feedback > 0 else 1.0
    boost = pin_boost if memory.is_pinned else 1.0
    raw = priority_weight * access_weight * decay * feedback_factor * boost * 100
    return round(_clamp(raw, 0.0, 100.0), 2)


def is_low_relevance(
    memory: Memory,
    now: dt.datetime,
    threshold: float,
    *,
    decay_rate: float = DEFAULT_DECAY_RATE,
    pin_boost: float = DEFAULT_PIN_BOOST,
) -> bool:
    if memory.is_pinned:
        return False
    score = relevance_score(memory, now, decay_rate=decay_rate, pin_boost=pin_boost)
    return score < threshold


def relevance_bucket(score: float) -> RelevanceBucket:
    if score >= 60:
        return "excellent"
    if score >= 30:
        return "good"
    if score >= 10:
        return "fair"
    return "poor"


def relevance_distribution(scores: Iterable[float]) -> dict[RelevanceBucket, int]:
    counts: dict[RelevanceBucket, int] = {"excellent": 0, "good": 0, "fair": 0, "poor": 0}
    for score in scores:
        counts[relevance_bucket(score)] += 1
    return counts
