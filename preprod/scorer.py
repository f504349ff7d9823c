"""Deterministic aggregation of department ratings into project readiness.

Pure functions, no I/O:

- ``calculate_project_readiness_score`` - weighted (when any weight is
  positive) or plain mean of completed ratings, 0-100
- ``calculate_consistency`` - 100 minus the population standard deviation
  scaled so that a spread of 50 points or more yields 0
- ``calculate_completeness`` - share of departments evaluated, as a percentage
- ``get_recommendation`` - ready (>= 80) / needs_improvement (>= 60) / not_ready
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

READY_AT = 80
NEEDS_IMPROVEMENT_AT = 60
MAX_STD_DEV = 50.0


@dataclass
class DepartmentScore:
    rating: float
    weight: float | None = None
    department_slug: str = ""
    department_number: int = 0


@dataclass
class ReadinessSummary:
    score: int
    consistency: int
    completeness: int
    recommendation: str


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_project_readiness_score(scores: Iterable[DepartmentScore]) -> int:
    scores = list(scores)
    if not scores:
        return 0

    if any((s.weight or 0) > 0 for s in scores):
        # Unweighted entries count once; explicit zero or negative weights drop out
        weights = [1.0 if s.weight is None else max(0.0, s.weight) for s in scores]
        weighted = sum(s.rating * w for s, w in zip(scores, weights))
        return round_half_up(weighted / sum(weights))

    return round_half_up(sum(s.rating for s in scores) / len(scores))


def calculate_consistency(ratings: Iterable[float]) -> int:
    """Empty input yields 0; a single rating is perfectly consistent."""
    ratings = list(ratings)
    if not ratings:
        return 0
    mean = sum(ratings) / len(ratings)
    std_dev = math.sqrt(sum((r - mean) ** 2 for r in ratings) / len(ratings))
    return round_half_up(max(0.0, 100 - (std_dev / MAX_STD_DEV) * 100))


def calculate_completeness(evaluated_count: int, total_departments: int) -> int:
    if total_departments <= 0:
        return 0
    return round_half_up(evaluated_count / total_departments * 100)


def get_recommendation(score: float) -> str:
    if score >= READY_AT:
        return "ready"
    if score >= NEEDS_IMPROVEMENT_AT:
        return "needs_improvement"
    return "not_ready"


def summarize(scores: list[DepartmentScore], total_departments: int) -> ReadinessSummary:
    score = calculate_project_readiness_score(scores)
    return ReadinessSummary(
        score=score,
        consistency=calculate_consistency(s.rating for s in scores),
        completeness=calculate_completeness(len(scores), total_departments),
        recommendation=get_recommendation(score),
    )
