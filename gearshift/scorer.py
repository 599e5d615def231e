"""Deterministic multi-dimensional scoring of roadmap items.

Every adjustment comes from an explicit signal table so each dimension can be
audited and tested on its own. Keywords match whole words of the lower-cased
title and description; hyphenated terms such as ``real-time`` match as written.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace
from typing import Iterable, Mapping

import structlog

from gearshift.errors import ConfigurationError
from gearshift.models import (
    Confidence,
    EffortEstimate,
    EstimateSource,
    ItemScore,
    Priority,
    ProjectContext,
    RoadmapItem,
    ScoringFactors,
)

logger = structlog.get_logger()


def _word(keyword: str) -> re.Pattern[str]:
    return re.compile(r"(?<![a-z0-9])" + re.escape(keyword) + r"(?![a-z0-9])")


@dataclass(frozen=True)
class Signal:
    """A named score adjustment.

    ``groups`` holds alternatives per group; the signal fires when every group
    has at least one matching keyword.
    """

    label: str
    weight: int
    groups: tuple[tuple[re.Pattern[str], ...], ...]

    def fires(self, text: str) -> bool:
        return all(any(p.search(text) for p in group) for group in self.groups)


def signal(label: str, weight: int, *groups: str) -> Signal:
    """Build a Signal from ``"a|b"`` style keyword groups."""
    return Signal(
        label=label,
        weight=weight,
        groups=tuple(tuple(_word(k) for k in group.split("|")) for group in groups),
    )


IMPACT_SIGNALS: tuple[Signal, ...] = (
    signal("Security improvement", 3, "security|vulnerability|vulnerabilities"),
    signal("Data loss prevention", 3, "data loss|corruption"),
    signal("Performance enhancement", 2, "performance|speed"),
    signal("UX improvement", 2, "user experience|ux"),
    signal("Automation benefit", 2, "automation|automatic|automated|ai|machine learning"),
    signal("Reliability fix", 2, "error|errors|crash|crashes|bug|bugs"),
)

CATEGORY_IMPACT: dict[str, int] = {
    "core-functionality": 3,
    "security": 3,
    "developer-experience": 2,
    "user-experience": 2,
    "performance": 2,
    "testing": 1,
    "documentation": 1,
    "integration": 1,
}

EFFORT_COMPLEXITY_SIGNALS: tuple[Signal, ...] = (
    signal("AI/ML complexity", 3, "ai|machine learning"),
    signal("Distributed system", 2, "distributed|scalable"),
    signal("Migration required", 2, "migration|migrations|refactor"),
    signal("Architecture changes", 2, "architecture|redesign"),
    signal("Third-party integration", 2, "integration|integrations", "third-party"),
    signal("Real-time processing", 2, "real-time|streaming"),
)
EFFORT_COMPLEXITY_CAP = 5

EFFORT_SIMPLICITY_SIGNALS: tuple[Signal, ...] = (
    signal("Simple change", -2, "simple|basic"),
    signal("Documentation only", -2, "documentation|readme"),
    signal("UI change", -1, "ui|display"),
    signal("Logging change", -1, "logging|error message|error messages"),
)

LARGE_CODEBASE_LINES = 100_000

STRATEGIC_SIGNALS: tuple[Signal, ...] = (
    signal("AI trend alignment", 2, "ai|llm"),
    signal("Cloud trend", 1, "cloud|serverless"),
    signal("Collaboration trend", 1, "real-time|collaboration"),
    signal("Mobile trend", 1, "mobile|responsive"),
    signal("Innovation", 2, "unique|innovative"),
    signal("Competitive advantage", 1, "differentiator|competitive"),
    signal("User demand", 2, "requested|demand"),
)
ALIGNMENT_TAG_WEIGHT = 0.5
ALIGNMENT_TAG_CAP = 3.0

RISK_SIGNALS: tuple[Signal, ...] = (
    signal("Breaking changes", 3, "breaking|migration|migrations"),
    signal("Experimental", 2, "experimental|beta"),
    signal("Security implications", 2, "security", "change|changes"),
    signal("Schema change", 2, "database", "schema"),
    signal("Auth change", 2, "authentication|authorization|auth"),
    signal("Payment handling", 3, "payment|payments|billing"),
    signal("External dependencies", 1, "third-party|external"),
    signal("API integration", 1, "api", "integration"),
    signal("Technical debt", 1, "refactor|rewrite"),
)

EFFORT_HOURS: dict[int, int] = {
    1: 4,
    2: 8,
    3: 16,
    4: 20,
    5: 28,
    6: 40,
    7: 50,
    8: 64,
    9: 80,
    10: 120,
}
DEFAULT_EFFORT_HOURS = 24


@dataclass(frozen=True)
class ScoringWeights:
    """Weights of the composite priority score. Must sum to 1.0."""

    impact: float = 0.4
    effort: float = 0.3
    strategic: float = 0.2
    risk: float = 0.1

    def __post_init__(self) -> None:
        values = (self.impact, self.effort, self.strategic, self.risk)
        if any(v < 0 for v in values):
            raise ConfigurationError(f"scoring weights must be non-negative: {values}")
        total = sum(values)
        if not math.isclose(total, 1.0, abs_tol=1e-9):
            raise ConfigurationError(f"scoring weights must sum to 1.0, got {total}")


def _clamp(value: float, low: float = 1, high: float = 10) -> float:
    return max(low, min(high, value))


def _fire(table: Iterable[Signal], text: str) -> tuple[int, list[str]]:
    total = 0
    fired = []
    for sig in table:
        if sig.fires(text):
            total += sig.weight
            fired.append(sig.label)
    return total, fired


def determine_priority(impact: float, priority_score: float) -> Priority:
    """Map impact and composite score to a tier; first matching rule wins."""
    if impact >= 8 and priority_score >= 7:
        return Priority.P0
    if impact >= 7 or priority_score >= 6:
        return Priority.P1
    if impact >= 5 or priority_score >= 4:
        return Priority.P2
    return Priority.P3


def estimate_hours(effort: float) -> int:
    return EFFORT_HOURS.get(int(effort), DEFAULT_EFFORT_HOURS)


def calculate_roi(impact: float, effort: float) -> float:
    if effort == 0:
        return impact * 10
    return impact / max(effort, 1)


class Scorer:
    """Scores roadmap items against a project context."""

    def __init__(self, weights: ScoringWeights | Mapping[str, float] | None = None) -> None:
        if weights is None:
            weights = ScoringWeights()
        elif not isinstance(weights, ScoringWeights):
            try:
                weights = ScoringWeights(**weights)
            except TypeError as e:
                raise ConfigurationError(f"unknown scoring weight: {e}") from e
        self._weights = weights

    @property
    def weights(self) -> ScoringWeights:
        return self._weights

    def score(self, item: RoadmapItem, context: ProjectContext) -> ItemScore:
        """Score a single item. Pure and deterministic."""
        text = f"{item.title} {item.description}".lower()

        impact, impact_factors = self.score_impact(item, text)
        effort, effort_factors = self.score_effort(text, context)
        strategic, strategic_factors = self.score_strategic_value(item, text)
        risk, risk_factors = self.score_risk(text)

        w = self._weights
        priority_score = round(
            impact * w.impact
            + (10 - effort) * w.effort
            + strategic * w.strategic
            + (10 - risk) * w.risk,
            4,
        )

        return ItemScore(
            impact=impact,
            effort=effort,
            roi=calculate_roi(impact, effort),
            strategic_value=strategic,
            risk_score=risk,
            priority_score=priority_score,
            priority=determine_priority(impact, priority_score),
            effort_hours=estimate_hours(effort),
            factors=ScoringFactors(
                impact=tuple(impact_factors),
                effort=tuple(effort_factors),
                strategic=tuple(strategic_factors),
                risk=tuple(risk_factors),
            ),
        )

    def score_item(self, item: RoadmapItem, context: ProjectContext) -> RoadmapItem:
        """Return a copy of ``item`` carrying its score.

        Items without an effort estimate get one derived from the effort score.
        """
        result = self.score(item, context)
        estimate = item.effort_estimate or EffortEstimate(
            hours=result.effort_hours,
            confidence=Confidence.MEDIUM,
            source=EstimateSource.AI,
        )
        return replace(item, score=result, effort_estimate=estimate)

    def score_all(
        self, items: Iterable[RoadmapItem], context: ProjectContext
    ) -> list[RoadmapItem]:
        """Score every item and sort by priority score, highest first."""
        scored = [self.score_item(item, context) for item in items]
        scored.sort(key=lambda i: (-i.priority_score, i.id))
        if scored:
            logger.debug(
                "items_scored",
                count=len(scored),
                top=scored[0].id,
                top_score=scored[0].priority_score,
            )
        return scored

    @staticmethod
    def score_impact(item: RoadmapItem, text: str) -> tuple[float, list[str]]:
        total, fired = _fire(IMPACT_SIGNALS, text)
        score = 5 + total

        category_bonus = CATEGORY_IMPACT.get(item.category, 0)
        if category_bonus:
            score += category_bonus
            fired.append(f"Category: {item.category}")

        if item.strategic_alignment:
            score += min(len(item.strategic_alignment), 2)
            fired.append("Strategic alignment")

        return _clamp(score), fired

    @staticmethod
    def score_effort(text: str, context: ProjectContext) -> tuple[float, list[str]]:
        complexity, fired = _fire(EFFORT_COMPLEXITY_SIGNALS, text)
        simplicity, simple_fired = _fire(EFFORT_SIMPLICITY_SIGNALS, text)
        score = 5 + min(complexity, EFFORT_COMPLEXITY_CAP) + simplicity
        fired.extend(simple_fired)

        stack = [context.language, *context.frameworks]
        familiar = [name for name in stack if name and _word(name.lower()).search(text)]
        if familiar:
            score -= 1
            fired.append(f"Familiar stack: {familiar[0]}")

        if context.lines_of_code > LARGE_CODEBASE_LINES:
            score += 1
            fired.append("Large codebase")

        return _clamp(score), fired

    @staticmethod
    def score_strategic_value(item: RoadmapItem, text: str) -> tuple[float, list[str]]:
        fired = list(item.strategic_alignment)
        score = 5 + min(len(item.strategic_alignment) * ALIGNMENT_TAG_WEIGHT, ALIGNMENT_TAG_CAP)
        total, trend_fired = _fire(STRATEGIC_SIGNALS, text)
        fired.extend(trend_fired)
        return _clamp(score + total), fired

    @staticmethod
    def score_risk(text: str) -> tuple[float, list[str]]:
        total, fired = _fire(RISK_SIGNALS, text)
        return _clamp(3 + total), fired
