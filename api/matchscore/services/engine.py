"""Candidate scoring pipeline.

Pure over its inputs: no heaps, no persistence, no batching. Callers pass the
gates, classifiers, operators and weights, plus an optional per-tier retention
threshold used to skip the expensive operators.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from matchscore.services.contexts import COMPONENT_KEYS, MatchContext
from matchscore.services.gates import HardGate, PreferenceClassifier, first_exclusion, resolve_tier
from matchscore.services.operators import ScoringOperator
from matchscore.services.vectors import clamp

# Absorbs float summation-order differences between the bound and the full score.
PRUNE_EPSILON = 1e-9


@dataclass
class ScoringResult:
    score: float
    components: dict[str, float]
    reasons: dict[str, Any]
    compliance: dict[str, str]
    tier: str
    upper_bound: float
    pruned: bool = False
    operator_values: dict[str, float | None] = field(default_factory=dict)


def upper_bound(ctx: MatchContext, operators: Sequence[ScoringOperator], weights: Mapping[str, float]) -> float:
    partial = 0.0
    remaining = 0.0
    for op in operators:
        w = float(weights.get(op.weight_key, 0.0))
        if op.cheap is not None:
            partial += clamp(op.cheap(ctx)) * w
        else:
            remaining += w
    return partial + remaining


def _build_reasons(
    ctx: MatchContext,
    components: dict[str, float],
    operator_reasons: dict[str, dict[str, Any]],
    compliance: dict[str, str],
    tier: str,
) -> dict[str, Any]:
    trait_reason = operator_reasons.get("traits", {})
    scores: dict[str, Any] = {
        "quizSim": components["quiz"],
        "traitSim": trait_reason.get("traitSim"),
        "traitCoverage": trait_reason.get("traitCoverage"),
        "traitCommonCount": trait_reason.get("traitCommonCount"),
        "interestOverlap": components["interests"],
        "ratingQuality": components["rating_quality"],
        "ratingFit": components["rating_fit"],
        "newness": components["newness"],
        "proximity": components["proximity"],
    }
    if trait_reason.get("traitSim") is None:
        scores["quizSimLegacy"] = trait_reason.get("quizSimLegacy")

    reasons: dict[str, Any] = {
        "scores": scores,
        "interests": operator_reasons.get("interests", {}),
        "compliance": dict(compliance),
        "tier": tier,
    }
    if ctx.candidate.distance_km is not None:
        reasons["distanceKm"] = round(ctx.candidate.distance_km, 1)
    ratings = ctx.candidate.ratings
    if ratings is not None:
        reasons["ratings"] = {
            "attractive": ratings.attractive,
            "smart": ratings.smart,
            "funny": ratings.funny,
            "interesting": ratings.interesting,
            "count": ratings.count,
        }
    return reasons


def score_candidate(
    ctx: MatchContext,
    hard_gates: Sequence[HardGate],
    classifiers: Sequence[PreferenceClassifier],
    operators: Sequence[ScoringOperator],
    weights: Mapping[str, float],
    *,
    thresholds: Mapping[str, float] | None = None,
    exclusions: Counter | None = None,
) -> ScoringResult | None:
    excluded_by = first_exclusion(ctx, list(hard_gates))
    if excluded_by:
        if exclusions is not None:
            exclusions[excluded_by] += 1
        return None

    compliance = {c.key: c.classify(ctx) for c in classifiers}
    tier = resolve_tier(ctx, compliance)

    bound = upper_bound(ctx, operators, weights)
    threshold = (thresholds or {}).get(tier, float("-inf"))
    if bound + PRUNE_EPSILON < threshold:
        return ScoringResult(
            score=bound,
            components={},
            reasons={},
            compliance=compliance,
            tier=tier,
            upper_bound=bound,
            pruned=True,
        )

    components = {key: 0.0 for key in COMPONENT_KEYS}
    operator_values: dict[str, float | None] = {}
    operator_reasons: dict[str, dict[str, Any]] = {}
    total = 0.0
    for op in operators:
        result = op.score(ctx)
        operator_values[op.key] = result.value
        operator_reasons[op.key] = result.reason
        value = clamp(op.baseline if result.value is None else float(result.value))
        components[op.weight_key] = value
        total += value * float(weights.get(op.weight_key, 0.0))

    return ScoringResult(
        score=total,
        components=components,
        reasons=_build_reasons(ctx, components, operator_reasons, compliance, tier),
        compliance=compliance,
        tier=tier,
        upper_bound=bound,
        operator_values=operator_values,
    )


class ScoringPipeline:
    """Bundles one algorithm version's gates, classifiers, operators and weights."""

    def __init__(
        self,
        hard_gates: Sequence[HardGate],
        classifiers: Sequence[PreferenceClassifier],
        operators: Sequence[ScoringOperator],
        weights: Mapping[str, float],
    ) -> None:
        self.hard_gates = list(hard_gates)
        self.classifiers = list(classifiers)
        self.operators = list(operators)
        self.weights = dict(weights)

    def score(
        self,
        ctx: MatchContext,
        *,
        thresholds: Mapping[str, float] | None = None,
        exclusions: Counter | None = None,
    ) -> ScoringResult | None:
        return score_candidate(
            ctx,
            self.hard_gates,
            self.classifiers,
            self.operators,
            self.weights,
            thresholds=thresholds,
            exclusions=exclusions,
        )
