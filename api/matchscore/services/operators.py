"""Similarity operators for match scoring.

Every operator maps a ``MatchContext`` to an ``OperatorResult`` whose ``value``
is either a score in ``[0, 1]`` or ``None`` when the pair is not comparable.
``None`` is replaced by the operator's neutral baseline in the engine, so a
computed ``0.0`` (no overlap, opposed vectors) never collapses into "missing".
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from matchscore.services.contexts import InterestRef, MatchContext, QuizSubmission, RatingAggregate, TraitValue
from matchscore.services.vectors import (
    average_ratings,
    clamp,
    cosine_similarity,
    normalize_cosine,
    normalize_rating,
    to_centered_vector,
    to_rating_vector,
)

CONFIDENCE_NORM = 5.0
NEUTRAL_BASELINE = 0.5
INTEREST_BASELINE = 0.1
TEXT_LOCATION_PROXIMITY = 0.25
MAX_INTEREST_MATCHES = 5


@dataclass(frozen=True)
class OperatorResult:
    value: float | None
    reason: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ScoringOperator:
    key: str
    weight_key: str
    score: Callable[[MatchContext], OperatorResult]
    cheap: Callable[[MatchContext], float] | None = None
    baseline: float = NEUTRAL_BASELINE


# --- traits / legacy quiz ---------------------------------------------------


def trait_confidence(sample_count: int) -> float:
    return clamp(sample_count / CONFIDENCE_NORM)


def trait_similarity(
    viewer_traits: Sequence[TraitValue],
    candidate_traits: Sequence[TraitValue],
) -> tuple[float | None, float, int]:
    """Return ``(value, coverage, common_count)``; value is None without common traits."""
    if not viewer_traits or not candidate_traits:
        return None, 0.0, 0

    viewer_map = {t.key: t for t in viewer_traits}
    candidate_map = {t.key: t for t in candidate_traits}

    viewer_vec: list[float] = []
    candidate_vec: list[float] = []
    for key, mine in viewer_map.items():
        theirs = candidate_map.get(key)
        if theirs is None:
            continue
        viewer_vec.append(float(mine.value) * trait_confidence(mine.sample_count))
        candidate_vec.append(float(theirs.value) * trait_confidence(theirs.sample_count))

    common = len(viewer_vec)
    if common == 0:
        return None, 0.0, 0

    normalized = normalize_cosine(cosine_similarity(viewer_vec, candidate_vec))
    coverage = common / min(len(viewer_map), len(candidate_map))
    return normalized * math.sqrt(coverage), coverage, common


def _numeric_vector(value: Any) -> list[float] | None:
    if not isinstance(value, (list, tuple)) or not value:
        return None
    out: list[float] = []
    for entry in value:
        if isinstance(entry, bool) or not isinstance(entry, (int, float)):
            return None
        out.append(float(entry))
    return out


def answers_similarity(a: Any, b: Any) -> float:
    if not isinstance(a, dict) or not isinstance(b, dict) or not a:
        return 0.0
    overlap = 0
    matches = 0
    for key, value in a.items():
        if key not in b:
            continue
        overlap += 1
        if b[key] == value:
            matches += 1
    if not overlap:
        return 0.0
    return matches / overlap


def quiz_similarity(viewer_quiz: QuizSubmission, candidate_quiz: QuizSubmission) -> float:
    vec_a = _numeric_vector(viewer_quiz.score_vector)
    vec_b = _numeric_vector(candidate_quiz.score_vector)
    if vec_a and vec_b and len(vec_a) == len(vec_b):
        return normalize_cosine(cosine_similarity(vec_a, vec_b))
    return answers_similarity(viewer_quiz.answers, candidate_quiz.answers)


def score_traits(ctx: MatchContext) -> OperatorResult:
    viewer, candidate = ctx.viewer, ctx.candidate
    trait_value: float | None = None
    coverage: float | None = None
    common: int | None = None
    if viewer.traits and candidate.traits:
        trait_value, coverage, common = trait_similarity(viewer.traits, candidate.traits)
        if common < ctx.prefs.min_trait_overlap:
            trait_value = None

    reason: dict[str, Any] = {
        "traitSim": trait_value,
        "traitCoverage": coverage,
        "traitCommonCount": common,
    }
    if trait_value is not None:
        return OperatorResult(trait_value, reason)

    legacy: float | None = None
    if viewer.quiz is not None and candidate.quiz is not None:
        legacy = quiz_similarity(viewer.quiz, candidate.quiz)
    reason["quizSimLegacy"] = legacy
    return OperatorResult(legacy, reason)


# --- interests ----------------------------------------------------------------


def interest_overlap(viewer: Sequence[InterestRef], candidate: Sequence[InterestRef]) -> dict[str, Any]:
    viewer_keys = {ref.pair: ref.label for ref in viewer}
    candidate_keys = {ref.pair: ref.label for ref in candidate}
    out: dict[str, Any] = {
        "overlap": 0.0,
        "matches": [],
        "intersection": 0,
        "userCount": len(viewer_keys),
        "candidateCount": len(candidate_keys),
    }
    if not viewer_keys or not candidate_keys:
        return out

    common = sorted(viewer_keys.keys() & candidate_keys.keys())
    union = len(viewer_keys) + len(candidate_keys) - len(common)
    out["overlap"] = len(common) / union if union else 0.0
    out["matches"] = [viewer_keys[pair] for pair in common]
    out["intersection"] = len(common)
    return out


def interest_upper_bound(viewer_count: int, candidate_count: int, *, tight: bool = True) -> float:
    """Largest Jaccard value reachable with sets of these sizes."""
    if viewer_count <= 0 or candidate_count <= 0:
        return 0.0
    if not tight:
        return 1.0
    return min(viewer_count, candidate_count) / max(viewer_count, candidate_count)


def score_interests(ctx: MatchContext) -> OperatorResult:
    result = interest_overlap(ctx.viewer.interests, ctx.candidate.interests)
    reason = {
        "matches": result["matches"][:MAX_INTEREST_MATCHES],
        "intersection": result["intersection"],
        "userCount": result["userCount"],
        "candidateCount": result["candidateCount"],
    }
    if result["userCount"] == 0 or result["candidateCount"] == 0:
        return OperatorResult(None, reason)
    return OperatorResult(result["overlap"], reason)


def _distinct_interest_count(refs: Sequence[InterestRef]) -> int:
    return len({ref.pair for ref in refs})


def _cheap_interests(ctx: MatchContext, *, tight: bool) -> float:
    viewer_count = _distinct_interest_count(ctx.viewer.interests)
    candidate_count = _distinct_interest_count(ctx.candidate.interests)
    if viewer_count == 0 or candidate_count == 0:
        # Not comparable: the engine will substitute the baseline.
        return INTEREST_BASELINE
    return interest_upper_bound(viewer_count, candidate_count, tight=tight)


def cheap_interests_tight(ctx: MatchContext) -> float:
    return _cheap_interests(ctx, tight=True)


def cheap_interests_loose(ctx: MatchContext) -> float:
    return _cheap_interests(ctx, tight=False)


# --- ratings ------------------------------------------------------------------


def rating_quality(agg: RatingAggregate | None, rating_max: float, min_rating_count: int) -> float | None:
    if agg is None or agg.count < min_rating_count:
        return None
    raw = average_ratings(agg)
    if raw is None:
        return None
    return normalize_rating(raw, rating_max)


def rating_fit(
    viewer_ratings: RatingAggregate | None,
    candidate_ratings: RatingAggregate | None,
    rating_max: float,
    min_rating_count: int,
) -> float | None:
    if viewer_ratings is None or candidate_ratings is None:
        return None
    if candidate_ratings.count < min_rating_count:
        return None
    viewer_vec = to_centered_vector(to_rating_vector(viewer_ratings, rating_max))
    candidate_vec = to_centered_vector(to_rating_vector(candidate_ratings, rating_max))
    if viewer_vec is None or candidate_vec is None:
        return None
    return normalize_cosine(cosine_similarity(viewer_vec, candidate_vec))


def score_rating_quality(ctx: MatchContext) -> OperatorResult:
    value = rating_quality(ctx.candidate.ratings, ctx.prefs.rating_max, ctx.prefs.min_rating_count)
    count = ctx.candidate.ratings.count if ctx.candidate.ratings else 0
    return OperatorResult(value, {"count": count})


def score_rating_fit(ctx: MatchContext) -> OperatorResult:
    value = rating_fit(ctx.viewer.ratings, ctx.candidate.ratings, ctx.prefs.rating_max, ctx.prefs.min_rating_count)
    return OperatorResult(value, {"viewerRated": ctx.viewer.ratings is not None})


# --- newness / proximity ------------------------------------------------------


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def newness_score(updated_at: datetime | None, now: datetime, half_life_days: float) -> float:
    if updated_at is None:
        return 0.0
    age_days = (_as_utc(now) - _as_utc(updated_at)).total_seconds() / 86400.0
    if age_days <= 0:
        return 1.0
    decay = math.log(2) / max(1.0, half_life_days)
    return clamp(math.exp(-decay * age_days))


def proximity_score(
    distance_km: float | None,
    radius_km: float,
    viewer_location: str | None,
    candidate_location: str | None,
) -> float:
    if distance_km is not None:
        if radius_km <= 0:
            return 1.0 if distance_km <= 0 else 0.0
        return clamp(1.0 - distance_km / radius_km)
    if viewer_location and candidate_location and viewer_location == candidate_location:
        return TEXT_LOCATION_PROXIMITY
    return 0.0


def _newness(ctx: MatchContext) -> float:
    updated = ctx.candidate.updated_at or ctx.candidate.created_at
    return newness_score(updated, ctx.now, ctx.prefs.newness_half_life_days)


def _proximity(ctx: MatchContext) -> float:
    radius = ctx.prefs.preferred_distance_km
    if radius is None:
        radius = ctx.prefs.default_max_distance_km
    return proximity_score(ctx.candidate.distance_km, radius, ctx.viewer.location_text, ctx.candidate.location_text)


def score_newness(ctx: MatchContext) -> OperatorResult:
    return OperatorResult(_newness(ctx))


def score_proximity(ctx: MatchContext) -> OperatorResult:
    return OperatorResult(_proximity(ctx), {"distanceKm": ctx.candidate.distance_km})


TRAITS = ScoringOperator("traits", "quiz", score_traits)
INTERESTS = ScoringOperator("interests", "interests", score_interests, cheap=cheap_interests_tight, baseline=INTEREST_BASELINE)
INTERESTS_LOOSE = ScoringOperator("interests", "interests", score_interests, cheap=cheap_interests_loose, baseline=INTEREST_BASELINE)
RATING_QUALITY = ScoringOperator("rating_quality", "rating_quality", score_rating_quality)
RATING_FIT = ScoringOperator("rating_fit", "rating_fit", score_rating_fit)
NEWNESS = ScoringOperator("newness", "newness", score_newness, cheap=_newness, baseline=0.0)
PROXIMITY = ScoringOperator("proximity", "proximity", score_proximity, cheap=_proximity, baseline=0.0)


def default_operators(*, tight_interest_bound: bool = True) -> list[ScoringOperator]:
    interests = INTERESTS if tight_interest_bound else INTERESTS_LOOSE
    return [TRAITS, interests, RATING_QUALITY, RATING_FIT, NEWNESS, PROXIMITY]
