from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from matchscore.services.contexts import TIER_A, TIER_B, MatchContext
from matchscore.services.geo import compute_age

WITHIN = "within"
UNSTATED = "unstated"
UNKNOWN = "unknown"
OUTSIDE = "outside"


@dataclass(frozen=True)
class HardGate:
    key: str
    check: Callable[[MatchContext], str | None]


@dataclass(frozen=True)
class PreferenceClassifier:
    key: str
    classify: Callable[[MatchContext], str]


def normalize_gender(value: Any) -> str | None:
    if value is None:
        return None
    v = str(value).strip().lower()
    return v or None


def parse_preferred_genders(values: Any) -> frozenset[str] | None:
    """Unparseable or empty input means no preference."""
    if not isinstance(values, (list, tuple, set, frozenset)):
        return None
    out = {g for g in (normalize_gender(v) for v in values if isinstance(v, str)) if g}
    return frozenset(out) or None


def _candidate_age(ctx: MatchContext) -> int | None:
    return compute_age(ctx.candidate.birthdate, ctx.now)


def classify_gender(ctx: MatchContext) -> str:
    preferred = ctx.prefs.preferred_genders
    if not preferred:
        return UNSTATED
    gender = normalize_gender(ctx.candidate.gender)
    if gender is None or gender not in preferred:
        return OUTSIDE
    return WITHIN


def classify_age(ctx: MatchContext) -> str:
    age_min, age_max = ctx.prefs.preferred_age_min, ctx.prefs.preferred_age_max
    if age_min is None and age_max is None:
        return UNSTATED
    age = _candidate_age(ctx)
    if age is None:
        return OUTSIDE
    if age_min is not None and age < age_min:
        return OUTSIDE
    if age_max is not None and age > age_max:
        return OUTSIDE
    return WITHIN


def classify_distance(ctx: MatchContext) -> str:
    max_km = ctx.prefs.preferred_distance_km
    if max_km is None:
        return UNSTATED
    distance = ctx.candidate.distance_km
    if distance is None:
        return UNKNOWN
    return WITHIN if distance <= max_km else OUTSIDE


def gender_gate(ctx: MatchContext) -> str | None:
    return "gender" if classify_gender(ctx) == OUTSIDE else None


def age_gate(ctx: MatchContext) -> str | None:
    age_min, age_max = ctx.prefs.preferred_age_min, ctx.prefs.preferred_age_max
    if age_min is None and age_max is None:
        return None
    age = _candidate_age(ctx)
    if age is None:
        return "age_missing"
    if age_min is not None and age < age_min:
        return "age_min"
    if age_max is not None and age > age_max:
        return "age_max"
    return None


def distance_gate(ctx: MatchContext) -> str | None:
    # Unknown distance falls through to text/neutral proximity.
    return "distance" if classify_distance(ctx) == OUTSIDE else None


GENDER_GATE = HardGate("gender", gender_gate)
AGE_GATE = HardGate("age", age_gate)
DISTANCE_GATE = HardGate("distance", distance_gate)

PREFERENCE_CLASSIFIERS = [
    PreferenceClassifier("gender", classify_gender),
    PreferenceClassifier("age", classify_age),
    PreferenceClassifier("distance", classify_distance),
]


def default_hard_gates(*, expand_distance: bool = False) -> list[HardGate]:
    if expand_distance:
        return [GENDER_GATE, AGE_GATE]
    return [GENDER_GATE, AGE_GATE, DISTANCE_GATE]


def first_exclusion(ctx: MatchContext, gates: list[HardGate]) -> str | None:
    for gate in gates:
        reason = gate.check(ctx)
        if reason:
            return reason
    return None


def resolve_tier(ctx: MatchContext, compliance: dict[str, str]) -> str:
    if not ctx.prefs.has_any_preference:
        return TIER_B
    if all(v in (WITHIN, UNSTATED) for v in compliance.values()):
        return TIER_A
    return TIER_B
