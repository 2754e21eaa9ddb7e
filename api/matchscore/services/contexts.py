from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any

COMPONENT_KEYS = ("quiz", "interests", "rating_quality", "rating_fit", "newness", "proximity")
TIER_A = "A"
TIER_B = "B"


@dataclass(frozen=True)
class TraitValue:
    key: str
    value: float
    sample_count: int


@dataclass(frozen=True)
class InterestRef:
    subject_id: int
    interest_id: int
    subject_key: str = ""
    interest_key: str = ""

    @property
    def pair(self) -> tuple[int, int]:
        return (self.subject_id, self.interest_id)

    @property
    def label(self) -> str:
        if self.subject_key or self.interest_key:
            return f"{self.subject_key}:{self.interest_key}"
        return f"{self.subject_id}:{self.interest_id}"


@dataclass(frozen=True)
class QuizSubmission:
    quiz_id: int | None
    answers: dict[str, Any] = field(default_factory=dict)
    score_vector: list[Any] | None = None


@dataclass(frozen=True)
class RatingAggregate:
    attractive: float | None
    smart: float | None
    funny: float | None
    interesting: float | None
    count: int = 0


@dataclass(frozen=True)
class ViewerContext:
    user_id: int
    profile_id: int | None = None
    lat: float | None = None
    lng: float | None = None
    location_text: str | None = None
    traits: tuple[TraitValue, ...] = ()
    interests: tuple[InterestRef, ...] = ()
    quiz: QuizSubmission | None = None
    ratings: RatingAggregate | None = None


@dataclass(frozen=True)
class CandidateContext:
    user_id: int
    profile_id: int
    birthdate: date | None = None
    gender: str | None = None
    lat: float | None = None
    lng: float | None = None
    location_text: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    distance_km: float | None = None
    traits: tuple[TraitValue, ...] = ()
    interests: tuple[InterestRef, ...] = ()
    quiz: QuizSubmission | None = None
    ratings: RatingAggregate | None = None


@dataclass(frozen=True)
class PreferencesContext:
    preferred_genders: frozenset[str] | None = None
    preferred_age_min: int | None = None
    preferred_age_max: int | None = None
    preferred_distance_km: float | None = None
    default_max_distance_km: float = 100.0
    rating_max: float = 5.0
    min_rating_count: int = 3
    min_trait_overlap: int = 2
    newness_half_life_days: float = 30.0

    @property
    def has_any_preference(self) -> bool:
        return bool(self.preferred_genders) or any(
            v is not None for v in (self.preferred_age_min, self.preferred_age_max, self.preferred_distance_km)
        )


@dataclass(frozen=True)
class MatchContext:
    viewer: ViewerContext
    candidate: CandidateContext
    prefs: PreferencesContext
    now: datetime


@dataclass
class ScoreRow:
    viewer_id: int
    candidate_id: int
    score: float
    components: dict[str, float]
    reasons: dict[str, Any]
    scored_at: datetime
    algorithm_version: str
    tier: str = TIER_A
    distance_km: float | None = None
    rating_attractive: float | None = None
    rating_smart: float | None = None
    rating_funny: float | None = None
    rating_interesting: float | None = None

    def to_record(self) -> dict[str, Any]:
        out = asdict(self)
        components = out.pop("components")
        for key in COMPONENT_KEYS:
            out[f"score_{key}"] = float(components.get(key, 0.0))
        return out
