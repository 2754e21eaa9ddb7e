from __future__ import annotations

import math
from typing import Any, Sequence

RATING_DIMENSIONS = ("attractive", "smart", "funny", "interesting")


def clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return min(hi, max(lo, value))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for av, bv in zip(a, b):
        dot += av * bv
        norm_a += av * av
        norm_b += bv * bv
    if not norm_a or not norm_b:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def normalize_cosine(cosine: float) -> float:
    # [-1, 1] -> [0, 1]; orthogonal lands on 0.5
    return clamp((cosine + 1.0) / 2.0)


def to_centered_vector(vector: Sequence[float] | None) -> list[float] | None:
    if not vector:
        return None
    mean = sum(vector) / len(vector)
    centered = [v - mean for v in vector]
    if all(abs(v) < 1e-6 for v in centered):
        return None
    return centered


def normalize_rating(value: float | None, rating_max: float) -> float | None:
    if value is None or not math.isfinite(value) or rating_max <= 0:
        return None
    return clamp(value / rating_max)


def _dimension_values(agg: Any) -> list[float | None]:
    return [getattr(agg, dim, None) for dim in RATING_DIMENSIONS]


def to_rating_vector(agg: Any, rating_max: float) -> list[float] | None:
    if agg is None:
        return None
    values = _dimension_values(agg)
    if all(v is None for v in values):
        return None
    out: list[float] = []
    for v in values:
        n = normalize_rating(v, rating_max)
        out.append(0.0 if n is None else n)
    return out


def average_ratings(agg: Any) -> float | None:
    if agg is None:
        return None
    values = [v for v in _dimension_values(agg) if isinstance(v, (int, float))]
    if not values:
        return None
    return sum(values) / len(values)
