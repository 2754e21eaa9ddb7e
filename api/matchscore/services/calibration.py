from typing import Any, Iterable, Mapping

from sqlalchemy import text

from matchscore.services.contexts import COMPONENT_KEYS, ScoreRow


def _percentile(values: list[float], p: float) -> float | None:
    if not values:
        return None
    vals = sorted(values)
    if len(vals) == 1:
        return round(vals[0], 6)
    pos = (len(vals) - 1) * p
    lo = int(pos)
    hi = min(lo + 1, len(vals) - 1)
    frac = pos - lo
    v = vals[lo] * (1 - frac) + vals[hi] * frac
    return round(v, 6)


def percentile_summary(values: list[float]) -> dict[str, float | None]:
    return {
        "p10": _percentile(values, 0.10),
        "p25": _percentile(values, 0.25),
        "p50": _percentile(values, 0.50),
        "p75": _percentile(values, 0.75),
        "p90": _percentile(values, 0.90),
    }


def _series_stats(values: list[float | None]) -> dict[str, Any]:
    present = [float(v) for v in values if v is not None]
    mean = round(sum(present) / len(present), 6) if present else None
    return {
        "count": len(present),
        "mean": mean,
        "p50": _percentile(present, 0.50),
        "p90": _percentile(present, 0.90),
        "zero_count": sum(1 for v in present if v == 0.0),
        "null_count": len(values) - len(present),
    }


def _row_value(row: ScoreRow | Mapping[str, Any], key: str) -> float | None:
    if isinstance(row, ScoreRow):
        if key == "score":
            return row.score
        return row.components.get(key[len("score_"):])
    value = row.get(key)
    return None if value is None else float(value)


def score_distribution(rows: Iterable[ScoreRow | Mapping[str, Any]]) -> dict[str, Any]:
    """Post-hoc distribution of totals and per-component values.

    Accepts in-memory ``ScoreRow`` objects (orchestrator) or persisted row
    mappings (report script). Components are read from ``score_<key>`` columns.
    """
    rows = list(rows)
    summary = _series_stats([_row_value(r, "score") for r in rows])
    summary["components"] = {
        key: _series_stats([_row_value(r, f"score_{key}") for r in rows])
        for key in COMPONENT_KEYS
    }
    return summary


def compute_score_distribution_report(
    db,
    *,
    algorithm_version: str,
    viewer_id: int | None = None,
) -> dict[str, Any]:
    columns = ", ".join(f"score_{key}" for key in COMPONENT_KEYS)
    where = "algorithm_version = :algorithm_version"
    params: dict[str, Any] = {"algorithm_version": algorithm_version}
    if viewer_id is not None:
        where += " AND viewer_id = :viewer_id"
        params["viewer_id"] = viewer_id

    rows = db.execute(
        text(
            f"""
            SELECT score, tier, {columns}
            FROM match_score
            WHERE {where}
            """
        ),
        params,
    ).mappings().all()

    by_tier: dict[str, list[float]] = {}
    for r in rows:
        if r["score"] is not None:
            by_tier.setdefault(r["tier"] or "B", []).append(float(r["score"]))

    viewers = db.execute(
        text(
            f"""
            SELECT COUNT(DISTINCT viewer_id) AS viewers
            FROM match_score
            WHERE {where}
            """
        ),
        params,
    ).mappings().first()

    return {
        "algorithm_version": algorithm_version,
        "viewer_count": int((viewers or {}).get("viewers") or 0),
        "distribution": score_distribution(rows),
        "tier_distribution": {
            tier: {"count": len(vals), "percentiles": percentile_summary(vals)}
            for tier, vals in sorted(by_tier.items())
        },
    }
