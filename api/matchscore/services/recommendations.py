from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import text

from matchscore.config import MATCH_SCORE_FRESHNESS_HOURS


def default_min_scored_at(now: datetime | None = None, hours: int = MATCH_SCORE_FRESHNESS_HOURS) -> datetime:
    return (now or datetime.now(timezone.utc)) - timedelta(hours=hours)


def load_recent_match_scores(
    db,
    viewer_id: int,
    *,
    limit: int,
    cursor_score: float | None = None,
    cursor_candidate_id: int | None = None,
    min_scored_at: datetime | None = None,
    algorithm_version: str | None = None,
    max_distance_km: float | None = None,
) -> list[dict[str, Any]]:
    """Keyset page ordered by ``score DESC, candidate_id DESC``; fetches ``limit + 1`` rows.

    The extra row tells the caller whether another page exists. A distance
    filter drops rows whose distance is unknown.
    """
    clauses = ["viewer_id = :viewer_id"]
    params: dict[str, Any] = {"viewer_id": viewer_id, "limit": limit + 1}

    if min_scored_at is not None:
        clauses.append("scored_at >= :min_scored_at")
        params["min_scored_at"] = min_scored_at
    if algorithm_version is not None:
        clauses.append("algorithm_version = :algorithm_version")
        params["algorithm_version"] = algorithm_version
    if max_distance_km is not None:
        clauses.append("distance_km IS NOT NULL AND distance_km <= :max_distance_km")
        params["max_distance_km"] = max_distance_km
    if cursor_score is not None and cursor_candidate_id is not None:
        clauses.append("(score < :cursor_score OR (score = :cursor_score AND candidate_id < :cursor_candidate_id))")
        params["cursor_score"] = cursor_score
        params["cursor_candidate_id"] = cursor_candidate_id

    rows = db.execute(
        text(
            f"""
            SELECT candidate_id, score, tier, reasons, distance_km, algorithm_version, scored_at
            FROM match_score
            WHERE {" AND ".join(clauses)}
            ORDER BY score DESC, candidate_id DESC
            LIMIT :limit
            """
        ),
        params,
    ).mappings().all()
    return [dict(r) for r in rows]


def page_match_scores(db, viewer_id: int, *, limit: int, **filters: Any) -> dict[str, Any]:
    rows = load_recent_match_scores(db, viewer_id, limit=limit, **filters)
    has_more = len(rows) > limit
    items = rows[:limit]
    next_cursor = None
    if has_more and items:
        last = items[-1]
        next_cursor = {"score": float(last["score"]), "candidate_id": int(last["candidate_id"])}
    return {"items": items, "next_cursor": next_cursor}


def has_match_scores(db, viewer_id: int) -> bool:
    row = db.execute(
        text(
            """
            SELECT 1 AS present
            FROM match_score
            WHERE viewer_id = :viewer_id
            LIMIT 1
            """
        ),
        {"viewer_id": viewer_id},
    ).mappings().first()
    return row is not None
