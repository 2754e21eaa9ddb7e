import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from fastapi.encoders import jsonable_encoder

from ..config import MATCH_SCORE_FRESHNESS_HOURS
from ..database import SessionLocal
from ..deps import require_admin_token
from ..schemas import MatchScorePage, RecomputeRequest, RecomputeResponse
from ..services.job_runs import JobRunLedger
from ..services.match_scores import ViewerNotFound, run_match_score_job
from ..services.recommendations import default_min_scored_at, has_match_scores, page_match_scores
from ..services.score_store import SqlMatchScoreStore

logger = logging.getLogger(__name__)

router = APIRouter()


def _json(data: Any) -> Any:
    return jsonable_encoder(data)


def _run_batch(options: dict[str, Any]) -> None:
    try:
        run_match_score_job(SqlMatchScoreStore(SessionLocal), options=options, ledger=JobRunLedger(SessionLocal))
    except Exception:
        logger.exception("[match-scores] background batch failed")


@router.post("/admin/match-scores/recompute", response_model=RecomputeResponse)
def admin_recompute_match_scores(
    body: RecomputeRequest,
    background_tasks: BackgroundTasks,
    _: None = Depends(require_admin_token),
) -> dict[str, Any]:
    options = body.model_dump(exclude_none=True, exclude={"viewer_id"})

    if body.viewer_id is None:
        background_tasks.add_task(_run_batch, options)
        return {"status": "accepted"}

    try:
        summary = run_match_score_job(
            SqlMatchScoreStore(SessionLocal),
            viewer_id=body.viewer_id,
            options=options,
            ledger=JobRunLedger(SessionLocal),
        )
    except ViewerNotFound:
        raise HTTPException(status_code=404, detail="Viewer not found")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"status": "completed", **summary}


@router.get("/admin/match-scores/{viewer_id}", response_model=MatchScorePage)
def admin_get_match_scores(
    viewer_id: int,
    limit: int = Query(default=20, ge=1, le=200),
    cursor_score: float | None = None,
    cursor_candidate_id: int | None = None,
    algorithm_version: str | None = None,
    max_distance_km: float | None = Query(default=None, ge=0),
    fresh_hours: int = Query(default=MATCH_SCORE_FRESHNESS_HOURS, ge=0),
    _: None = Depends(require_admin_token),
) -> dict[str, Any]:
    if (cursor_score is None) != (cursor_candidate_id is None):
        raise HTTPException(status_code=400, detail="cursor_score and cursor_candidate_id must be sent together")

    min_scored_at = default_min_scored_at(datetime.now(timezone.utc), fresh_hours) if fresh_hours else None
    with SessionLocal() as db:
        page = page_match_scores(
            db,
            viewer_id,
            limit=limit,
            cursor_score=cursor_score,
            cursor_candidate_id=cursor_candidate_id,
            min_scored_at=min_scored_at,
            algorithm_version=algorithm_version,
            max_distance_km=max_distance_km,
        )
        # An empty page can mean stale rows or a viewer that was never scored.
        has_scores = bool(page["items"]) or has_match_scores(db, viewer_id)
    return _json({"viewer_id": viewer_id, "has_scores": has_scores, **page})
