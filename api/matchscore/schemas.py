from datetime import datetime
from typing import Any
from pydantic import BaseModel, Field


class RecomputeRequest(BaseModel):
    viewer_id: int | None = None
    algorithm_version: str | None = None
    top_k: int | None = Field(default=None, ge=1)


class RecomputeResponse(BaseModel):
    status: str
    processed_viewers: int = 0
    written: int = 0
    failed_viewers: list[int] = Field(default_factory=list)


class MatchScoreItem(BaseModel):
    candidate_id: int
    score: float
    tier: str | None = None
    reasons: dict[str, Any] = Field(default_factory=dict)
    distance_km: float | None = None
    algorithm_version: str
    scored_at: datetime


class MatchScoreCursor(BaseModel):
    score: float
    candidate_id: int


class MatchScorePage(BaseModel):
    viewer_id: int
    has_scores: bool = False
    items: list[MatchScoreItem] = Field(default_factory=list)
    next_cursor: MatchScoreCursor | None = None
