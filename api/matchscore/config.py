import json
import os
from typing import Any

ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")

MATCH_SCORE_ALGORITHM_VERSION = os.getenv("MATCH_SCORE_ALGORITHM_VERSION", "v3-traits")
MATCH_SCORE_TOP_K = int(os.getenv("MATCH_SCORE_TOP_K", "200"))
MATCH_SCORE_USER_BATCH_SIZE = int(os.getenv("MATCH_SCORE_USER_BATCH_SIZE", "100"))
MATCH_SCORE_CANDIDATE_BATCH_SIZE = int(os.getenv("MATCH_SCORE_CANDIDATE_BATCH_SIZE", "500"))
MATCH_SCORE_PAUSE_MS = int(os.getenv("MATCH_SCORE_PAUSE_MS", "50"))
MATCH_SCORE_MAX_WORKERS = int(os.getenv("MATCH_SCORE_MAX_WORKERS", "1"))
MATCH_SCORE_FRESHNESS_HOURS = int(os.getenv("MATCH_SCORE_FRESHNESS_HOURS", "24"))
MATCH_SCORE_TIGHT_INTEREST_BOUND = os.getenv("MATCH_SCORE_TIGHT_INTEREST_BOUND", "true").lower() == "true"
MATCH_SCORE_EXPAND_DISTANCE = os.getenv("MATCH_SCORE_EXPAND_DISTANCE", "false").lower() == "true"

DEFAULT_MATCH_SCORE_WEIGHTS: dict[str, float] = {
    "quiz": float(os.getenv("MATCH_SCORE_W_QUIZ", "0.25")),
    "interests": float(os.getenv("MATCH_SCORE_W_INTERESTS", "0.20")),
    "rating_quality": float(os.getenv("MATCH_SCORE_W_RATING_QUALITY", "0.15")),
    "rating_fit": float(os.getenv("MATCH_SCORE_W_RATING_FIT", "0.10")),
    "newness": float(os.getenv("MATCH_SCORE_W_NEWNESS", "0.10")),
    "proximity": float(os.getenv("MATCH_SCORE_W_PROXIMITY", "0.20")),
}

DEFAULT_MATCH_SCORE_CONFIG: dict[str, Any] = {
    "algorithm_version": MATCH_SCORE_ALGORITHM_VERSION,
    "top_k": MATCH_SCORE_TOP_K,
    "user_batch_size": MATCH_SCORE_USER_BATCH_SIZE,
    "candidate_batch_size": MATCH_SCORE_CANDIDATE_BATCH_SIZE,
    "pause_ms": MATCH_SCORE_PAUSE_MS,
    "max_workers": MATCH_SCORE_MAX_WORKERS,
    "rating_max": float(os.getenv("MATCH_SCORE_RATING_MAX", "5")),
    "min_rating_count": int(os.getenv("MATCH_SCORE_MIN_RATING_COUNT", "3")),
    "min_trait_overlap": int(os.getenv("MATCH_SCORE_MIN_TRAIT_OVERLAP", "2")),
    "newness_half_life_days": float(os.getenv("MATCH_SCORE_NEWNESS_HALF_LIFE_DAYS", "30")),
    "default_max_distance_km": float(os.getenv("MATCH_SCORE_DEFAULT_MAX_DISTANCE_KM", "100")),
    "tight_interest_bound": MATCH_SCORE_TIGHT_INTEREST_BOUND,
    "expand_distance": MATCH_SCORE_EXPAND_DISTANCE,
    "weights": dict(DEFAULT_MATCH_SCORE_WEIGHTS),
}

if os.getenv("MATCH_SCORE_CONFIG_JSON"):
    try:
        _override = json.loads(os.getenv("MATCH_SCORE_CONFIG_JSON", "{}"))
    except json.JSONDecodeError:
        _override = {}
    if isinstance(_override, dict):
        _weights = _override.pop("weights", None)
        DEFAULT_MATCH_SCORE_CONFIG.update(_override)
        if isinstance(_weights, dict):
            DEFAULT_MATCH_SCORE_CONFIG["weights"].update(_weights)
