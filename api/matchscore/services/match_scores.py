"""Batch orchestrator for precomputed match scores.

For one viewer: load the viewer context, walk candidate pages in ascending
profile-id order, gate/prune/score each candidate, keep the best ``top_k`` per
tier, then swap the persisted rows to the current algorithm version. The swap
writes first and deletes older versions only after the write committed, so a
failed or empty run never leaves the viewer without scores.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from matchscore.config import DEFAULT_MATCH_SCORE_CONFIG
from matchscore.services.calibration import score_distribution
from matchscore.services.contexts import (
    CandidateContext,
    MatchContext,
    PreferencesContext,
    ScoreRow,
    ViewerContext,
)
from matchscore.services.engine import ScoringPipeline
from matchscore.services.gates import PREFERENCE_CLASSIFIERS, default_hard_gates, parse_preferred_genders
from matchscore.services.geo import distance_between, to_number
from matchscore.services.heap import TieredTopK
from matchscore.services.job_runs import TRIGGER_CRON, TRIGGER_EVENT, NullJobLedger
from matchscore.services.operators import default_operators
from matchscore.services.progress import (
    STAGE_FLUSH_TOPK,
    STAGE_LOAD_CANDIDATE_BATCH,
    STAGE_LOAD_VIEWER_CONTEXT,
    STAGE_VERSIONED_SWAP,
    LoggingProgressReporter,
    ProgressReporter,
)

logger = logging.getLogger(__name__)

JOB_NAME = "match-scores"


class MatchScoreError(Exception):
    pass


class ViewerNotFound(MatchScoreError):
    def __init__(self, viewer_id: int) -> None:
        super().__init__(f"viewer {viewer_id} has no active profile")
        self.viewer_id = viewer_id


class ScoreJobCancelled(MatchScoreError):
    pass


@dataclass(frozen=True)
class MatchScoreConfig:
    algorithm_version: str = "v3-traits"
    top_k: int = 200
    user_batch_size: int = 100
    candidate_batch_size: int = 500
    pause_ms: int = 50
    max_workers: int = 1
    rating_max: float = 5.0
    min_rating_count: int = 3
    min_trait_overlap: int = 2
    newness_half_life_days: float = 30.0
    default_max_distance_km: float = 100.0
    tight_interest_bound: bool = True
    expand_distance: bool = False
    weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_MATCH_SCORE_CONFIG["weights"]))

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any] | None = None) -> MatchScoreConfig:
        return cls().merged({**DEFAULT_MATCH_SCORE_CONFIG, **dict(values or {})})

    def merged(self, overrides: Mapping[str, Any] | None) -> MatchScoreConfig:
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        changes = {k: v for k, v in overrides.items() if k in known and v is not None}
        if isinstance(changes.get("weights"), Mapping):
            changes["weights"] = {**self.weights, **{k: float(v) for k, v in changes["weights"].items()}}
        if "top_k" in changes and int(changes["top_k"]) < 1:
            raise ValueError("top_k must be >= 1")
        if "candidate_batch_size" in changes and int(changes["candidate_batch_size"]) < 1:
            raise ValueError("candidate_batch_size must be >= 1")
        return replace(self, **changes)

    def preferences(self, prefs_row: Mapping[str, Any] | None) -> PreferencesContext:
        prefs_row = prefs_row or {}
        age_min = to_number(prefs_row.get("preferred_age_min"))
        age_max = to_number(prefs_row.get("preferred_age_max"))
        return PreferencesContext(
            preferred_genders=parse_preferred_genders(prefs_row.get("preferred_genders")),
            preferred_age_min=int(age_min) if age_min is not None else None,
            preferred_age_max=int(age_max) if age_max is not None else None,
            preferred_distance_km=to_number(prefs_row.get("preferred_distance_km")),
            default_max_distance_km=self.default_max_distance_km,
            rating_max=self.rating_max,
            min_rating_count=self.min_rating_count,
            min_trait_overlap=self.min_trait_overlap,
            newness_half_life_days=self.newness_half_life_days,
        )

    def pipeline(self) -> ScoringPipeline:
        return ScoringPipeline(
            hard_gates=default_hard_gates(expand_distance=self.expand_distance),
            classifiers=PREFERENCE_CLASSIFIERS,
            operators=default_operators(tight_interest_bound=self.tight_interest_bound),
            weights=self.weights,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _ViewerRunStats:
    candidates: int = 0
    scored: int = 0
    pruned: int = 0
    pages: int = 0
    exclusions: Counter = field(default_factory=Counter)
    # operator key -> candidates scored on its neutral baseline (insufficient data)
    baselined: Counter = field(default_factory=Counter)


class MatchScoreJob:
    def __init__(
        self,
        store,
        *,
        config: MatchScoreConfig | None = None,
        reporter: ProgressReporter | None = None,
        ledger=None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.config = config or MatchScoreConfig.from_mapping()
        self.reporter = reporter or LoggingProgressReporter()
        self.ledger = ledger or NullJobLedger()
        self.clock = clock
        self.sleep = sleep

    # --- single viewer -------------------------------------------------------

    def recompute_for_viewer(
        self,
        viewer_id: int,
        options: Mapping[str, Any] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> int:
        cfg = self.config.merged(options)
        with self.store.viewer_lock(viewer_id):
            return self._recompute(viewer_id, cfg, cancel_event)

    def _load_viewer(self, viewer_id: int, cfg: MatchScoreConfig) -> tuple[ViewerContext, PreferencesContext]:
        profile = self.store.load_viewer_profile(viewer_id)
        if not profile:
            raise ViewerNotFound(viewer_id)

        profile_id = int(profile["id"])
        traits = self.store.load_traits([viewer_id]).get(viewer_id, [])
        interests = self.store.load_interests([viewer_id]).get(viewer_id, [])
        viewer = ViewerContext(
            user_id=viewer_id,
            profile_id=profile_id,
            lat=to_number(profile.get("lat")),
            lng=to_number(profile.get("lng")),
            location_text=profile.get("location_text"),
            traits=tuple(traits),
            interests=tuple(interests),
            quiz=self.store.load_latest_quiz(viewer_id),
            ratings=self.store.load_self_ratings(profile_id),
        )
        return viewer, cfg.preferences(self.store.load_preferences(viewer_id))

    def _candidate_contexts(self, viewer: ViewerContext, page: list[dict[str, Any]]) -> list[CandidateContext]:
        user_ids = [int(c["user_id"]) for c in page]
        profile_ids = [int(c["id"]) for c in page]

        quizzes = self.store.load_quizzes(user_ids, viewer.quiz.quiz_id) if viewer.quiz is not None else {}
        traits = self.store.load_traits(user_ids) if viewer.traits else {}
        interests = self.store.load_interests(user_ids)
        ratings = self.store.load_received_ratings(profile_ids)

        out: list[CandidateContext] = []
        for c in page:
            user_id, profile_id = int(c["user_id"]), int(c["id"])
            lat, lng = to_number(c.get("lat")), to_number(c.get("lng"))
            out.append(
                CandidateContext(
                    user_id=user_id,
                    profile_id=profile_id,
                    birthdate=c.get("birthdate"),
                    gender=c.get("gender"),
                    lat=lat,
                    lng=lng,
                    location_text=c.get("location_text"),
                    created_at=c.get("created_at"),
                    updated_at=c.get("updated_at"),
                    distance_km=distance_between(viewer.lat, viewer.lng, lat, lng),
                    traits=tuple(traits.get(user_id, ())),
                    interests=tuple(interests.get(user_id, ())),
                    quiz=quizzes.get(user_id),
                    ratings=ratings.get(profile_id),
                )
            )
        return out

    def _recompute(self, viewer_id: int, cfg: MatchScoreConfig, cancel_event: threading.Event | None) -> int:
        started = time.monotonic()
        self.reporter.on_stage(STAGE_LOAD_VIEWER_CONTEXT, viewer_id=viewer_id)
        viewer, prefs = self._load_viewer(viewer_id, cfg)

        pipeline = cfg.pipeline()
        retained = TieredTopK(cfg.top_k)
        stats = _ViewerRunStats()
        now = self.clock()

        after_id: int | None = None
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise ScoreJobCancelled(f"recompute for viewer {viewer_id} cancelled after {stats.pages} pages")

            self.reporter.on_stage(STAGE_LOAD_CANDIDATE_BATCH, viewer_id=viewer_id, after_id=after_id)
            page = self.store.fetch_candidate_page(viewer_id, after_id, cfg.candidate_batch_size)
            if not page:
                break
            after_id = int(page[-1]["id"])
            stats.pages += 1

            for candidate in self._candidate_contexts(viewer, page):
                stats.candidates += 1
                ctx = MatchContext(viewer=viewer, candidate=candidate, prefs=prefs, now=now)
                result = pipeline.score(ctx, thresholds=retained.thresholds(), exclusions=stats.exclusions)
                if result is None:
                    continue
                if result.pruned:
                    stats.pruned += 1
                    continue
                stats.scored += 1
                stats.baselined.update(k for k, v in result.operator_values.items() if v is None)
                ratings = candidate.ratings
                retained.push(
                    ScoreRow(
                        viewer_id=viewer_id,
                        candidate_id=candidate.user_id,
                        score=result.score,
                        components=result.components,
                        reasons=result.reasons,
                        scored_at=now,
                        algorithm_version=cfg.algorithm_version,
                        tier=result.tier,
                        distance_km=candidate.distance_km,
                        rating_attractive=ratings.attractive if ratings else None,
                        rating_smart=ratings.smart if ratings else None,
                        rating_funny=ratings.funny if ratings else None,
                        rating_interesting=ratings.interesting if ratings else None,
                    )
                )

            self.reporter.on_progress(stats.candidates, viewer_id=viewer_id, retained=len(retained))
            if len(page) < cfg.candidate_batch_size:
                break
            if cfg.pause_ms > 0:
                self.sleep(cfg.pause_ms / 1000.0)

        self.reporter.on_stage(
            STAGE_FLUSH_TOPK,
            viewer_id=viewer_id,
            retained=len(retained),
            baselined=dict(stats.baselined),
        )
        rows = retained.to_list()

        self.reporter.on_stage(STAGE_VERSIONED_SWAP, viewer_id=viewer_id, rows=len(rows))
        written = self._versioned_swap(viewer_id, cfg.algorithm_version, rows)

        logger.info(
            "[match-scores] viewer=%s candidates=%s scored=%s pruned=%s excluded=%s baselined=%s "
            "written=%s in %.0fms",
            viewer_id,
            stats.candidates,
            stats.scored,
            stats.pruned,
            dict(stats.exclusions),
            dict(stats.baselined),
            written,
            (time.monotonic() - started) * 1000,
        )
        if rows:
            logger.info("[match-scores] viewer=%s distribution=%s", viewer_id, score_distribution(rows))
        return written

    def _versioned_swap(self, viewer_id: int, version: str, rows: list[ScoreRow]) -> int:
        if not rows:
            logger.info("[match-scores] viewer=%s no scores produced, keeping existing rows", viewer_id)
            return 0

        previous = [v for v in self.store.list_versions(viewer_id) if v != version]
        # Replaces this version's rows in one transaction; older versions go only after it commits.
        written = self.store.replace_scores(viewer_id, version, rows)
        for old in previous:
            deleted = self.store.delete_scores(viewer_id, old)
            logger.info("[match-scores] viewer=%s deleted %s rows of version %s", viewer_id, deleted, old)
        return written

    # --- all viewers ---------------------------------------------------------

    def _recompute_safely(
        self,
        viewer_id: int,
        options: Mapping[str, Any] | None,
        cancel_event: threading.Event | None,
    ) -> tuple[int, bool]:
        try:
            return self.recompute_for_viewer(viewer_id, options, cancel_event), True
        except ScoreJobCancelled:
            raise
        except ViewerNotFound:
            logger.info("[match-scores] viewer=%s skipped: no active profile", viewer_id)
            return 0, True
        except Exception:
            logger.exception("[match-scores] viewer=%s recompute failed", viewer_id)
            return 0, False

    def run_batch(
        self,
        options: Mapping[str, Any] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> dict[str, Any]:
        cfg = self.config.merged(options)
        processed = 0
        written = 0
        failed: list[int] = []

        def record(viewer_id: int, outcome: tuple[int, bool]) -> None:
            nonlocal processed, written
            count, ok = outcome
            processed += 1
            written += count
            if not ok:
                failed.append(viewer_id)

        executor = ThreadPoolExecutor(max_workers=cfg.max_workers) if cfg.max_workers > 1 else None
        try:
            after_id: int | None = None
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise ScoreJobCancelled(f"batch cancelled after {processed} viewers")
                viewer_ids = self.store.fetch_viewer_page(after_id, cfg.user_batch_size)
                if not viewer_ids:
                    break
                after_id = viewer_ids[-1]

                if executor is None:
                    for viewer_id in viewer_ids:
                        record(viewer_id, self._recompute_safely(viewer_id, options, cancel_event))
                else:
                    futures = [
                        (viewer_id, executor.submit(self._recompute_safely, viewer_id, options, cancel_event))
                        for viewer_id in viewer_ids
                    ]
                    for viewer_id, future in futures:
                        record(viewer_id, future.result())

                self.reporter.on_progress(processed, written=written, failed=len(failed))
                if len(viewer_ids) < cfg.user_batch_size:
                    break
        finally:
            if executor is not None:
                executor.shutdown(wait=True, cancel_futures=True)

        summary = {"processed_viewers": processed, "written": written, "failed_viewers": failed}
        self.reporter.on_complete(summary)
        return summary


def run_match_score_job(
    store,
    *,
    viewer_id: int | None = None,
    config: MatchScoreConfig | None = None,
    options: Mapping[str, Any] | None = None,
    reporter: ProgressReporter | None = None,
    ledger=None,
    clock: Callable[[], datetime] = _utcnow,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    """Run one viewer (``EVENT``) or every viewer (``CRON``) inside the job-run ledger."""
    job = MatchScoreJob(store, config=config, reporter=reporter, ledger=ledger, clock=clock)
    cfg = job.config.merged(options)

    if viewer_id is not None:
        written = job.ledger.run(
            lambda: job.recompute_for_viewer(viewer_id, options, cancel_event),
            job_name=JOB_NAME,
            trigger=TRIGGER_EVENT,
            scope=f"user:{viewer_id}",
            algorithm_version=cfg.algorithm_version,
        )
        summary = {"processed_viewers": 1, "written": written, "failed_viewers": []}
        job.reporter.on_complete(summary)
        return summary

    return job.ledger.run(
        lambda: job.run_batch(options, cancel_event),
        job_name=JOB_NAME,
        trigger=TRIGGER_CRON,
        scope="batch",
        algorithm_version=cfg.algorithm_version,
        metadata={"top_k": cfg.top_k, "user_batch_size": cfg.user_batch_size},
    )
