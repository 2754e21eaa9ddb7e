import logging
from typing import Any

logger = logging.getLogger(__name__)

STAGE_LOAD_VIEWER_CONTEXT = "LOAD_VIEWER_CONTEXT"
STAGE_LOAD_CANDIDATE_BATCH = "LOAD_CANDIDATE_BATCH"
STAGE_FLUSH_TOPK = "FLUSH_TOPK"
STAGE_VERSIONED_SWAP = "VERSIONED_SWAP"


class ProgressReporter:
    """No-op reporter; subclasses override the hooks they care about."""

    def on_stage(self, stage: str, **info: Any) -> None:
        pass

    def on_progress(self, done: int, total: int | None = None, **info: Any) -> None:
        pass

    def on_complete(self, summary: dict[str, Any]) -> None:
        pass


class LoggingProgressReporter(ProgressReporter):
    def on_stage(self, stage: str, **info: Any) -> None:
        logger.debug("[match-scores] stage=%s %s", stage, info)

    def on_progress(self, done: int, total: int | None = None, **info: Any) -> None:
        if total is None:
            logger.info("[match-scores] progress %s %s", done, info)
        else:
            logger.info("[match-scores] progress %s/%s %s", done, total, info)

    def on_complete(self, summary: dict[str, Any]) -> None:
        logger.info("[match-scores] complete %s", summary)


class RecordingProgressReporter(ProgressReporter):
    """Keeps every event in memory; handy for admin endpoints and tests."""

    def __init__(self) -> None:
        self.stages: list[tuple[str, dict[str, Any]]] = []
        self.progress: list[tuple[int, int | None]] = []
        self.summary: dict[str, Any] | None = None

    def on_stage(self, stage: str, **info: Any) -> None:
        self.stages.append((stage, info))

    def on_progress(self, done: int, total: int | None = None, **info: Any) -> None:
        self.progress.append((done, total))

    def on_complete(self, summary: dict[str, Any]) -> None:
        self.summary = summary
