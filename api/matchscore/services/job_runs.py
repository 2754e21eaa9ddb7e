import json
import logging
import time
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

from sqlalchemy import text

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRIGGER_CRON = "CRON"
TRIGGER_EVENT = "EVENT"
TRIGGER_MANUAL = "MANUAL"

STATUS_RUNNING = "RUNNING"
STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"


def _error_message(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).strip() or repr(exc)


def start_job_run(
    db,
    *,
    job_name: str,
    trigger: str = TRIGGER_MANUAL,
    scope: str | None = None,
    algorithm_version: str | None = None,
    attempt: int = 1,
    metadata: dict[str, Any] | None = None,
    started_at: datetime | None = None,
) -> str:
    run_id = str(uuid.uuid4())
    db.execute(
        text(
            """
            INSERT INTO job_run (id, job_name, status, trigger, scope, algorithm_version, attempt, started_at, metadata)
            VALUES (
              CAST(:id AS uuid),
              :job_name,
              :status,
              :trigger,
              NULLIF(:scope, ''),
              NULLIF(:algorithm_version, ''),
              :attempt,
              :started_at,
              CAST(:metadata AS jsonb)
            )
            """
        ),
        {
            "id": run_id,
            "job_name": job_name,
            "status": STATUS_RUNNING,
            "trigger": trigger,
            "scope": scope or "",
            "algorithm_version": algorithm_version or "",
            "attempt": attempt,
            "started_at": started_at or datetime.now(timezone.utc),
            "metadata": json.dumps(metadata) if metadata is not None else None,
        },
    )
    return run_id


def finish_job_run(
    db,
    run_id: str,
    *,
    status: str,
    duration_ms: int,
    error: str | None = None,
    finished_at: datetime | None = None,
) -> None:
    db.execute(
        text(
            """
            UPDATE job_run
            SET status = :status,
                finished_at = :finished_at,
                duration_ms = :duration_ms,
                error = :error
            WHERE id = CAST(:id AS uuid)
            """
        ),
        {
            "id": run_id,
            "status": status,
            "finished_at": finished_at or datetime.now(timezone.utc),
            "duration_ms": max(0, int(duration_ms)),
            "error": error,
        },
    )


class JobRunLedger:
    """Records each job run in ``job_run``; every write uses its own short session."""

    def __init__(self, session_factory: Callable[[], Any]) -> None:
        self.session_factory = session_factory

    def run(
        self,
        handler: Callable[[], T],
        *,
        job_name: str,
        trigger: str = TRIGGER_MANUAL,
        scope: str | None = None,
        algorithm_version: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> T:
        started = time.monotonic()
        with self.session_factory() as db:
            run_id = start_job_run(
                db,
                job_name=job_name,
                trigger=trigger,
                scope=scope,
                algorithm_version=algorithm_version,
                metadata=metadata,
            )
            db.commit()
        logger.info("[job-run] %s started id=%s trigger=%s scope=%s", job_name, run_id, trigger, scope)

        try:
            result = handler()
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            with self.session_factory() as db:
                finish_job_run(db, run_id, status=STATUS_FAILED, duration_ms=duration_ms, error=_error_message(exc))
                db.commit()
            logger.exception("[job-run] %s failed id=%s after %sms", job_name, run_id, duration_ms)
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        with self.session_factory() as db:
            finish_job_run(db, run_id, status=STATUS_SUCCESS, duration_ms=duration_ms)
            db.commit()
        logger.info("[job-run] %s succeeded id=%s in %sms", job_name, run_id, duration_ms)
        return result


class NullJobLedger:
    """Ledger that only logs; used when no database session factory is wired in."""

    def run(self, handler: Callable[[], T], *, job_name: str, **_: Any) -> T:
        logger.info("[job-run] %s started (unrecorded)", job_name)
        return handler()
