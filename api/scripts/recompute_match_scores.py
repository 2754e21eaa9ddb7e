import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from matchscore.config import DEFAULT_MATCH_SCORE_CONFIG
from matchscore.database import SessionLocal
from matchscore.services.job_runs import JobRunLedger
from matchscore.services.match_scores import MatchScoreConfig, ViewerNotFound, run_match_score_job
from matchscore.services.score_store import SqlMatchScoreStore


def main() -> int:
    parser = argparse.ArgumentParser(description="Recompute precomputed match scores")
    parser.add_argument("--viewer-id", type=int, default=None, help="Recompute a single viewer instead of all users")
    parser.add_argument("--algorithm-version", default=DEFAULT_MATCH_SCORE_CONFIG["algorithm_version"])
    parser.add_argument("--top-k", type=int, default=DEFAULT_MATCH_SCORE_CONFIG["top_k"])
    parser.add_argument("--user-batch-size", type=int, default=DEFAULT_MATCH_SCORE_CONFIG["user_batch_size"])
    parser.add_argument("--candidate-batch-size", type=int, default=DEFAULT_MATCH_SCORE_CONFIG["candidate_batch_size"])
    parser.add_argument("--pause-ms", type=int, default=DEFAULT_MATCH_SCORE_CONFIG["pause_ms"])
    parser.add_argument("--max-workers", type=int, default=DEFAULT_MATCH_SCORE_CONFIG["max_workers"])
    parser.add_argument("--expand-distance", action="store_true", help="Demote distance failures to tier B")
    parser.add_argument("--loose-interest-bound", action="store_true")
    parser.add_argument("--no-ledger", action="store_true", help="Do not record the run in job_run")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")

    config = MatchScoreConfig.from_mapping(
        {
            "algorithm_version": args.algorithm_version,
            "top_k": args.top_k,
            "user_batch_size": args.user_batch_size,
            "candidate_batch_size": args.candidate_batch_size,
            "pause_ms": args.pause_ms,
            "max_workers": args.max_workers,
            "expand_distance": args.expand_distance or DEFAULT_MATCH_SCORE_CONFIG["expand_distance"],
            "tight_interest_bound": not args.loose_interest_bound and DEFAULT_MATCH_SCORE_CONFIG["tight_interest_bound"],
        }
    )

    cancel_event = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: cancel_event.set())
    signal.signal(signal.SIGTERM, lambda *_: cancel_event.set())

    try:
        summary = run_match_score_job(
            SqlMatchScoreStore(SessionLocal),
            viewer_id=args.viewer_id,
            config=config,
            ledger=None if args.no_ledger else JobRunLedger(SessionLocal),
            cancel_event=cancel_event,
        )
    except ViewerNotFound as exc:
        print(json.dumps({"error": str(exc)}))
        return 1

    print(json.dumps(summary, indent=2))
    return 1 if summary["failed_viewers"] else 0


if __name__ == "__main__":
    sys.exit(main())
