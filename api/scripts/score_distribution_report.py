import argparse
import json
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from matchscore.config import MATCH_SCORE_ALGORITHM_VERSION
from matchscore.database import SessionLocal
from matchscore.services.calibration import compute_score_distribution_report


def main() -> None:
    parser = argparse.ArgumentParser(description="Summarise persisted match score distributions")
    parser.add_argument("--algorithm-version", default=MATCH_SCORE_ALGORITHM_VERSION)
    parser.add_argument("--viewer-id", type=int, default=None)
    args = parser.parse_args()

    with SessionLocal() as db:
        report = compute_score_distribution_report(
            db,
            algorithm_version=args.algorithm_version,
            viewer_id=args.viewer_id,
        )

    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
