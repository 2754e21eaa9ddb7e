"""Postgres-backed storage for the match score job.

Every method opens its own short-lived session from ``session_factory`` so the
store can be shared by worker threads. Source tables (``app_user``, ``profile``,
``user_preference``, ``quiz_result``, ``user_trait``, ``user_interest``,
``profile_rating``, ``user_block``) belong to the profile service; this module
only reads them and owns ``match_score``.
"""
import hashlib
import json
import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Sequence

from sqlalchemy import bindparam, text

from matchscore.services.contexts import InterestRef, QuizSubmission, RatingAggregate, ScoreRow, TraitValue
from matchscore.services.geo import to_number

logger = logging.getLogger(__name__)

_RATING_AVG_COLUMNS = """
    AVG(r.attractive) AS attractive,
    AVG(r.smart) AS smart,
    AVG(r.funny) AS funny,
    AVG(r.interesting) AS interesting,
    COUNT(*) AS rating_count
"""

_SCORE_COLUMNS = """
  viewer_id, candidate_id, algorithm_version, tier, score,
  score_quiz, score_interests, score_rating_quality, score_rating_fit,
  score_newness, score_proximity,
  rating_attractive, rating_smart, rating_funny, rating_interesting,
  distance_km, reasons, scored_at
"""

# One statement for the whole batch so rowcount is the real number of inserted rows.
_INSERT_SCORES_SQL = text(
    f"""
    INSERT INTO match_score ({_SCORE_COLUMNS})
    SELECT {_SCORE_COLUMNS}
    FROM jsonb_to_recordset(CAST(:rows AS jsonb)) AS r(
      viewer_id BIGINT, candidate_id BIGINT, algorithm_version TEXT, tier CHAR(1),
      score DOUBLE PRECISION,
      score_quiz DOUBLE PRECISION, score_interests DOUBLE PRECISION,
      score_rating_quality DOUBLE PRECISION, score_rating_fit DOUBLE PRECISION,
      score_newness DOUBLE PRECISION, score_proximity DOUBLE PRECISION,
      rating_attractive DOUBLE PRECISION, rating_smart DOUBLE PRECISION,
      rating_funny DOUBLE PRECISION, rating_interesting DOUBLE PRECISION,
      distance_km DOUBLE PRECISION, reasons JSONB, scored_at TIMESTAMPTZ
    )
    ON CONFLICT (viewer_id, candidate_id, algorithm_version) DO NOTHING
    """
)


def _score_payload(rows: Sequence[ScoreRow]) -> str:
    records = []
    for row in rows:
        record = row.to_record()
        record["scored_at"] = record["scored_at"].isoformat()
        records.append(record)
    return json.dumps(records)


def viewer_lock_key(viewer_id: int) -> int:
    """Stable signed 64-bit key for ``pg_advisory_lock``."""
    digest = hashlib.sha256(f"match-scores:{viewer_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def _json_value(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return None
    return value


def _rating_aggregate(row: Any) -> RatingAggregate | None:
    count = int(row["rating_count"] or 0)
    if count == 0:
        return None
    return RatingAggregate(
        attractive=to_number(row["attractive"]),
        smart=to_number(row["smart"]),
        funny=to_number(row["funny"]),
        interesting=to_number(row["interesting"]),
        count=count,
    )


def _quiz_submission(row: Any) -> QuizSubmission:
    answers = _json_value(row["answers"])
    score_vec = _json_value(row["score_vec"])
    return QuizSubmission(
        quiz_id=row.get("quiz_id"),
        answers=answers if isinstance(answers, dict) else {},
        score_vector=score_vec if isinstance(score_vec, list) else None,
    )


class SqlMatchScoreStore:
    def __init__(self, session_factory: Callable[[], Any]) -> None:
        self.session_factory = session_factory

    # --- viewer --------------------------------------------------------------

    def load_viewer_profile(self, user_id: int) -> dict[str, Any] | None:
        with self.session_factory() as db:
            row = db.execute(
                text(
                    """
                    SELECT id, user_id, birthdate, gender, lat, lng, location_text
                    FROM profile
                    WHERE user_id = :user_id
                      AND deleted_at IS NULL
                    """
                ),
                {"user_id": user_id},
            ).mappings().first()
        return dict(row) if row else None

    def load_preferences(self, user_id: int) -> dict[str, Any] | None:
        with self.session_factory() as db:
            row = db.execute(
                text(
                    """
                    SELECT preferred_age_min, preferred_age_max, preferred_distance_km, preferred_genders
                    FROM user_preference
                    WHERE user_id = :user_id
                    """
                ),
                {"user_id": user_id},
            ).mappings().first()
        if not row:
            return None
        out = dict(row)
        out["preferred_genders"] = _json_value(out.get("preferred_genders"))
        return out

    def load_latest_quiz(self, user_id: int) -> QuizSubmission | None:
        with self.session_factory() as db:
            row = db.execute(
                text(
                    """
                    SELECT quiz_id, answers, score_vec
                    FROM quiz_result
                    WHERE user_id = :user_id
                    ORDER BY updated_at DESC
                    LIMIT 1
                    """
                ),
                {"user_id": user_id},
            ).mappings().first()
        return _quiz_submission(row) if row else None

    def load_self_ratings(self, profile_id: int) -> RatingAggregate | None:
        """Average of the ratings this profile has given; the viewer's taste vector."""
        with self.session_factory() as db:
            row = db.execute(
                text(
                    f"""
                    SELECT {_RATING_AVG_COLUMNS}
                    FROM profile_rating r
                    WHERE r.rater_profile_id = :profile_id
                    """
                ),
                {"profile_id": profile_id},
            ).mappings().first()
        return _rating_aggregate(row) if row else None

    # --- batched signal loads ------------------------------------------------

    def load_traits(self, user_ids: Sequence[int]) -> dict[int, list[TraitValue]]:
        if not user_ids:
            return {}
        stmt = text(
            """
            SELECT user_id, trait_key, value, n
            FROM user_trait
            WHERE user_id IN :user_ids
            """
        ).bindparams(bindparam("user_ids", expanding=True))
        with self.session_factory() as db:
            rows = db.execute(stmt, {"user_ids": list(user_ids)}).mappings().all()

        out: dict[int, list[TraitValue]] = {}
        for r in rows:
            value = to_number(r["value"])
            if value is None:
                continue
            out.setdefault(int(r["user_id"]), []).append(
                TraitValue(key=str(r["trait_key"]), value=value, sample_count=int(r["n"] or 0))
            )
        return out

    def load_interests(self, user_ids: Sequence[int]) -> dict[int, list[InterestRef]]:
        if not user_ids:
            return {}
        stmt = text(
            """
            SELECT ui.user_id, ui.subject_id, ui.interest_id, s.key AS subject_key, i.key AS interest_key
            FROM user_interest ui
            JOIN interest_subject s ON s.id = ui.subject_id
            JOIN interest i ON i.id = ui.interest_id
            WHERE ui.user_id IN :user_ids
            """
        ).bindparams(bindparam("user_ids", expanding=True))
        with self.session_factory() as db:
            rows = db.execute(stmt, {"user_ids": list(user_ids)}).mappings().all()

        out: dict[int, list[InterestRef]] = {}
        for r in rows:
            out.setdefault(int(r["user_id"]), []).append(
                InterestRef(
                    subject_id=int(r["subject_id"]),
                    interest_id=int(r["interest_id"]),
                    subject_key=r["subject_key"] or "",
                    interest_key=r["interest_key"] or "",
                )
            )
        return out

    def load_quizzes(self, user_ids: Sequence[int], quiz_id: int | None) -> dict[int, QuizSubmission]:
        if not user_ids or quiz_id is None:
            return {}
        stmt = text(
            """
            SELECT DISTINCT ON (user_id) user_id, quiz_id, answers, score_vec
            FROM quiz_result
            WHERE quiz_id = :quiz_id
              AND user_id IN :user_ids
            ORDER BY user_id, updated_at DESC
            """
        ).bindparams(bindparam("user_ids", expanding=True))
        with self.session_factory() as db:
            rows = db.execute(stmt, {"quiz_id": quiz_id, "user_ids": list(user_ids)}).mappings().all()
        return {int(r["user_id"]): _quiz_submission(r) for r in rows}

    def load_received_ratings(self, profile_ids: Sequence[int]) -> dict[int, RatingAggregate]:
        if not profile_ids:
            return {}
        stmt = text(
            f"""
            SELECT r.target_profile_id, {_RATING_AVG_COLUMNS}
            FROM profile_rating r
            WHERE r.target_profile_id IN :profile_ids
            GROUP BY r.target_profile_id
            """
        ).bindparams(bindparam("profile_ids", expanding=True))
        with self.session_factory() as db:
            rows = db.execute(stmt, {"profile_ids": list(profile_ids)}).mappings().all()

        out: dict[int, RatingAggregate] = {}
        for r in rows:
            agg = _rating_aggregate(r)
            if agg is not None:
                out[int(r["target_profile_id"])] = agg
        return out

    # --- pagination ----------------------------------------------------------

    def fetch_candidate_page(self, viewer_id: int, after_id: int | None, limit: int) -> list[dict[str, Any]]:
        with self.session_factory() as db:
            rows = db.execute(
                text(
                    """
                    SELECT p.id, p.user_id, p.birthdate, p.gender, p.lat, p.lng, p.location_text,
                           p.created_at, p.updated_at
                    FROM profile p
                    JOIN app_user u ON u.id = p.user_id
                    WHERE p.deleted_at IS NULL
                      AND p.is_visible = TRUE
                      AND u.deleted_at IS NULL
                      AND p.user_id <> :viewer_id
                      AND p.id > :after_id
                      AND NOT EXISTS (
                        SELECT 1 FROM user_block b
                        WHERE (b.blocker_id = :viewer_id AND b.blocked_id = p.user_id)
                           OR (b.blocker_id = p.user_id AND b.blocked_id = :viewer_id)
                      )
                    ORDER BY p.id ASC
                    LIMIT :limit
                    """
                ),
                {"viewer_id": viewer_id, "after_id": after_id or 0, "limit": limit},
            ).mappings().all()
        return [dict(r) for r in rows]

    def fetch_viewer_page(self, after_id: int | None, limit: int) -> list[int]:
        with self.session_factory() as db:
            rows = db.execute(
                text(
                    """
                    SELECT id
                    FROM app_user
                    WHERE deleted_at IS NULL
                      AND id > :after_id
                    ORDER BY id ASC
                    LIMIT :limit
                    """
                ),
                {"after_id": after_id or 0, "limit": limit},
            ).mappings().all()
        return [int(r["id"]) for r in rows]

    # --- writes --------------------------------------------------------------

    def replace_scores(self, viewer_id: int, algorithm_version: str, rows: Sequence[ScoreRow]) -> int:
        """Swap the viewer's rows of one version for ``rows`` in a single transaction.

        Returns the number of rows actually inserted. A failure rolls back both
        the delete and the insert, leaving the previous rows of that version.
        """
        with self.session_factory() as db:
            removed = db.execute(
                text(
                    """
                    DELETE FROM match_score
                    WHERE viewer_id = :viewer_id
                      AND algorithm_version = :algorithm_version
                    """
                ),
                {"viewer_id": viewer_id, "algorithm_version": algorithm_version},
            )
            inserted = 0
            if rows:
                result = db.execute(_INSERT_SCORES_SQL, {"rows": _score_payload(rows)})
                inserted = int(result.rowcount or 0)
            db.commit()
        logger.debug(
            "[match-scores] viewer=%s version=%s replaced %s rows with %s",
            viewer_id,
            algorithm_version,
            removed.rowcount,
            inserted,
        )
        return inserted

    def delete_scores(self, viewer_id: int, algorithm_version: str) -> int:
        with self.session_factory() as db:
            result = db.execute(
                text(
                    """
                    DELETE FROM match_score
                    WHERE viewer_id = :viewer_id
                      AND algorithm_version = :algorithm_version
                    """
                ),
                {"viewer_id": viewer_id, "algorithm_version": algorithm_version},
            )
            db.commit()
        return int(result.rowcount or 0)

    def list_versions(self, viewer_id: int) -> list[str]:
        with self.session_factory() as db:
            rows = db.execute(
                text(
                    """
                    SELECT algorithm_version, MAX(scored_at) AS last_scored_at
                    FROM match_score
                    WHERE viewer_id = :viewer_id
                    GROUP BY algorithm_version
                    ORDER BY last_scored_at DESC
                    """
                ),
                {"viewer_id": viewer_id},
            ).mappings().all()
        return [str(r["algorithm_version"]) for r in rows]

    @contextmanager
    def viewer_lock(self, viewer_id: int) -> Iterator[None]:
        """Serialise recomputes of one viewer across processes."""
        key = viewer_lock_key(viewer_id)
        with self.session_factory() as db:
            db.execute(text("SELECT pg_advisory_lock(:key)"), {"key": key})
            # Session-level lock survives the commit; don't idle in transaction.
            db.commit()
            try:
                yield
            finally:
                db.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
                db.commit()
