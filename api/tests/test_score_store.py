import json
from decimal import Decimal

from fakes import NOW
from matchscore.services.contexts import ScoreRow
from matchscore.services.score_store import SqlMatchScoreStore, viewer_lock_key


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def mappings(self):
        return self

    def all(self):
        return self.rows

    def first(self):
        return self.rows[0] if self.rows else None


class FakeDB:
    def __init__(self, responses=None):
        self.calls = []
        self.commits = 0
        self.responses = list(responses or [])

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, stmt, params=None):
        self.calls.append((str(stmt), params))
        return self.responses.pop(0) if self.responses else FakeResult()

    def commit(self):
        self.commits += 1


def _store(*responses):
    db = FakeDB(responses)
    return SqlMatchScoreStore(lambda: db), db


def test_candidate_page_excludes_blocks_in_both_directions():
    store, db = _store(FakeResult([{"id": 21, "user_id": 2}]))
    rows = store.fetch_candidate_page(1, None, 500)

    sql, params = db.calls[0]
    assert rows == [{"id": 21, "user_id": 2}]
    assert "FROM profile p" in sql
    assert "b.blocker_id = :viewer_id AND b.blocked_id = p.user_id" in sql
    assert "b.blocker_id = p.user_id AND b.blocked_id = :viewer_id" in sql
    assert "ORDER BY p.id ASC" in sql
    assert params == {"viewer_id": 1, "after_id": 0, "limit": 500}


def test_load_traits_groups_by_user_and_skips_null_values():
    store, db = _store(
        FakeResult(
            [
                {"user_id": 2, "trait_key": "kindness", "value": Decimal("0.6"), "n": 5},
                {"user_id": 2, "trait_key": "humor", "value": None, "n": 3},
                {"user_id": 3, "trait_key": "kindness", "value": 0.1, "n": None},
            ]
        )
    )
    traits = store.load_traits([2, 3])

    assert [t.key for t in traits[2]] == ["kindness"]
    assert traits[2][0].value == 0.6
    assert traits[3][0].sample_count == 0
    assert db.calls[0][1] == {"user_ids": [2, 3]}


def test_empty_batches_skip_the_database():
    store, db = _store()
    assert store.load_traits([]) == {}
    assert store.load_interests([]) == {}
    assert store.load_quizzes([1], None) == {}
    assert store.load_received_ratings([]) == {}
    assert db.calls == []


def test_received_ratings_become_aggregates():
    store, _ = _store(
        FakeResult(
            [
                {
                    "target_profile_id": 20,
                    "attractive": Decimal("4.5"),
                    "smart": None,
                    "funny": Decimal("3"),
                    "interesting": Decimal("4"),
                    "rating_count": 7,
                }
            ]
        )
    )
    agg = store.load_received_ratings([20])[20]
    assert agg.attractive == 4.5
    assert agg.smart is None
    assert agg.count == 7


def test_preferences_decode_json_gender_lists():
    store, _ = _store(
        FakeResult(
            [
                {
                    "preferred_age_min": 25,
                    "preferred_age_max": None,
                    "preferred_distance_km": 30,
                    "preferred_genders": '["female"]',
                }
            ]
        )
    )
    prefs = store.load_preferences(1)
    assert prefs["preferred_genders"] == ["female"]


def _score_row(candidate_id, score):
    return ScoreRow(
        viewer_id=1,
        candidate_id=candidate_id,
        score=score,
        components={"quiz": 0.5, "interests": 0.1},
        reasons={"tier": "A"},
        scored_at=NOW,
        algorithm_version="v1",
        tier="A",
    )


def test_replace_scores_swaps_version_rows_in_one_commit():
    store, db = _store(FakeResult(rowcount=4), FakeResult(rowcount=2))
    assert store.replace_scores(1, "v1", [_score_row(2, 0.42), _score_row(3, 0.3)]) == 2

    delete_sql, delete_params = db.calls[0]
    assert "DELETE FROM match_score" in delete_sql
    assert delete_params == {"viewer_id": 1, "algorithm_version": "v1"}

    insert_sql, insert_params = db.calls[1]
    assert "INSERT INTO match_score" in insert_sql
    assert "jsonb_to_recordset" in insert_sql
    assert "ON CONFLICT (viewer_id, candidate_id, algorithm_version) DO NOTHING" in insert_sql
    records = json.loads(insert_params["rows"])
    assert [r["candidate_id"] for r in records] == [2, 3]
    assert records[0]["reasons"] == {"tier": "A"}
    assert records[0]["score_quiz"] == 0.5
    assert records[0]["score_proximity"] == 0.0
    assert records[0]["scored_at"] == NOW.isoformat()
    assert db.commits == 1


def test_replace_scores_reports_rows_actually_inserted():
    store, _ = _store(FakeResult(rowcount=0), FakeResult(rowcount=1))
    assert store.replace_scores(1, "v1", [_score_row(2, 0.4), _score_row(2, 0.4)]) == 1


def test_replace_scores_with_no_rows_only_clears_the_version():
    store, db = _store(FakeResult(rowcount=3))
    assert store.replace_scores(1, "v1", []) == 0
    assert len(db.calls) == 1
    assert db.commits == 1


def test_delete_scores_scope_by_viewer_and_version():
    store, db = _store(FakeResult(rowcount=3))
    assert store.delete_scores(1, "v1") == 3

    delete_sql, delete_params = db.calls[0]
    assert "DELETE FROM match_score" in delete_sql
    assert delete_params == {"viewer_id": 1, "algorithm_version": "v1"}


def test_viewer_lock_uses_stable_advisory_key():
    store, db = _store()
    with store.viewer_lock(7):
        assert "pg_advisory_lock" in db.calls[0][0]
        # committed right away so the scan does not hold an open transaction
        assert db.commits == 1
    assert "pg_advisory_unlock" in db.calls[1][0]
    assert db.calls[0][1]["key"] == db.calls[1][1]["key"] == viewer_lock_key(7)
    assert viewer_lock_key(7) != viewer_lock_key(8)
    assert -(2**63) <= viewer_lock_key(7) < 2**63
