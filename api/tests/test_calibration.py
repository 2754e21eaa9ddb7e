import matchscore.services.calibration as c
from fakes import NOW
from matchscore.services.contexts import ScoreRow


class FakeDB:
    def __init__(self):
        self.calls = []

    def execute(self, stmt, params):
        self.calls.append((str(stmt), params))
        sql = str(stmt)

        class R:
            def mappings(self_inner):
                class M:
                    def all(self_in):
                        return [
                            {"score": 0.9, "tier": "A", "score_quiz": 0.5, "score_interests": 0.0},
                            {"score": 0.7, "tier": "B", "score_quiz": None, "score_interests": 0.4},
                            {"score": 0.5, "tier": "B", "score_quiz": 1.0, "score_interests": 0.2},
                        ]

                    def first(self_in):
                        return {"viewers": 2} if "COUNT(DISTINCT viewer_id)" in sql else None

                return M()

        return R()


def test_percentile_summary_deterministic():
    out = c.percentile_summary([0.1, 0.2, 0.3, 0.4, 0.5])
    assert out["p50"] == 0.3
    assert out["p90"] == 0.46


def test_score_distribution_counts_zeros_and_nulls_per_component():
    rows = [
        ScoreRow(1, 2, 0.6, {"quiz": 0.0, "interests": 0.1}, {}, NOW, "v1"),
        ScoreRow(1, 3, 0.4, {"quiz": 0.5, "interests": 0.3}, {}, NOW, "v1"),
    ]
    out = c.score_distribution(rows)

    assert out["count"] == 2
    assert out["mean"] == 0.5
    assert out["p50"] == 0.5
    assert out["components"]["quiz"]["zero_count"] == 1
    assert out["components"]["proximity"]["null_count"] == 2
    assert out["components"]["interests"]["mean"] == 0.2


def test_score_distribution_of_nothing():
    out = c.score_distribution([])
    assert out["count"] == 0
    assert out["mean"] is None
    assert out["p90"] is None


def test_compute_score_distribution_report_groups_by_tier():
    db = FakeDB()
    report = c.compute_score_distribution_report(db, algorithm_version="v1", viewer_id=4)

    assert report["viewer_count"] == 2
    assert report["distribution"]["count"] == 3
    assert report["distribution"]["components"]["quiz"]["null_count"] == 1
    assert report["distribution"]["components"]["interests"]["zero_count"] == 1
    assert report["tier_distribution"]["B"]["count"] == 2
    assert report["tier_distribution"]["A"]["percentiles"]["p50"] == 0.9
    assert db.calls[0][1] == {"algorithm_version": "v1", "viewer_id": 4}
    assert "viewer_id = :viewer_id" in db.calls[0][0]
