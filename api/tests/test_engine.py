from collections import Counter
from datetime import timedelta

import pytest
from hypothesis import given, settings, strategies as st

from fakes import NOW, make_ctx, ratings
from matchscore.services.contexts import COMPONENT_KEYS, CandidateContext, InterestRef, PreferencesContext, ViewerContext
from matchscore.services.engine import ScoringPipeline, score_candidate, upper_bound
from matchscore.services.gates import PREFERENCE_CLASSIFIERS, default_hard_gates
from matchscore.services.operators import OperatorResult, ScoringOperator, default_operators

WEIGHTS = {
    "quiz": 0.25,
    "interests": 0.20,
    "rating_quality": 0.15,
    "rating_fit": 0.10,
    "newness": 0.10,
    "proximity": 0.20,
}


def _pipeline(**kwargs):
    return ScoringPipeline(
        hard_gates=default_hard_gates(expand_distance=kwargs.get("expand_distance", False)),
        classifiers=PREFERENCE_CLASSIFIERS,
        operators=default_operators(tight_interest_bound=kwargs.get("tight", True)),
        weights=WEIGHTS,
    )


def test_candidate_without_signals_gets_baseline_score_not_dropped():
    result = _pipeline().score(make_ctx())
    assert result is not None
    assert result.components["quiz"] == 0.5
    assert result.components["interests"] == 0.1
    assert result.components["rating_quality"] == 0.5
    assert result.components["rating_fit"] == 0.5
    assert result.components["newness"] == 0.0
    assert result.components["proximity"] == 0.0
    assert result.score == pytest.approx(0.27)
    assert result.upper_bound == pytest.approx(0.52)
    assert set(result.components) == set(COMPONENT_KEYS)


def test_distance_preference_scenario():
    prefs = PreferencesContext(preferred_distance_km=50)
    exclusions = Counter()

    near = _pipeline().score(make_ctx(prefs=prefs, distance_km=0.0, updated_at=NOW), exclusions=exclusions)
    assert near.components["proximity"] == 1.0
    assert near.tier == "A"
    assert near.reasons["distanceKm"] == 0.0

    far = _pipeline().score(make_ctx(prefs=prefs, distance_km=100.0), exclusions=exclusions)
    assert far is None
    assert exclusions == Counter({"distance": 1})


def test_expanded_distance_keeps_far_candidates_in_tier_b():
    prefs = PreferencesContext(preferred_distance_km=50)
    result = _pipeline(expand_distance=True).score(make_ctx(prefs=prefs, distance_km=100.0))
    assert result.tier == "B"
    assert result.components["proximity"] == 0.0
    assert result.compliance["distance"] == "outside"


def test_prune_skips_expensive_operators():
    def explode(ctx):
        raise AssertionError("expensive operator must not run")

    operators = [
        ScoringOperator("traits", "quiz", explode),
        ScoringOperator("newness", "newness", lambda ctx: OperatorResult(0.0), cheap=lambda ctx: 0.0, baseline=0.0),
    ]
    ctx = make_ctx()
    result = score_candidate(ctx, [], PREFERENCE_CLASSIFIERS, operators, WEIGHTS, thresholds={"B": 0.9})
    assert result.pruned is True
    assert result.score == pytest.approx(0.25)
    assert result.components == {}


def test_reasons_shape():
    viewer = ViewerContext(user_id=1, interests=(InterestRef(1, 1, "music", "jazz"),))
    candidate = CandidateContext(
        user_id=2,
        profile_id=20,
        interests=(InterestRef(1, 1, "music", "jazz"),),
        distance_km=12.345,
        ratings=ratings(4, 4, 3, 5, count=6),
    )
    result = _pipeline().score(make_ctx(viewer=viewer, candidate=candidate))
    assert result.reasons["interests"]["matches"] == ["music:jazz"]
    assert result.reasons["scores"]["interestOverlap"] == 1.0
    assert result.reasons["scores"]["quizSimLegacy"] is None
    assert result.reasons["distanceKm"] == 12.3
    assert result.reasons["ratings"]["count"] == 6
    assert result.reasons["tier"] == "B"


interest_sets = st.frozensets(st.tuples(st.integers(0, 3), st.integers(0, 5)), max_size=8)
maybe_ratings = st.one_of(
    st.none(),
    st.builds(
        ratings,
        st.floats(0, 5),
        st.floats(0, 5),
        st.floats(0, 5),
        st.floats(0, 5),
        count=st.integers(0, 10),
    ),
)


@settings(max_examples=200)
@given(
    viewer_interests=interest_sets,
    candidate_interests=interest_sets,
    distance=st.one_of(st.none(), st.floats(0, 300)),
    age_days=st.floats(-5, 400),
    viewer_ratings=maybe_ratings,
    candidate_ratings=maybe_ratings,
    tight=st.booleans(),
)
def test_score_is_bounded_and_never_exceeds_upper_bound(
    viewer_interests, candidate_interests, distance, age_days, viewer_ratings, candidate_ratings, tight
):
    viewer = ViewerContext(
        user_id=1,
        interests=tuple(InterestRef(s, i) for s, i in viewer_interests),
        ratings=viewer_ratings,
    )
    candidate = CandidateContext(
        user_id=2,
        profile_id=20,
        interests=tuple(InterestRef(s, i) for s, i in candidate_interests),
        distance_km=distance,
        updated_at=NOW - timedelta(days=age_days),
        ratings=candidate_ratings,
    )
    ctx = make_ctx(viewer=viewer, candidate=candidate)
    pipeline = _pipeline(tight=tight)
    result = pipeline.score(ctx)

    assert 0.0 <= result.score <= sum(WEIGHTS.values()) + 1e-9
    assert all(0.0 <= v <= 1.0 for v in result.components.values())
    assert result.score <= upper_bound(ctx, pipeline.operators, WEIGHTS) + 1e-9
