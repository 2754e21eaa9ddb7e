from hypothesis import given, strategies as st

from fakes import NOW
from matchscore.services.contexts import ScoreRow
from matchscore.services.heap import TieredTopK, TopKHeap


def _row(candidate_id, score, tier="A"):
    return ScoreRow(
        viewer_id=1,
        candidate_id=candidate_id,
        score=score,
        components={},
        reasons={},
        scored_at=NOW,
        algorithm_version="v-test",
        tier=tier,
    )


scores = st.lists(st.floats(min_value=0, max_value=1, allow_nan=False), max_size=60)


@given(scores, st.integers(min_value=1, max_value=20))
def test_heap_keeps_exactly_the_sorted_top_k(values, k):
    heap = TopKHeap(k)
    for candidate_id, score in enumerate(values):
        heap.push(_row(candidate_id, score))

    expected = sorted(enumerate(values), key=lambda pair: (-pair[1], pair[0]))[:k]
    assert [(r.candidate_id, r.score) for r in heap.to_list()] == expected
    assert len(heap) == min(k, len(values))


def test_threshold_is_open_until_full():
    heap = TopKHeap(2)
    assert heap.threshold() == float("-inf")
    assert heap.peek() == float("-inf")
    heap.push(_row(1, 0.4))
    assert heap.threshold() == float("-inf")
    assert heap.peek() == 0.4
    heap.push(_row(2, 0.7))
    assert heap.threshold() == 0.4


def test_equal_score_at_root_prefers_lower_candidate_id():
    heap = TopKHeap(1)
    assert heap.push(_row(5, 0.5))
    assert heap.push(_row(3, 0.5)) is True
    assert heap.push(_row(9, 0.5)) is False
    assert [r.candidate_id for r in heap.to_list()] == [3]


def test_tiers_are_retained_independently_and_a_comes_first():
    tiers = TieredTopK(2)
    tiers.push(_row(1, 0.9, "B"))
    tiers.push(_row(2, 0.8, "B"))
    tiers.push(_row(3, 0.95, "B"))
    tiers.push(_row(4, 0.2, "A"))

    assert tiers.thresholds() == {"A": float("-inf"), "B": 0.9}
    assert [r.candidate_id for r in tiers.to_list()] == [4, 3, 1]
    assert len(tiers) == 3
