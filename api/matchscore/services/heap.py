from __future__ import annotations

import heapq
import itertools

from matchscore.services.contexts import TIER_A, TIER_B, ScoreRow


def _rank_key(row: ScoreRow) -> tuple[float, int]:
    # Higher score wins; on equal scores the lower candidate id wins.
    return (row.score, -row.candidate_id)


class TopKHeap:
    """Min-heap keeping the ``capacity`` best rows; the root is the weakest kept row."""

    def __init__(self, capacity: int = 200) -> None:
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self.capacity = capacity
        self._heap: list[tuple[tuple[float, int], int, ScoreRow]] = []
        self._seq = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def is_full(self) -> bool:
        return len(self._heap) >= self.capacity

    def peek(self) -> float:
        if not self._heap:
            return float("-inf")
        return self._heap[0][2].score

    def threshold(self) -> float:
        """Score a candidate must beat to enter; -inf while there is free room."""
        if not self.is_full() or not self._heap:
            return float("-inf")
        return self._heap[0][2].score

    def push(self, row: ScoreRow) -> bool:
        if self.capacity == 0:
            return False
        entry = (_rank_key(row), next(self._seq), row)
        if len(self._heap) < self.capacity:
            heapq.heappush(self._heap, entry)
            return True
        # Strictly greater key: a higher score, or an equal score with a lower
        # candidate id, so the kept set always matches the to_list() order.
        if entry[0] > self._heap[0][0]:
            heapq.heapreplace(self._heap, entry)
            return True
        return False

    def to_list(self) -> list[ScoreRow]:
        return [row for _, _, row in sorted(self._heap, key=lambda e: e[0], reverse=True)]


class TieredTopK:
    """One independent heap per tier so tier A never crowds out tier B."""

    def __init__(self, capacity: int = 200, tiers: tuple[str, ...] = (TIER_A, TIER_B)) -> None:
        self.tiers = tiers
        self.heaps = {tier: TopKHeap(capacity) for tier in tiers}

    def __len__(self) -> int:
        return sum(len(h) for h in self.heaps.values())

    def push(self, row: ScoreRow) -> bool:
        return self.heaps[row.tier].push(row)

    def thresholds(self) -> dict[str, float]:
        return {tier: heap.threshold() for tier, heap in self.heaps.items()}

    def to_list(self) -> list[ScoreRow]:
        # Tier order is a product policy: A rows first, then B.
        out: list[ScoreRow] = []
        for tier in self.tiers:
            out.extend(self.heaps[tier].to_list())
        return out
