"""Page access history used to predict which pages to prefetch."""

from __future__ import annotations

from collections import Counter, deque

HISTORY_SIZE = 10
_MIN_PROBABILITY = 0.2
_MAX_PAGE_INDEX = 0xFFFFFFFF


class TransitionHistory:
    """Remembers the strides between recent page reads and extrapolates them."""

    def __init__(self) -> None:
        self.history: deque[int] = deque([0] * HISTORY_SIZE, maxlen=HISTORY_SIZE)
        self.prev_index = 0

    def predict(self, current_index: int) -> list[int]:
        """Likely next pages after ``current_index``, most frequent stride first."""
        counts = Counter(self.history)
        strides = [
            (stride, count)
            for stride, count in counts.items()
            if count / HISTORY_SIZE >= _MIN_PROBABILITY and stride != 0
        ]
        strides.sort(key=lambda item: -item[1])
        return [
            current_index + stride
            for stride, _ in strides
            if 0 <= current_index + stride <= _MAX_PAGE_INDEX
        ]

    def record(self, current_index: int) -> None:
        """Note a read of ``current_index``."""
        self.history.appendleft(current_index - self.prev_index)
        self.prev_index = current_index

    def multi_predict(self, current_index: int, depth: int) -> set[int]:
        """Follow the most likely stride up to ``depth`` steps ahead."""
        predictions: set[int] = set()
        last = current_index
        for _ in range(depth):
            local = self.predict(last)
            if not local or local[0] in predictions:
                break
            last = local[0]
            predictions.update(local)
        predictions.discard(current_index)
        return predictions