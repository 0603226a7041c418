"""Rolling metric buffers for sparklines."""

from collections import deque


class RingHistory:
    """Fixed-capacity numeric buffer; pushing past capacity drops the oldest value."""

    def __init__(self, capacity: int) -> None:
        self._data: deque[float] = deque(maxlen=max(1, capacity))

    @property
    def capacity(self) -> int:
        return self._data.maxlen or 0

    def push(self, value: float) -> None:
        self._data.append(value)

    def values(self) -> list[float]:
        return list(self._data)

    def last(self) -> float | None:
        return self._data[-1] if self._data else None

    def peak(self) -> float:
        return max(self._data, default=0)

    def __len__(self) -> int:
        return len(self._data)
