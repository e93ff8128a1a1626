"""Bounded, insertion-ordered set of message UIDs already reported."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator

DEFAULT_CAPACITY = 2000


class SeenIdWindow:
    """FIFO-bounded set of UIDs.

    The set and the queue always hold the same ids, each exactly once, and
    the queue is in discovery order. Once ``capacity`` is exceeded the oldest
    id leaves both structures and may be reported again if it reappears.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._ids: set[int] = set()
        self._order: deque[int] = deque()

    @property
    def capacity(self) -> int:
        return self._capacity

    def add(self, uid: int) -> bool:
        """Record ``uid``. Returns False if it was already present."""
        if uid in self._ids:
            return False
        self._ids.add(uid)
        self._order.append(uid)
        while len(self._order) > self._capacity:
            self._ids.discard(self._order.popleft())
        return True

    def unseen(self, uids: Iterable[int]) -> list[int]:
        return [uid for uid in uids if uid not in self._ids]

    def __contains__(self, uid: object) -> bool:
        return uid in self._ids

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._order))
