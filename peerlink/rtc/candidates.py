"""FIFO buffer for ICE candidates that cannot be applied yet."""

from __future__ import annotations

from collections import deque
from typing import Deque, Generic, Iterator, List, TypeVar


T = TypeVar("T")


class CandidateBuffer(Generic[T]):
    """Unbounded FIFO, drained at most once per negotiation attempt.

    A remote candidate must not reach the connection before the remote
    description is set, so it waits here until the session drains the
    buffer. `reset()` re-arms the buffer for a new attempt.
    """

    def __init__(self) -> None:
        self._items: Deque[T] = deque()
        self._drained = False

    @property
    def drained(self) -> bool:
        return self._drained

    def append(self, item: T) -> None:
        self._items.append(item)

    def drain(self) -> List[T]:
        if self._drained:
            raise RuntimeError("candidate buffer already drained for this attempt")
        self._drained = True
        items = list(self._items)
        self._items.clear()
        return items

    def clear(self) -> None:
        self._items.clear()

    def reset(self) -> None:
        self._items.clear()
        self._drained = False

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))
