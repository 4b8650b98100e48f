"""A double-ended FIFO queue with indexed access from the front."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator
from typing import Generic, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """FIFO queue that grows as needed and allows access by offset."""

    def __init__(self, items: Iterable[T] = ()) -> None:
        self._items: deque[T] = deque(items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)

    def empty(self) -> bool:
        """Whether the buffer holds no elements."""
        return not self._items

    def push_back(self, item: T) -> None:
        """Append an element at the back."""
        self._items.append(item)

    def pop_front(self) -> T:
        """Remove and return the front element."""
        if not self._items:
            raise IndexError("pop from an empty queue")
        return self._items.popleft()

    def offset(self, index: int) -> T:
        """Return the element at the given distance from the front."""
        if not 0 <= index < len(self._items):
            raise IndexError(f"offset {index} out of range")
        return self._items[index]

    def front(self) -> T:
        """Return the front element."""
        if not self._items:
            raise IndexError("front from an empty queue")
        return self._items[0]

    def back(self) -> T:
        """Return the back element."""
        if not self._items:
            raise IndexError("back from an empty queue")
        return self._items[-1]

    def clear(self) -> None:
        """Remove all elements."""
        self._items.clear()