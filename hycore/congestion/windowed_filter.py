"""Windowed min/max filter tracking the best three estimates over a window.

The best, second best and third best estimates are kept, with the
measurement time of the n'th best never older than the (n-1)'th. When
the best expires it is replaced by the second best, which in turn is
replaced by the third best.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Generic, TypeVar

V = TypeVar("V")


def max_filter(a: Any, b: Any) -> int:
    """Comparator ranking larger values as better."""
    if a > b:
        return 1
    if a < b:
        return -1
    return 0


def min_filter(a: Any, b: Any) -> int:
    """Comparator ranking smaller values as better."""
    if a < b:
        return 1
    if a > b:
        return -1
    return 0


class WindowedFilter(Generic[V]):
    """Tracks the best sample of a stream over a sliding time window."""

    def __init__(
        self,
        window_length: int | float,
        comparator: Callable[[V, V], int],
        zero: V = 0,  # type: ignore[assignment]
    ) -> None:
        self._window_length = window_length
        self._comparator = comparator
        self._zero = zero
        self._estimates: list[tuple[V, int | float]] = [(zero, 0)] * 3

    def set_window_length(self, window_length: int | float) -> None:
        """Change the window length without touching current samples."""
        self._window_length = window_length

    def best(self) -> V:
        return self._estimates[0][0]

    def second_best(self) -> V:
        return self._estimates[1][0]

    def third_best(self) -> V:
        return self._estimates[2][0]

    def _fraction(self, divisor: int) -> int | float:
        if isinstance(self._window_length, int):
            return self._window_length // divisor
        return self._window_length / divisor

    def update(self, new_sample: V, new_time: int | float) -> None:
        """Record a sample, expiring and promoting estimates as needed."""
        est = self._estimates
        compare = self._comparator
        window = self._window_length
        if (
            compare(est[0][0], self._zero) == 0
            or compare(new_sample, est[0][0]) >= 0
            or new_time - est[2][1] > window
        ):
            self.reset(new_sample, new_time)
            return

        fresh = (new_sample, new_time)
        if compare(new_sample, est[1][0]) >= 0:
            est[1] = fresh
            est[2] = fresh
        elif compare(new_sample, est[2][0]) >= 0:
            est[2] = fresh

        if new_time - est[0][1] > window:
            # The best estimate is a whole window old: promote the others.
            est[0] = est[1]
            est[1] = est[2]
            est[2] = fresh
            if new_time - est[0][1] > window:
                est[0] = est[1]
                est[1] = est[2]
            return

        if compare(est[1][0], est[0][0]) == 0 and new_time - est[1][1] > self._fraction(4):
            # A quarter window without a better sample: take the second best
            # from the second quarter of the window.
            est[1] = fresh
            est[2] = fresh
            return

        if compare(est[2][0], est[1][0]) == 0 and new_time - est[2][1] > self._fraction(2):
            # Half a window without a better sample: take the third best
            # from the second half of the window.
            est[2] = fresh

    def reset(self, new_sample: V, new_time: int | float) -> None:
        """Set all three estimates to the given sample."""
        self._estimates = [(new_sample, new_time)] * 3

    def clear(self) -> None:
        """Forget all estimates."""
        self._estimates = [(self._zero, 0)] * 3