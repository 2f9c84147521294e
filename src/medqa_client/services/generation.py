"""Generation counter used to discard stale asynchronous results."""

from __future__ import annotations


class Generation:
    """Monotonic counter tagging in-flight work.

    Work captures `current` when it is launched and applies its result only
    if `is_current(tag)` still holds when it completes.
    """

    def __init__(self) -> None:
        self._value = 0

    @property
    def current(self) -> int:
        return self._value

    def advance(self) -> int:
        """Invalidate every outstanding tag and return the new generation."""
        self._value += 1
        return self._value

    def is_current(self, tag: int) -> bool:
        return tag == self._value
