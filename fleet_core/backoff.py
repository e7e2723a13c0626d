from __future__ import annotations


class ReconnectBackoff:
    """Exponential reconnect delay: starts at ``initial``, doubles per failure, capped at ``maximum``."""

    def __init__(self, initial: float = 1.0, maximum: float = 30.0) -> None:
        if initial <= 0 or maximum < initial:
            raise ValueError("backoff bounds must satisfy 0 < initial <= maximum")
        self.initial = initial
        self.maximum = maximum
        self._next = initial

    @property
    def current(self) -> float:
        return self._next

    def next_delay(self) -> float:
        delay = self._next
        self._next = min(self._next * 2, self.maximum)
        return delay

    def reset(self) -> None:
        self._next = self.initial
