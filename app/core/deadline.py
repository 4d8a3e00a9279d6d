"""Per-request time budget."""

import time
from typing import Optional


class Deadline:
    """
    Monotonic-clock deadline checked between bounded units of work.

    A Deadline built with budget_ms=None never expires.
    """

    def __init__(self, budget_ms: Optional[float] = None):
        self.budget_ms = budget_ms
        self.started = time.monotonic()
        self._expires_at = None if budget_ms is None else self.started + budget_ms / 1000.0

    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started) * 1000.0
