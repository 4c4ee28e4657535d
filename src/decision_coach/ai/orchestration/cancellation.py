"""Cancellation token passed to every suspend point of a turn."""

from __future__ import annotations

import time
from typing import Callable

from .errors import TurnCancelled

__all__ = ["CancellationToken"]


class CancellationToken:
    """Deadline plus explicit cancel flag.

    The token never interrupts running code on its own. Phases call
    :meth:`raise_if_cancelled` before starting work and bound their waits with
    :meth:`bounded_timeout`.
    """

    def __init__(
        self,
        *,
        deadline: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._deadline = deadline
        self._reason: str | None = None

    @classmethod
    def with_budget(cls, seconds: float | None, *, clock: Callable[[], float] = time.monotonic) -> "CancellationToken":
        if seconds is None:
            return cls(clock=clock)
        return cls(deadline=clock() + max(0.0, seconds), clock=clock)

    @property
    def deadline(self) -> float | None:
        return self._deadline

    @property
    def cancelled(self) -> bool:
        if self._reason is not None:
            return True
        return self._deadline is not None and self._clock() >= self._deadline

    @property
    def reason(self) -> str | None:
        if self._reason is not None:
            return self._reason
        if self._deadline is not None and self._clock() >= self._deadline:
            return "deadline exceeded"
        return None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if self._reason is None:
            self._reason = reason

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def bounded_timeout(self, timeout: float) -> float:
        """Return ``timeout`` clipped to the time left before the deadline."""

        remaining = self.remaining()
        if remaining is None:
            return timeout
        return min(timeout, remaining)

    def raise_if_cancelled(self) -> None:
        reason = self.reason
        if reason is not None:
            raise TurnCancelled(reason)
