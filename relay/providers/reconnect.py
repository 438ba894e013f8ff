"""Reconnect policy and rapid-failure detection."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ReconnectPolicy:
    """Backoff and storm-detection limits for auto-reconnect."""

    window_seconds: float = 30.0
    max_attempts: int = 3
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 30.0

    def delay_for(self, previous_attempts: int) -> float:
        """Backoff before the next reconnect: ``base x (previous_attempts + 1)``, capped."""

        return min(self.base_delay_seconds * (previous_attempts + 1), self.max_delay_seconds)


class RapidFailureDetector:
    """Counts consecutive disconnects that land within the policy window.

    A disconnect within ``window_seconds`` of the previous one extends the
    streak; a slower one restarts it at 1.
    """

    def __init__(self, policy: ReconnectPolicy) -> None:
        self._policy = policy
        self._attempts = 0
        self._last_disconnect: float | None = None

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def exhausted(self) -> bool:
        return self._attempts >= self._policy.max_attempts

    def record_disconnect(self, now: float) -> int:
        if self._last_disconnect is not None and now - self._last_disconnect < self._policy.window_seconds:
            self._attempts += 1
        else:
            self._attempts = 1
        self._last_disconnect = now
        return self._attempts

    def next_delay(self) -> float:
        return self._policy.delay_for(max(self._attempts - 1, 0))

    def reset(self) -> None:
        self._attempts = 0
        self._last_disconnect = None
