from __future__ import annotations

import random
from collections import deque
from dataclasses import dataclass, field


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    """Delay and limits applied when a worker is restarted."""

    # delay before the first restart in seconds
    base_sec: float = 0.5
    # each further restart multiplies the delay by this
    factor: float = 2.0
    # the delay never grows beyond this
    max_sec: float = 30.0
    # +/- random noise so workers restarted together do not respawn in lockstep
    jitter_sec: float = 0.4
    # a run lasting at least this long counts as healthy and resets the delay
    reset_after_ok_sec: float = 60.0
    # sliding window used to count restarts
    window_sec: float = 300.0
    # restarts allowed inside the window; one more and the worker is given up
    max_restarts_in_window: int = 20


@dataclass(slots=True)
class BackoffState:
    """Restart budget of one worker name across its successive runs."""

    policy: BackoffPolicy
    # restarts since the last healthy run; drives the exponential delay
    attempt: int = 0
    # monotonic timestamps of the restarts still inside the window
    restarts: deque[float] = field(default_factory=deque)
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def schedule_restart(self, uptime_sec: float, now: float) -> float | None:
        """Account for a restart of a run that lasted `uptime_sec`.

        Returns the delay before the next start, or None once the window budget
        is used up and the worker should be given up.
        """
        if uptime_sec >= self.policy.reset_after_ok_sec:
            self.attempt = 0

        cutoff = now - self.policy.window_sec
        while self.restarts and self.restarts[0] < cutoff:
            self.restarts.popleft()
        if len(self.restarts) >= self.policy.max_restarts_in_window:
            return None

        self.restarts.append(now)
        self.attempt += 1
        return self.delay()

    def delay(self) -> float:
        """Delay for the current attempt, capped and jittered, never negative."""
        exponent = max(self.attempt - 1, 0)
        base = min(self.policy.max_sec, self.policy.base_sec * self.policy.factor**exponent)
        jitter = self.rng.uniform(-self.policy.jitter_sec, self.policy.jitter_sec)
        return max(0.0, base + jitter)


__all__ = ["BackoffPolicy", "BackoffState"]
