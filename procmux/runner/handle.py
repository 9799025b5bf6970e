from __future__ import annotations

import asyncio
from collections.abc import Callable


class ControlledHandle:
    """Caller-facing handle of one run: wait for it with join(), stop it with cancel()."""

    def __init__(self, task: asyncio.Task[None], canceller: Callable[[str], None]) -> None:
        self._task = task
        self._canceller = canceller

    @property
    def done(self) -> bool:
        return self._task.done()

    async def join(self) -> None:
        """Wait until every worker has finished. Re-raises a fatal supervisor error."""
        # shield: a cancelled join() must not tear down the run itself
        await asyncio.shield(self._task)

    def cancel(self, reason: str = "manual") -> None:
        """Ask every worker to stop (idempotent, no-op once the run is over)."""
        if self._task.done():
            return
        self._canceller(reason)


__all__ = ["ControlledHandle"]
