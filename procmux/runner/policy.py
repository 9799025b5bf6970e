"""
Restart/kill policy engine.

The engine is a pure state machine fed with every message of a run. It never
touches processes itself: it returns a Decision and the runner acts on it.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from .backoff import BackoffState
from .types import Finished, OutputMessage, RestartPolicy, RunOptions, Started, WorkerError


class EngineState(StrEnum):
    # at least one worker running, no cancellation issued
    ACTIVE = "active"
    # cancellation signalled, waiting for the remaining terminal messages
    CANCELLING = "cancelling"
    # every worker produced its terminal message and no restart is pending
    COMPLETE = "complete"


class SlotState(StrEnum):
    RUNNING = "running"
    RESTART_PENDING = "restart_pending"
    DONE = "done"


class DecisionAction(StrEnum):
    NONE = "none"
    CANCEL_ALL = "cancel_all"
    RESTART = "restart"
    GIVE_UP = "give_up"


@dataclass(slots=True, frozen=True)
class Decision:
    action: DecisionAction
    # worker the decision is about; empty only for NONE
    name: str = ""
    delay_sec: float = 0.0


NO_DECISION = Decision(DecisionAction.NONE)


@dataclass(slots=True)
class _Slot:
    backoff: BackoffState
    state: SlotState = SlotState.RUNNING
    started_at: float | None = None


@dataclass(slots=True)
class PolicyEngine:
    names: Iterable[str]
    options: RunOptions
    clock: Callable[[], float] = time.monotonic

    state: EngineState = field(init=False, default=EngineState.ACTIVE)
    cancel_reason: str | None = field(init=False, default=None)
    _slots: dict[str, _Slot] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._slots = {
            name: _Slot(backoff=BackoffState(self.options.backoff)) for name in self.names
        }
        if not self._slots:
            self.state = EngineState.COMPLETE

    @property
    def policy(self) -> RestartPolicy:
        return self.options.restart_policy

    @property
    def complete(self) -> bool:
        return self.state is EngineState.COMPLETE

    @property
    def live_count(self) -> int:
        return sum(1 for slot in self._slots.values() if slot.state is not SlotState.DONE)

    def slot_state(self, name: str) -> SlotState:
        return self._slots[name].state

    def is_failure(self, message: OutputMessage) -> bool:
        payload = message.payload
        if isinstance(payload, WorkerError):
            return True
        if isinstance(payload, Finished):
            if payload.exit_code is None:
                return self.options.abnormal_exit_is_failure
            return payload.exit_code != 0
        return False

    def observe(self, message: OutputMessage) -> Decision:
        """Update state from one message and return what the runner should do."""
        slot = self._slots.get(message.name)
        if slot is None:
            raise KeyError(f"message from unknown worker {message.name!r}")

        if isinstance(message.payload, Started):
            slot.state = SlotState.RUNNING
            slot.started_at = self.clock()
            return NO_DECISION

        if not message.is_terminal:
            return NO_DECISION

        decision = self._on_terminal(message, slot)
        self._check_complete()
        return decision

    def request_cancel(self, reason: str = "manual") -> bool:
        """Enter CANCELLING. Returns False when already cancelling or complete."""
        if self.state is not EngineState.ACTIVE:
            return False
        self.state = EngineState.CANCELLING
        self.cancel_reason = reason
        return True

    def abandon(self, name: str) -> None:
        """A pending restart was dropped (run cancelled during the backoff delay)."""
        slot = self._slots[name]
        if slot.state is SlotState.RESTART_PENDING:
            slot.state = SlotState.DONE
        self._check_complete()

    # --- internals --------------------------------------------------------------------------

    def _on_terminal(self, message: OutputMessage, slot: _Slot) -> Decision:
        slot.state = SlotState.DONE
        uptime = self.clock() - slot.started_at if slot.started_at is not None else 0.0
        slot.started_at = None

        if self.state is not EngineState.ACTIVE:
            return NO_DECISION

        failed = self.is_failure(message)
        policy = self.policy

        if policy is RestartPolicy.KILL_OTHERS or (
            policy is RestartPolicy.KILL_OTHERS_ON_FAIL and failed
        ):
            self.request_cancel(reason=f"{message.name}_terminated")
            return Decision(DecisionAction.CANCEL_ALL, name=message.name)

        if policy is RestartPolicy.RESTART or (policy is RestartPolicy.RESTART_ON_FAIL and failed):
            delay = slot.backoff.schedule_restart(uptime, now=self.clock())
            if delay is None:
                return Decision(DecisionAction.GIVE_UP, name=message.name)
            slot.state = SlotState.RESTART_PENDING
            return Decision(DecisionAction.RESTART, name=message.name, delay_sec=delay)

        return NO_DECISION

    def _check_complete(self) -> None:
        if self.live_count == 0:
            self.state = EngineState.COMPLETE


__all__ = [
    "Decision",
    "DecisionAction",
    "EngineState",
    "NO_DECISION",
    "PolicyEngine",
    "SlotState",
]
