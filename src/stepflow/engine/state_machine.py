"""Step state machine — the lifecycle of one step within a run.

::

    pending ──► evaluated ──► running ──► succeeded
       │            │            │
       │            │            ▼
       │            └──────► failed ──► retrying ──► running
       │                        │           │
       └──────► skipped ◄───────┼───────────┘
                                ▼
                    succeeded (rescued by on_failure)

``failed`` is terminal once ``finish()`` has been called; until then it is
the resting state between an unsuccessful attempt and the retry decision.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from stepflow.engine.errors import (
    CapabilityError,
    CapabilityTimeoutError,
    IllegalTransitionError,
)
from stepflow.engine.models import ErrorKind, SkipReason, StepResult, StepState


ALLOWED_TRANSITIONS: dict[StepState, set[StepState]] = {
    StepState.PENDING: {StepState.EVALUATED, StepState.SKIPPED, StepState.FAILED},
    StepState.EVALUATED: {StepState.RUNNING, StepState.SKIPPED, StepState.FAILED},
    StepState.RUNNING: {StepState.SUCCEEDED, StepState.FAILED},
    StepState.FAILED: {StepState.RETRYING, StepState.SUCCEEDED},
    StepState.RETRYING: {StepState.RUNNING, StepState.SKIPPED},
    StepState.SUCCEEDED: set(),
    StepState.SKIPPED: set(),
}


def error_kind_for(exc: BaseException) -> ErrorKind:
    """Map a capability failure onto the error kind recorded in the trace."""
    if isinstance(exc, CapabilityTimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, CapabilityError) and not exc.is_transient:
        return ErrorKind.PERMANENT
    return ErrorKind.TRANSIENT


class StepStateMachine:
    """Tracks one step's state, attempts and outcome.

    Every state change goes through ``transition`` which enforces
    ``ALLOWED_TRANSITIONS``. ``to_result`` produces the immutable
    ``StepResult`` once the step is terminal.
    """

    def __init__(self, step_id: str, *, run_id: str, critical: bool = False):
        self.step_id = step_id
        self.run_id = run_id
        self.critical = critical
        self.state = StepState.PENDING
        self.attempts = 0
        self.history: list[tuple[StepState, datetime]] = [(StepState.PENDING, _now())]

        self.started_at: datetime | None = None
        self.completed_at: datetime | None = None
        self.output: Any = None
        self.produced: str | None = None
        self.error_kind: ErrorKind | None = None
        self.error_message: str | None = None
        self.skip_reason: SkipReason | None = None
        self.recovered_by: str | None = None
        self._finished = False

    # ── Core transition ──────────────────────────────────────────────────────

    def transition(self, to: StepState) -> None:
        if self._finished:
            raise IllegalTransitionError(
                f"Step '{self.step_id}' is terminal ({self.state.value}); cannot move to {to.value}"
            )
        allowed = ALLOWED_TRANSITIONS.get(self.state, set())
        if to not in allowed:
            raise IllegalTransitionError(
                f"Illegal transition for step '{self.step_id}': {self.state.value} -> {to.value}"
            )
        self.state = to
        self.history.append((to, _now()))
        if to in (StepState.SUCCEEDED, StepState.SKIPPED):
            self._finish()

    @property
    def is_terminal(self) -> bool:
        return self._finished

    # ── Named transitions ────────────────────────────────────────────────────

    def evaluate(self, proceed: bool) -> None:
        """Record the condition outcome. ``proceed=False`` skips the step."""
        self.transition(StepState.EVALUATED)
        if not proceed:
            self.skip(SkipReason.CONDITION_FALSE)

    def start_attempt(self) -> int:
        """Enter ``running`` for a new attempt. Returns the attempt number."""
        self.transition(StepState.RUNNING)
        self.attempts += 1
        if self.started_at is None:
            self.started_at = _now()
        self.error_kind = None
        self.error_message = None
        return self.attempts

    def succeed(
        self,
        output: Any,
        *,
        produced: str | None = None,
        recovered_by: str | None = None,
    ) -> None:
        self.output = output
        self.produced = produced
        self.recovered_by = recovered_by
        self.error_kind = None
        self.error_message = None
        self.transition(StepState.SUCCEEDED)

    def fail(self, kind: ErrorKind, message: str) -> None:
        """Record a failed attempt (or a failure before any attempt)."""
        self.transition(StepState.FAILED)
        self.error_kind = kind
        self.error_message = message

    def retry(self) -> None:
        self.transition(StepState.RETRYING)

    def skip(self, reason: SkipReason) -> None:
        self.skip_reason = reason
        self.transition(StepState.SKIPPED)

    def finish(self) -> None:
        """Make the current ``failed`` state terminal."""
        if self.state != StepState.FAILED:
            raise IllegalTransitionError(
                f"Step '{self.step_id}' can only be finalized from failed, not {self.state.value}"
            )
        self._finish()

    def _finish(self) -> None:
        self._finished = True
        self.completed_at = _now()

    # ── Result ───────────────────────────────────────────────────────────────

    def to_result(self) -> StepResult:
        if not self._finished:
            raise IllegalTransitionError(
                f"Step '{self.step_id}' is not terminal (state {self.state.value})"
            )
        return StepResult(
            run_id=self.run_id,
            step_id=self.step_id,
            state=self.state,
            attempts=self.attempts,
            critical=self.critical,
            started_at=self.started_at,
            completed_at=self.completed_at,
            produced=self.produced,
            output=self.output,
            error_kind=self.error_kind,
            error_message=self.error_message,
            skip_reason=self.skip_reason,
            recovered_by=self.recovered_by,
        )


def _now() -> datetime:
    return datetime.now(timezone.utc)
