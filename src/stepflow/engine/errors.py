"""Error taxonomy for the workflow engine.

Definition problems are detected before a run starts and reported as a single
``DefinitionError``. Capability failures carry a ``kind`` so the retry policy
can tell transient from permanent failures. A critical step that ends failed
surfaces to the caller as ``WorkflowAbortedError``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from stepflow.engine.models import StepResult


class StepflowError(Exception):
    """Base class for all engine errors."""


# ── Definition-time ──────────────────────────────────────────────────────────


class DefinitionError(StepflowError):
    """A workflow definition violates an invariant and cannot be run."""

    def __init__(self, errors: str | Iterable[str]):
        if isinstance(errors, str):
            errors = [errors]
        self.errors: list[str] = list(errors)
        if len(self.errors) == 1:
            message = self.errors[0]
        else:
            message = f"{len(self.errors)} definition errors:\n" + "\n".join(
                f"  - {e}" for e in self.errors
            )
        super().__init__(message)


class ConditionSyntaxError(DefinitionError):
    """A condition expression could not be parsed."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid condition {expression!r}: {reason}")


# ── Capability invocation ────────────────────────────────────────────────────


class CapabilityError(StepflowError):
    """Failure reported by (or on behalf of) a capability invocation."""

    kind = "transient"

    def __init__(self, message: str = "", *, capability: str | None = None):
        self.capability = capability
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        return self.kind == "transient"


class TransientCapabilityError(CapabilityError):
    """Failure that may succeed if retried."""

    kind = "transient"


class PermanentCapabilityError(CapabilityError):
    """Failure that retrying cannot fix."""

    kind = "permanent"


class CapabilityTimeoutError(TransientCapabilityError):
    """A single attempt exceeded its timeout."""

    def __init__(self, timeout: float, *, capability: str | None = None):
        self.timeout = timeout
        super().__init__(f"Attempt timed out after {timeout:g}s", capability=capability)


class InvocationCancelledError(StepflowError):
    """The run was halted while a capability call was outstanding."""


# ── Variables and conditions ─────────────────────────────────────────────────


class UnresolvedReferenceError(StepflowError):
    """A ``$variable`` reference names a variable that is not in the store."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unresolved variable reference '${name}'")


class VariableConflictError(StepflowError):
    """Two different writers tried to publish the same variable."""


class ConditionError(StepflowError):
    """Base class for failures while evaluating a condition."""


class UnboundVariableError(ConditionError):
    """A condition referenced a variable that is not yet present."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Condition references unbound variable '${name}'")


class ConditionTypeError(ConditionError, TypeError):
    """An operator was applied to incompatible value kinds."""


# ── Runtime ──────────────────────────────────────────────────────────────────


class IllegalTransitionError(StepflowError, ValueError):
    """A step state machine was asked for a transition it does not allow."""


class WorkflowAbortedError(StepflowError):
    """A critical step failed and the workflow was aborted."""

    def __init__(self, step_id: str, result: StepResult | None = None, message: str = ""):
        self.step_id = step_id
        self.result = result
        self.results: list[StepResult] = []
        self.run_id: str | None = result.run_id if result is not None else None
        super().__init__(message or f"Workflow aborted: critical step '{step_id}' failed")
