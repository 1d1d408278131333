"""Workflow engine Pydantic models — definitions and runtime records.

Key exports:
    Definition models: WorkflowDefinition, StepDefinition, GroupDefinition,
        RetryConfig, Node
    Runtime records: StepResult, WorkflowResult, NodeOutcome
    Enums: StepState, GroupType, BackoffStrategy, ErrorKind, SkipReason,
        NodeStatus, RunStatus
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Iterator, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    field_validator,
    model_validator,
)

from stepflow.durations import parse_duration_seconds


# ── Enums ────────────────────────────────────────────────────────────────────


class StepState(str, Enum):
    """Step lifecycle states."""

    PENDING = "pending"
    EVALUATED = "evaluated"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYING = "retrying"
    SKIPPED = "skipped"


class GroupType(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class BackoffStrategy(str, Enum):
    """How the delay between retry attempts grows."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class ErrorKind(str, Enum):
    """Why a step ended failed."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    TIMEOUT = "timeout"
    CONDITION = "condition"
    UNRESOLVED_REFERENCE = "unresolved_reference"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


class SkipReason(str, Enum):
    CONDITION_FALSE = "condition_false"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


class NodeStatus(str, Enum):
    """Aggregate status of a step or group once it has finished."""

    SUCCEEDED = "succeeded"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """Workflow run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIAL_FAILURE = "partial_failure"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


# ── Validation patterns ──────────────────────────────────────────────────────

NODE_ID_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")
VARIABLE_NAME_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


# ── Definition Models ────────────────────────────────────────────────────────


class RetryConfig(BaseModel):
    """Retry policy for a step. The default is a single attempt."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(1, ge=1)
    delay: float = 0.0  # seconds before the second attempt
    backoff: BackoffStrategy = BackoffStrategy.FIXED
    max_delay: float | None = None

    @field_validator("delay", "max_delay", mode="before")
    @classmethod
    def _parse_durations(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_duration_seconds(v)
        return v

    @model_validator(mode="after")
    def validate_delays(self) -> RetryConfig:
        if self.delay < 0:
            msg = f"Retry delay must not be negative, got {self.delay}"
            raise ValueError(msg)
        if self.max_delay is not None and self.max_delay < 0:
            msg = f"Retry max_delay must not be negative, got {self.max_delay}"
            raise ValueError(msg)
        return self


class StepDefinition(BaseModel):
    """A single unit of work bound to one capability invocation."""

    model_config = ConfigDict(frozen=True)

    type: Literal["step"] = "step"
    id: str
    capability: str
    inputs: dict[str, Any] = {}
    produces: str | None = None
    condition: str | None = None
    retry: RetryConfig = RetryConfig()
    timeout: float | None = None  # per attempt, seconds
    on_failure: Node | None = None
    critical: bool = False
    description: str = ""

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_duration_seconds(v)
        return v

    @model_validator(mode="after")
    def validate_step(self) -> StepDefinition:
        if not NODE_ID_PATTERN.match(self.id):
            msg = f"Step ID '{self.id}' must match pattern {NODE_ID_PATTERN.pattern}"
            raise ValueError(msg)
        if not self.capability:
            msg = f"Step '{self.id}': 'capability' must not be empty"
            raise ValueError(msg)
        if self.produces is not None and not VARIABLE_NAME_PATTERN.match(self.produces):
            msg = (
                f"Step '{self.id}': produces '{self.produces}' must match pattern "
                f"{VARIABLE_NAME_PATTERN.pattern}"
            )
            raise ValueError(msg)
        if self.timeout is not None and self.timeout <= 0:
            msg = f"Step '{self.id}': timeout must be positive"
            raise ValueError(msg)
        return self


class GroupDefinition(BaseModel):
    """A Sequential or Parallel composition of steps and groups."""

    model_config = ConfigDict(frozen=True)

    type: GroupType
    id: str
    children: list[Node] = Field(min_length=1)
    description: str = ""

    @model_validator(mode="after")
    def validate_group(self) -> GroupDefinition:
        if not NODE_ID_PATTERN.match(self.id):
            msg = f"Group ID '{self.id}' must match pattern {NODE_ID_PATTERN.pattern}"
            raise ValueError(msg)
        return self

    @property
    def is_parallel(self) -> bool:
        return self.type == GroupType.PARALLEL


def _node_tag(value: Any) -> str | None:
    """Pick the union member for a raw node: steps unless a group type is given."""
    if isinstance(value, dict):
        kind = value.get("type", "step")
    else:
        kind = getattr(value, "type", None)
    if isinstance(kind, GroupType):
        return "group"
    if kind == "step":
        return "step"
    if kind in ("sequential", "parallel"):
        return "group"
    return None


Node = Annotated[
    Union[
        Annotated[StepDefinition, Tag("step")],
        Annotated[GroupDefinition, Tag("group")],
    ],
    Discriminator(_node_tag),
]

StepDefinition.model_rebuild()
GroupDefinition.model_rebuild()


class WorkflowDefinition(BaseModel):
    """Complete, immutable workflow definition."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    root: Node

    def iter_nodes(self) -> Iterator[StepDefinition | GroupDefinition]:
        """Yield every node depth-first, fallback nodes included."""
        yield from _walk(self.root)

    def iter_steps(self) -> Iterator[StepDefinition]:
        for node in self.iter_nodes():
            if isinstance(node, StepDefinition):
                yield node

    def get_node(self, node_id: str) -> StepDefinition | GroupDefinition | None:
        """Look up a node by ID."""
        for node in self.iter_nodes():
            if node.id == node_id:
                return node
        return None


def _walk(node: StepDefinition | GroupDefinition) -> Iterator[StepDefinition | GroupDefinition]:
    yield node
    if isinstance(node, GroupDefinition):
        for child in node.children:
            yield from _walk(child)
    elif node.on_failure is not None:
        yield from _walk(node.on_failure)


# ── Runtime Records ──────────────────────────────────────────────────────────


class StepResult(BaseModel):
    """Terminal record of one step, emitted on the execution trace."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    step_id: str
    state: StepState
    attempts: int = 0
    critical: bool = False

    started_at: datetime | None = None
    completed_at: datetime | None = None

    produced: str | None = None  # variable name bound on success
    output: Any = None

    error_kind: ErrorKind | None = None
    error_message: str | None = None
    skip_reason: SkipReason | None = None
    recovered_by: str | None = None  # fallback node that rescued the step

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def succeeded(self) -> bool:
        return self.state == StepState.SUCCEEDED


class NodeOutcome(BaseModel):
    """What a finished step or group hands back to its parent."""

    node_id: str
    status: NodeStatus
    output: Any = None


class WorkflowResult(BaseModel):
    """Final state of a workflow run."""

    run_id: str
    workflow_name: str
    status: RunStatus
    results: list[StepResult] = []
    variables: dict[str, Any] = {}

    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None

    def get_result(self, step_id: str) -> StepResult | None:
        for result in self.results:
            if result.step_id == step_id:
                return result
        return None

    @property
    def failed_steps(self) -> list[str]:
        return [r.step_id for r in self.results if r.state == StepState.FAILED]

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None
