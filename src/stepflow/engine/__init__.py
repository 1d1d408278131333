"""Declarative step-workflow execution engine.

Key exports:
    WorkflowRunner — Validates and executes workflow definitions
    ExecutionTrace — Ordered stream of step results for one run
    CapabilityRegistry — Named handlers that perform step work
    WorkflowDefinition, StepDefinition, GroupDefinition — Definition models
    StepResult, WorkflowResult — Runtime records
"""

from stepflow.engine.capabilities import (
    Capability,
    CapabilityCall,
    CapabilityDispatcher,
    CapabilityRegistry,
)
from stepflow.engine.conditions import ConditionEvaluator
from stepflow.engine.context import ExecutionContext, VariableReference
from stepflow.engine.errors import (
    CapabilityError,
    CapabilityTimeoutError,
    ConditionError,
    ConditionSyntaxError,
    ConditionTypeError,
    DefinitionError,
    IllegalTransitionError,
    InvocationCancelledError,
    PermanentCapabilityError,
    StepflowError,
    TransientCapabilityError,
    UnboundVariableError,
    UnresolvedReferenceError,
    VariableConflictError,
    WorkflowAbortedError,
)
from stepflow.engine.loader import load_workflow, parse_workflow
from stepflow.engine.models import (
    BackoffStrategy,
    ErrorKind,
    GroupDefinition,
    GroupType,
    NodeOutcome,
    NodeStatus,
    RetryConfig,
    RunStatus,
    SkipReason,
    StepDefinition,
    StepResult,
    StepState,
    WorkflowDefinition,
    WorkflowResult,
)
from stepflow.engine.retry import RetryDecision, RetryPolicyEngine, compute_delay
from stepflow.engine.runner import ExecutionTrace, WorkflowRunner
from stepflow.engine.scheduler import WorkflowScheduler
from stepflow.engine.state_machine import StepStateMachine
from stepflow.engine.validation import WorkflowPlan, validate_workflow

__all__ = [
    # Runner
    "WorkflowRunner",
    "ExecutionTrace",
    "WorkflowScheduler",
    # Capabilities
    "Capability",
    "CapabilityCall",
    "CapabilityDispatcher",
    "CapabilityRegistry",
    # Definitions
    "WorkflowDefinition",
    "StepDefinition",
    "GroupDefinition",
    "GroupType",
    "RetryConfig",
    "BackoffStrategy",
    "load_workflow",
    "parse_workflow",
    "validate_workflow",
    "WorkflowPlan",
    # Runtime
    "ExecutionContext",
    "VariableReference",
    "ConditionEvaluator",
    "StepStateMachine",
    "RetryPolicyEngine",
    "RetryDecision",
    "compute_delay",
    "StepResult",
    "StepState",
    "WorkflowResult",
    "RunStatus",
    "NodeOutcome",
    "NodeStatus",
    "ErrorKind",
    "SkipReason",
    # Errors
    "StepflowError",
    "DefinitionError",
    "ConditionSyntaxError",
    "CapabilityError",
    "TransientCapabilityError",
    "PermanentCapabilityError",
    "CapabilityTimeoutError",
    "InvocationCancelledError",
    "ConditionError",
    "UnboundVariableError",
    "ConditionTypeError",
    "UnresolvedReferenceError",
    "VariableConflictError",
    "IllegalTransitionError",
    "WorkflowAbortedError",
]
