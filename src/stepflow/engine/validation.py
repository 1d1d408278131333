"""Definition-time validation — every check that must pass before a run starts.

Checks:
    - node IDs are unique across the workflow (fallback nodes included)
    - ``produces`` names are unique, so each variable has a single writer
    - capabilities are registered
    - condition expressions parse and input references are well formed
    - every reference resolves to an initial variable, a sequential
      predecessor's output, or a parallel sibling's output
    - parallel sibling dependencies are acyclic
    - fallback nesting stays within the configured depth

Successful validation returns a ``WorkflowPlan`` holding the dependency
order of every parallel group, which the scheduler runs from.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from typing import Any, Collection, Iterable

from stepflow.engine.conditions import ConditionEvaluator
from stepflow.engine.context import iter_references
from stepflow.engine.errors import ConditionSyntaxError, DefinitionError
from stepflow.engine.models import (
    GroupDefinition,
    GroupType,
    StepDefinition,
    WorkflowDefinition,
)

logger = logging.getLogger("stepflow.engine.validation")

DEFAULT_MAX_FALLBACK_DEPTH = 3

AnyNode = StepDefinition | GroupDefinition


@dataclass
class WorkflowPlan:
    """A validated definition plus the sibling ordering of its parallel groups."""

    definition: WorkflowDefinition
    initial_variables: frozenset[str] = frozenset()
    # parallel group id → child id → sibling ids it must wait for
    parallel_dependencies: dict[str, dict[str, set[str]]] = field(default_factory=dict)

    def dependencies_for(self, group_id: str) -> dict[str, set[str]]:
        return self.parallel_dependencies.get(group_id, {})


def validate_workflow(
    definition: WorkflowDefinition,
    *,
    capabilities: Collection[str] | Any | None = None,
    initial_variables: Iterable[str] = (),
    max_fallback_depth: int = DEFAULT_MAX_FALLBACK_DEPTH,
) -> WorkflowPlan:
    """Validate ``definition`` and build its execution plan.

    Args:
        definition: The workflow to check.
        capabilities: Registered capability names (a ``CapabilityRegistry``
            works). ``None`` skips the capability check.
        initial_variables: Names that will be in the store when the run starts.
        max_fallback_depth: Deepest allowed chain of nested ``on_failure`` nodes.

    Raises:
        DefinitionError: listing every problem found.
    """
    validator = _Validator(
        definition,
        capabilities=capabilities,
        initial_variables=frozenset(initial_variables),
        max_fallback_depth=max_fallback_depth,
    )
    return validator.run()


class _Validator:
    def __init__(
        self,
        definition: WorkflowDefinition,
        *,
        capabilities: Any,
        initial_variables: frozenset[str],
        max_fallback_depth: int,
    ):
        self._definition = definition
        self._capabilities = capabilities
        self._initial = initial_variables
        self._max_fallback_depth = max_fallback_depth
        self._evaluator = ConditionEvaluator()

        self.errors: list[str] = []
        self._refs: dict[str, set[str]] = {}
        self._needs: dict[str, set[str]] = {}
        self._produces: dict[str, set[str]] = {}
        self._parallel: dict[str, dict[str, set[str]]] = {}

    def run(self) -> WorkflowPlan:
        self._check_unique_ids()
        self._check_unique_produces()
        self._check_capabilities()
        self._collect_step_refs()
        self._check_node(self._definition.root, self._initial, fallback_depth=0)

        if self.errors:
            logger.warning(
                "Workflow '%s' failed validation with %d error(s)",
                self._definition.name,
                len(self.errors),
            )
            raise DefinitionError(self.errors)

        return WorkflowPlan(
            definition=self._definition,
            initial_variables=self._initial,
            parallel_dependencies=self._parallel,
        )

    # ── Static checks ────────────────────────────────────────────────────────

    def _check_unique_ids(self) -> None:
        counts = Counter(node.id for node in self._definition.iter_nodes())
        dupes = sorted(node_id for node_id, n in counts.items() if n > 1)
        if dupes:
            self.errors.append(f"Duplicate node IDs: {dupes}")

    def _check_unique_produces(self) -> None:
        writers: dict[str, list[str]] = {}
        for step in self._definition.iter_steps():
            if step.produces:
                writers.setdefault(step.produces, []).append(step.id)
        for name, steps in sorted(writers.items()):
            if len(steps) > 1:
                self.errors.append(
                    f"Variable '{name}' is produced by more than one step: {steps}"
                )

    def _check_capabilities(self) -> None:
        if self._capabilities is None:
            return
        for step in self._definition.iter_steps():
            if step.capability not in self._capabilities:
                available = (
                    self._capabilities.list_capabilities()
                    if hasattr(self._capabilities, "list_capabilities")
                    else sorted(self._capabilities)
                )
                self.errors.append(
                    f"Step '{step.id}' uses unknown capability '{step.capability}'. "
                    f"Available: {available}"
                )

    def _collect_step_refs(self) -> None:
        for step in self._definition.iter_steps():
            refs: set[str] = set()
            try:
                refs.update(ref.name for ref in iter_references(step.inputs))
            except ValueError as exc:
                self.errors.append(f"Step '{step.id}': {exc}")
            if step.condition is not None:
                try:
                    refs.update(self._evaluator.references(step.condition))
                except ConditionSyntaxError as exc:
                    self.errors.append(f"Step '{step.id}': {exc}")
            self._refs[step.id] = refs

    # ── Variable flow ────────────────────────────────────────────────────────

    def _produces_of(self, node: AnyNode) -> set[str]:
        """Every variable a node (and its fallbacks) may write."""
        cached = self._produces.get(node.id)
        if cached is not None:
            return cached
        if isinstance(node, StepDefinition):
            out = {node.produces} if node.produces else set()
            if node.on_failure is not None:
                out |= self._produces_of(node.on_failure)
        else:
            out = set()
            for child in node.children:
                out |= self._produces_of(child)
        self._produces[node.id] = out
        return out

    def _needs_of(self, node: AnyNode) -> set[str]:
        """Variables a node reads that it does not produce itself."""
        cached = self._needs.get(node.id)
        if cached is not None:
            return cached
        if isinstance(node, StepDefinition):
            out = set(self._refs.get(node.id, ()))
            if node.on_failure is not None:
                out |= self._needs_of(node.on_failure)
        elif node.type == GroupType.SEQUENTIAL:
            out = set()
            produced: set[str] = set()
            for child in node.children:
                out |= self._needs_of(child) - produced
                produced |= self._produces_of(child)
        else:
            out = set()
            for child in node.children:
                out |= self._needs_of(child)
            out -= self._produces_of(node)
        self._needs[node.id] = out
        return out

    def _check_node(self, node: AnyNode, available: frozenset[str], *, fallback_depth: int) -> None:
        if isinstance(node, StepDefinition):
            self._check_step(node, available, fallback_depth)
        elif node.type == GroupType.SEQUENTIAL:
            avail = available
            for child in node.children:
                self._check_node(child, avail, fallback_depth=fallback_depth)
                avail = avail | self._produces_of(child)
        else:
            self._check_parallel(node, available, fallback_depth)

    def _check_step(self, step: StepDefinition, available: frozenset[str], fallback_depth: int) -> None:
        for name in sorted(self._refs.get(step.id, set()) - available):
            if name == step.produces:
                self.errors.append(
                    f"Step '{step.id}' references its own output '${name}'"
                )
            else:
                self.errors.append(
                    f"Step '{step.id}' references unresolved variable '${name}'"
                )
        if step.on_failure is not None:
            if fallback_depth + 1 > self._max_fallback_depth:
                self.errors.append(
                    f"Step '{step.id}': on_failure nesting exceeds max depth "
                    f"{self._max_fallback_depth}"
                )
                return
            self._check_node(step.on_failure, available, fallback_depth=fallback_depth + 1)

    def _check_parallel(
        self, group: GroupDefinition, available: frozenset[str], fallback_depth: int
    ) -> None:
        produced_by = {child.id: self._produces_of(child) for child in group.children}
        deps: dict[str, set[str]] = {}
        for child in group.children:
            needs = self._needs_of(child)
            deps[child.id] = {
                other.id
                for other in group.children
                if other.id != child.id and needs & produced_by[other.id]
            }

        try:
            TopologicalSorter(deps).prepare()
        except CycleError as exc:
            cycle = exc.args[1] if len(exc.args) > 1 else []
            self.errors.append(
                f"Cyclic variable dependency in parallel group '{group.id}': "
                + " -> ".join(cycle)
            )
            return

        self._parallel[group.id] = deps
        for child in group.children:
            child_avail = available
            for dep in deps[child.id]:
                child_avail = child_avail | produced_by[dep]
            self._check_node(child, child_avail, fallback_depth=fallback_depth)
