"""Workflow scheduler — walks a validated plan and drives every step to a terminal state.

Sequential groups run their children strictly in order. Parallel groups run
every ready child as a task on the running loop; a child becomes ready once
the siblings it reads variables from have finished.

A run can be halted two ways:

- **cancel** (requested by the caller): running invocations are interrupted
  and end ``failed`` with kind ``cancelled``, steps waiting out a retry delay
  and every step that never started are recorded ``skipped`` (``cancelled``).
- **abort** (a critical step ended ``failed``): running siblings are
  interrupted and end ``failed`` with kind ``aborted``, steps waiting out a
  retry delay end ``skipped`` (``aborted``), and steps that never started
  stay pending. ``WorkflowAbortedError`` propagates once in-flight siblings
  have settled.
"""

from __future__ import annotations

import asyncio
import logging
from graphlib import TopologicalSorter
from typing import Any, Awaitable, Callable, Iterator

from stepflow.engine.capabilities import CapabilityDispatcher
from stepflow.engine.conditions import ConditionEvaluator
from stepflow.engine.context import ExecutionContext
from stepflow.engine.errors import (
    CapabilityError,
    ConditionError,
    InvocationCancelledError,
    UnresolvedReferenceError,
    WorkflowAbortedError,
)
from stepflow.engine.models import (
    ErrorKind,
    GroupDefinition,
    GroupType,
    NodeOutcome,
    NodeStatus,
    SkipReason,
    StepDefinition,
    StepResult,
    StepState,
)
from stepflow.engine.retry import RetryPolicyEngine
from stepflow.engine.state_machine import StepStateMachine, error_kind_for
from stepflow.engine.validation import WorkflowPlan

logger = logging.getLogger("stepflow.engine.scheduler")

SleepFn = Callable[[float], Awaitable[Any]]
ResultCallback = Callable[[StepResult], None]

AnyNode = StepDefinition | GroupDefinition


class WorkflowScheduler:
    """Executes one run of a ``WorkflowPlan``.

    ``on_result`` is called synchronously with every terminal ``StepResult``
    in the order steps finish. ``sleep`` is awaited for retry delays.
    """

    def __init__(
        self,
        plan: WorkflowPlan,
        context: ExecutionContext,
        dispatcher: CapabilityDispatcher,
        *,
        run_id: str,
        on_result: ResultCallback | None = None,
        sleep: SleepFn = asyncio.sleep,
        default_timeout: float | None = None,
        retry_engine: RetryPolicyEngine | None = None,
        evaluator: ConditionEvaluator | None = None,
    ):
        self._plan = plan
        self._context = context
        self._dispatcher = dispatcher
        self.run_id = run_id
        self.on_result = on_result
        self._sleep = sleep
        self._default_timeout = default_timeout
        self._retry = retry_engine or RetryPolicyEngine()
        self._evaluator = evaluator or ConditionEvaluator()

        # Shared cancel signal handed to every capability invocation
        self._halt = asyncio.Event()
        self._cancelled = False
        self._abort: WorkflowAbortedError | None = None
        self._results: list[StepResult] = []

    # ── Public API ───────────────────────────────────────────────────────────

    @property
    def results(self) -> list[StepResult]:
        """Terminal step results in emission order."""
        return list(self._results)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def aborted(self) -> WorkflowAbortedError | None:
        return self._abort

    @property
    def halted(self) -> bool:
        return self._halt.is_set()

    def cancel(self) -> bool:
        """Request cooperative cancellation. Returns False if already halted."""
        if self._halt.is_set():
            return False
        self._cancelled = True
        self._halt.set()
        logger.info("Cancellation requested (run %s)", self.run_id, extra={"run_id": self.run_id})
        return True

    async def run(self) -> NodeOutcome:
        """Execute the whole tree. Raises WorkflowAbortedError on critical failure."""
        return await self.run_node(self._plan.definition.root)

    async def run_node(self, node: AnyNode) -> NodeOutcome:
        if self._halt.is_set():
            if self._abort is not None:
                raise self._abort
            self._skip_unstarted(node)
            return NodeOutcome(node_id=node.id, status=NodeStatus.CANCELLED)

        if isinstance(node, StepDefinition):
            return await self._run_step(node)
        if node.type == GroupType.PARALLEL:
            return await self._run_parallel(node)
        return await self._run_sequential(node)

    # ── Steps ────────────────────────────────────────────────────────────────

    async def _run_step(self, step: StepDefinition) -> NodeOutcome:
        sm = StepStateMachine(step.id, run_id=self.run_id, critical=step.critical)

        if step.condition is not None:
            try:
                proceed = self._evaluator.evaluate(step.condition, self._context.snapshot())
            except ConditionError as exc:
                sm.fail(ErrorKind.CONDITION, str(exc))
                return await self._handle_failure(step, sm)
            sm.evaluate(proceed)
            if not proceed:
                self._emit(sm)
                return NodeOutcome(node_id=step.id, status=NodeStatus.SKIPPED)
        else:
            sm.evaluate(True)

        try:
            inputs = self._context.resolve(step.inputs)
        except UnresolvedReferenceError as exc:
            sm.fail(ErrorKind.UNRESOLVED_REFERENCE, str(exc))
            return await self._handle_failure(step, sm)

        timeout = step.timeout if step.timeout is not None else self._default_timeout
        while True:
            attempt = sm.start_attempt()
            try:
                output = await self._dispatcher.invoke(
                    step.capability,
                    inputs,
                    self._halt,
                    run_id=self.run_id,
                    step_id=step.id,
                    attempt=attempt,
                    timeout=timeout,
                )
            except InvocationCancelledError as exc:
                kind = ErrorKind.CANCELLED if self._cancelled else ErrorKind.ABORTED
                sm.fail(kind, str(exc))
                sm.finish()
                self._emit(sm)
                return NodeOutcome(node_id=step.id, status=self._halted_status())
            except CapabilityError as exc:
                sm.fail(error_kind_for(exc), str(exc))
                decision = self._retry.decide(step.retry, attempt, exc)
                if not decision.should_retry:
                    return await self._handle_failure(step, sm)

                sm.retry()
                logger.info(
                    "Step '%s' attempt %d failed (%s); retrying in %.2fs",
                    step.id,
                    attempt,
                    exc,
                    decision.delay,
                    extra=self._extra(step.id, attempt),
                )
                if not await self._wait_retry(decision.delay):
                    sm.skip(self._halt_reason())
                    self._emit(sm)
                    return NodeOutcome(node_id=step.id, status=self._halted_status())
                continue

            if step.produces:
                self._context.publish(step.produces, output, writer=step.id)
            sm.succeed(output, produced=step.produces)
            self._emit(sm)
            return NodeOutcome(node_id=step.id, status=NodeStatus.SUCCEEDED, output=output)

    async def _handle_failure(self, step: StepDefinition, sm: StepStateMachine) -> NodeOutcome:
        """Retries are exhausted (or impossible): try the fallback, then finalize."""
        if step.on_failure is not None and not self._halt.is_set():
            fallback = step.on_failure
            logger.info(
                "Step '%s' failed (%s); running fallback '%s'",
                step.id,
                sm.error_message,
                fallback.id,
                extra=self._extra(step.id),
            )
            try:
                outcome = await self.run_node(fallback)
            except WorkflowAbortedError:
                sm.finish()
                self._emit(sm)
                raise

            if outcome.status in (NodeStatus.SUCCEEDED, NodeStatus.PARTIAL_FAILURE):
                if step.produces:
                    self._context.publish(step.produces, outcome.output, writer=step.id)
                sm.succeed(outcome.output, produced=step.produces, recovered_by=fallback.id)
                self._emit(sm)
                return NodeOutcome(node_id=step.id, status=NodeStatus.SUCCEEDED, output=outcome.output)

        sm.finish()
        result = self._emit(sm)

        if step.critical and not self._cancelled:
            raise self._trigger_abort(step.id, result)
        if self._cancelled:
            return NodeOutcome(node_id=step.id, status=NodeStatus.CANCELLED)
        return NodeOutcome(node_id=step.id, status=NodeStatus.FAILED)

    async def _wait_retry(self, delay: float) -> bool:
        """Await the retry delay. Returns False if the run halted meanwhile."""
        if self._halt.is_set():
            return False
        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(self._halt.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
        return not self._halt.is_set()

    def _trigger_abort(self, step_id: str, result: StepResult) -> WorkflowAbortedError:
        if self._abort is None:
            self._abort = WorkflowAbortedError(step_id, result)
            self._halt.set()
            logger.error(
                "Critical step '%s' failed: %s; aborting run %s",
                step_id,
                result.error_message,
                self.run_id,
                extra=self._extra(step_id),
            )
        return self._abort

    # ── Groups ───────────────────────────────────────────────────────────────

    async def _run_sequential(self, group: GroupDefinition) -> NodeOutcome:
        outcomes = []
        for child in group.children:
            outcomes.append(await self.run_node(child))
        return aggregate(group, outcomes)

    async def _run_parallel(self, group: GroupDefinition) -> NodeOutcome:
        deps = self._plan.dependencies_for(group.id)
        children = {child.id: child for child in group.children}
        sorter = TopologicalSorter({cid: deps.get(cid, set()) for cid in children})
        sorter.prepare()

        outcomes: dict[str, NodeOutcome] = {}
        running: dict[asyncio.Task, str] = {}
        abort: WorkflowAbortedError | None = None

        def launch_ready() -> None:
            for cid in sorter.get_ready():
                task = asyncio.ensure_future(self.run_node(children[cid]))
                running[task] = cid

        launch_ready()
        try:
            while running:
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    cid = running.pop(task)
                    try:
                        outcomes[cid] = task.result()
                    except WorkflowAbortedError as exc:
                        abort = abort or exc
                    sorter.done(cid)
                # after an abort, children that never started stay pending
                if abort is None and self._abort is None:
                    launch_ready()
        finally:
            for task in running:
                task.cancel()

        if abort is not None:
            raise abort
        if self._abort is not None:
            raise self._abort
        return aggregate(group, [outcomes[cid] for cid in children if cid in outcomes])

    # ── Halting ──────────────────────────────────────────────────────────────

    def _skip_unstarted(self, node: AnyNode) -> None:
        for step in _primary_steps(node):
            sm = StepStateMachine(step.id, run_id=self.run_id, critical=step.critical)
            sm.skip(SkipReason.CANCELLED)
            self._emit(sm)

    def _halt_reason(self) -> SkipReason:
        return SkipReason.CANCELLED if self._cancelled else SkipReason.ABORTED

    def _halted_status(self) -> NodeStatus:
        return NodeStatus.CANCELLED if self._cancelled else NodeStatus.FAILED

    # ── Emission ─────────────────────────────────────────────────────────────

    def _emit(self, sm: StepStateMachine) -> StepResult:
        result = sm.to_result()
        self._results.append(result)
        extra = self._extra(result.step_id, result.attempts)

        if result.state == StepState.SUCCEEDED:
            if result.recovered_by:
                logger.info(
                    "Step '%s' recovered by fallback '%s'",
                    result.step_id,
                    result.recovered_by,
                    extra=extra,
                )
            else:
                logger.info(
                    "Step '%s' succeeded after %d attempt(s)",
                    result.step_id,
                    result.attempts,
                    extra=extra,
                )
        elif result.state == StepState.SKIPPED:
            logger.info(
                "Step '%s' skipped (%s)",
                result.step_id,
                result.skip_reason.value if result.skip_reason else "unknown",
                extra=extra,
            )
        elif not result.critical or self._halt.is_set():
            logger.warning(
                "Step '%s' failed [%s]: %s",
                result.step_id,
                result.error_kind.value if result.error_kind else "unknown",
                result.error_message,
                extra=extra,
            )

        if self.on_result is not None:
            self.on_result(result)
        return result

    def _extra(self, step_id: str, attempt: int | None = None) -> dict[str, Any]:
        extra: dict[str, Any] = {"run_id": self.run_id, "step_id": step_id}
        if attempt:
            extra["attempt"] = attempt
        return extra


# ── Aggregation ──────────────────────────────────────────────────────────────


def aggregate(group: GroupDefinition, outcomes: list[NodeOutcome]) -> NodeOutcome:
    """Combine child outcomes into the group's outcome.

    Status:
        - ``cancelled`` if any child was cancelled
        - ``partial_failure`` if any child failed or partially failed
        - ``succeeded`` otherwise (every child succeeded or was skipped)

    Output: a sequential group yields its last non-skipped child's output;
    a parallel group yields ``{child_id: output}`` for children with output.
    """
    statuses = {o.status for o in outcomes}

    # a critical child failure never reaches here: it raises WorkflowAbortedError
    if NodeStatus.CANCELLED in statuses:
        status = NodeStatus.CANCELLED
    elif statuses & {NodeStatus.FAILED, NodeStatus.PARTIAL_FAILURE}:
        status = NodeStatus.PARTIAL_FAILURE
    else:
        status = NodeStatus.SUCCEEDED

    output: Any
    if group.is_parallel:
        output = {
            o.node_id: o.output
            for o in outcomes
            if o.output is not None
            and o.status in (NodeStatus.SUCCEEDED, NodeStatus.PARTIAL_FAILURE)
        }
    else:
        output = None
        for o in reversed(outcomes):
            if o.status != NodeStatus.SKIPPED:
                output = o.output
                break

    return NodeOutcome(node_id=group.id, status=status, output=output)


def _primary_steps(node: AnyNode) -> Iterator[StepDefinition]:
    """Steps of a node in declaration order, fallback nodes excluded."""
    if isinstance(node, StepDefinition):
        yield node
    else:
        for child in node.children:
            yield from _primary_steps(child)
