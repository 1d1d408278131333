"""Workflow runner — public entry point for validating and executing workflows.

Usage::

    registry = CapabilityRegistry()

    @registry.register("fetch_report")
    async def fetch_report(inputs, call):
        ...

    runner = WorkflowRunner(registry)
    trace = runner.run(definition, {"repo": "acme/api"})
    async for result in trace:
        print(result.step_id, result.state)
    summary = await trace.result()

``run`` validates eagerly (raising ``DefinitionError``) and returns an
``ExecutionTrace``; nothing executes until the trace is consumed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Mapping

from stepflow.config import EngineConfig
from stepflow.engine.capabilities import CapabilityDispatcher, CapabilityRegistry
from stepflow.engine.context import ExecutionContext
from stepflow.engine.errors import WorkflowAbortedError
from stepflow.engine.models import NodeStatus, RunStatus, StepResult, WorkflowDefinition, WorkflowResult
from stepflow.engine.scheduler import SleepFn, WorkflowScheduler
from stepflow.engine.validation import WorkflowPlan, validate_workflow

logger = logging.getLogger("stepflow.engine.runner")


# ── Execution Trace ──────────────────────────────────────────────────────────


class ExecutionTrace:
    """Ordered stream of ``StepResult`` events for one run.

    The run starts when the trace is first iterated (or ``result()`` is
    awaited). A trace can be iterated once; if the run is aborted, iteration
    raises ``WorkflowAbortedError`` after the last event.
    """

    def __init__(
        self,
        plan: WorkflowPlan,
        scheduler: WorkflowScheduler,
        context: ExecutionContext,
        *,
        active: dict[str, ExecutionTrace],
    ):
        self.run_id = scheduler.run_id
        self.workflow_name = plan.definition.name
        self._plan = plan
        self._scheduler = scheduler
        self._context = context
        self._active = active
        scheduler.on_result = self._on_result

        self._queue: asyncio.Queue[StepResult | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._iterated = False
        self._result: WorkflowResult | None = None
        self._error: BaseException | None = None

    # ── Consumption ──────────────────────────────────────────────────────────

    def __aiter__(self) -> AsyncIterator[StepResult]:
        if self._iterated:
            msg = f"ExecutionTrace for run {self.run_id} can only be iterated once"
            raise RuntimeError(msg)
        self._iterated = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StepResult]:
        self.start()
        while True:
            item = await self._queue.get()
            if item is None:
                break
            yield item
        await self._finished()

    async def result(self) -> WorkflowResult:
        """Wait for the run to finish and return its ``WorkflowResult``.

        Raises:
            WorkflowAbortedError: a critical step failed.
        """
        self.start()
        return await self._finished()

    async def _finished(self) -> WorkflowResult:
        assert self._task is not None
        await asyncio.shield(self._task)
        if self._error is not None:
            raise self._error
        assert self._result is not None
        return self._result

    # ── Control ──────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Begin execution if it has not started yet."""
        if self._task is None:
            self._task = asyncio.ensure_future(self._execute())

    def cancel(self) -> bool:
        """Request cooperative cancellation. False if the run already finished."""
        if self.done:
            return False
        return self._scheduler.cancel()

    @property
    def started(self) -> bool:
        return self._task is not None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def outcome(self) -> WorkflowResult | None:
        """Result of the finished run, aborted runs included. None until done."""
        return self._result

    @property
    def variables(self) -> dict[str, Any]:
        """Current contents of the run's variable store."""
        return self._context.to_dict()

    # ── Execution ────────────────────────────────────────────────────────────

    async def _execute(self) -> None:
        self._active[self.run_id] = self
        started_at = datetime.now(timezone.utc)
        extra = {"run_id": self.run_id}
        logger.info("Started workflow '%s' run %s", self.workflow_name, self.run_id, extra=extra)

        try:
            outcome = await self._scheduler.run()
        except WorkflowAbortedError as exc:
            exc.results = self._scheduler.results
            exc.run_id = self.run_id
            self._result = self._build_result(
                RunStatus.ABORTED, started_at, error_message=str(exc)
            )
            self._error = exc
            logger.error(
                "Workflow '%s' run %s aborted by step '%s'",
                self.workflow_name,
                self.run_id,
                exc.step_id,
                extra=extra,
            )
        except Exception as exc:
            logger.exception("Workflow '%s' run %s crashed", self.workflow_name, self.run_id, extra=extra)
            self._error = exc
        else:
            if self._scheduler.cancelled:
                status = RunStatus.CANCELLED
            elif outcome.status in (NodeStatus.SUCCEEDED, NodeStatus.SKIPPED):
                status = RunStatus.SUCCEEDED
            else:
                status = RunStatus.PARTIAL_FAILURE
            self._result = self._build_result(status, started_at)
            logger.info(
                "Workflow '%s' run %s finished: %s (%d steps)",
                self.workflow_name,
                self.run_id,
                status.value,
                len(self._result.results),
                extra=extra,
            )
        finally:
            self._active.pop(self.run_id, None)
            self._queue.put_nowait(None)

    def _build_result(
        self,
        status: RunStatus,
        started_at: datetime,
        *,
        error_message: str | None = None,
    ) -> WorkflowResult:
        return WorkflowResult(
            run_id=self.run_id,
            workflow_name=self.workflow_name,
            status=status,
            results=self._scheduler.results,
            variables=self._context.to_dict(),
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            error_message=error_message,
        )

    def _on_result(self, result: StepResult) -> None:
        self._queue.put_nowait(result)


# ── Runner ───────────────────────────────────────────────────────────────────


class WorkflowRunner:
    """Validates workflow definitions and executes them against a capability registry.

    Args:
        registry: Capabilities available to steps.
        config: Engine settings; defaults to ``EngineConfig()``.
        sleep: Awaited for retry delays. Tests inject a recording fake.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        *,
        config: EngineConfig | None = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.registry = registry
        self.config = config or EngineConfig()
        self._sleep = sleep
        self._dispatcher = CapabilityDispatcher(
            registry, max_concurrency=self.config.max_concurrency
        )
        self._active: dict[str, ExecutionTrace] = {}

        for module_path in self.config.capability_plugins:
            registry.load_plugin(module_path)

    def validate(
        self,
        definition: WorkflowDefinition,
        initial_variables: Mapping[str, Any] | None = None,
    ) -> WorkflowPlan:
        """Check ``definition`` against the registry. Raises DefinitionError."""
        return validate_workflow(
            definition,
            capabilities=self.registry,
            initial_variables=(initial_variables or {}).keys(),
            max_fallback_depth=self.config.max_fallback_depth,
        )

    def run(
        self,
        definition: WorkflowDefinition,
        initial_variables: Mapping[str, Any] | None = None,
        *,
        run_id: str | None = None,
    ) -> ExecutionTrace:
        """Validate ``definition`` and return a trace that executes it when consumed."""
        plan = self.validate(definition, initial_variables)
        run_id = run_id or f"wf-{uuid.uuid4().hex[:12]}"

        context = ExecutionContext(initial_variables, run_id=run_id)
        scheduler = WorkflowScheduler(
            plan,
            context,
            self._dispatcher,
            run_id=run_id,
            sleep=self._sleep,
            default_timeout=self.config.default_step_timeout,
        )
        return ExecutionTrace(plan, scheduler, context, active=self._active)

    async def execute(
        self,
        definition: WorkflowDefinition,
        initial_variables: Mapping[str, Any] | None = None,
    ) -> WorkflowResult:
        """Run ``definition`` to completion and return the result."""
        return await self.run(definition, initial_variables).result()

    def cancel(self, handle_or_run_id: ExecutionTrace | str) -> bool:
        """Request cancellation of an in-flight run. False if unknown or finished."""
        if isinstance(handle_or_run_id, ExecutionTrace):
            trace: ExecutionTrace | None = handle_or_run_id
        else:
            trace = self._active.get(handle_or_run_id)
        if trace is None:
            logger.warning("Cannot cancel unknown or finished run %s", handle_or_run_id)
            return False
        return trace.cancel()

    def active_runs(self) -> list[str]:
        """Run IDs currently executing."""
        return list(self._active)
