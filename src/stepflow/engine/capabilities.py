"""Capability registry and dispatcher — the seam to the code that does the work.

A capability is a named handler ("read_file", "generate_code", "run_linter")
that receives a step's resolved inputs and returns a value. Handlers can be
synchronous or async; synchronous handlers run in a worker thread so a slow
call only suspends its own step.

Handlers signal failures by raising ``TransientCapabilityError`` (eligible
for retry) or ``PermanentCapabilityError`` (skip remaining retries). Any
other exception is logged and treated as transient.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
import weakref
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from stepflow.engine.errors import (
    CapabilityError,
    CapabilityTimeoutError,
    InvocationCancelledError,
    PermanentCapabilityError,
    TransientCapabilityError,
)

logger = logging.getLogger("stepflow.engine.capabilities")


# ── Invocation Context ───────────────────────────────────────────────────────


@dataclass
class CapabilityCall:
    """Per-invocation details handed to a capability alongside its inputs."""

    capability: str
    run_id: str | None = None
    step_id: str | None = None
    attempt: int = 1

    # Set when the run is cancelled or aborted; long-running handlers should
    # poll it (or await ``cancel_event.wait()``) and stop early.
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


# ── Capability Protocol ──────────────────────────────────────────────────────


@runtime_checkable
class Capability(Protocol):
    """Protocol for a capability handler.

    Handlers can be sync or async. Ones that declare only a single parameter
    are called with the inputs alone.
    """

    def __call__(self, inputs: dict[str, Any], call: CapabilityCall) -> Any | Awaitable[Any]:
        ...


# ── Capability Registry ──────────────────────────────────────────────────────


class CapabilityRegistry:
    """Registry mapping capability names to handlers.

    Usage::

        registry = CapabilityRegistry()

        @registry.register("read_file")
        async def read_file(inputs, call):
            ...

    The registry is built once at startup; workflow validation rejects
    steps that name a capability it does not know.
    """

    def __init__(self) -> None:
        self._capabilities: dict[str, Callable[..., Any]] = {}

    # ── Registration ─────────────────────────────────────────────────────────

    def register(self, name: str) -> Callable[[Callable], Callable]:
        """Decorator to register a capability handler.

        Args:
            name: The capability name used by workflow steps.

        Returns:
            Decorator that registers the function and returns it unchanged.
        """

        def decorator(fn: Callable) -> Callable:
            self.register_fn(name, fn)
            return fn

        return decorator

    def register_fn(self, name: str, fn: Callable[..., Any]) -> None:
        """Directly register a capability handler by name."""
        if not name:
            msg = "Capability name must not be empty"
            raise ValueError(msg)
        if name in self._capabilities:
            logger.warning("Replacing capability '%s'", name)
        self._capabilities[name] = fn
        logger.debug("Registered capability: %s", name)

    def unregister(self, name: str) -> bool:
        return self._capabilities.pop(name, None) is not None

    def load_plugin(self, module_path: str) -> int:
        """Load capabilities from a Python module path.

        The module must expose a ``register_capabilities(registry)`` function
        that registers its handlers on the registry passed to it.

        Args:
            module_path: Dotted module path, e.g. ``myproject.capabilities``.

        Returns:
            Number of capabilities registered from the module.
        """
        before = len(self._capabilities)
        module = importlib.import_module(module_path)
        hook = getattr(module, "register_capabilities", None)
        if hook is None:
            msg = f"Plugin module '{module_path}' has no register_capabilities(registry)"
            raise AttributeError(msg)
        hook(self)
        added = len(self._capabilities) - before
        logger.info("Loaded %d capabilities from plugin: %s", added, module_path)
        return added

    def get(self, name: str) -> Callable[..., Any] | None:
        """Look up a capability by name."""
        return self._capabilities.get(name)

    def has(self, name: str) -> bool:
        return name in self._capabilities

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def list_capabilities(self) -> list[str]:
        """Return all registered capability names."""
        return sorted(self._capabilities)


# ── Dispatcher ───────────────────────────────────────────────────────────────


class CapabilityDispatcher:
    """Invokes capabilities on behalf of steps.

    Normalizes every failure into a ``CapabilityError`` and races each call
    against the run's cancel event. ``max_concurrency`` bounds how many
    invocations are outstanding at once across the run.
    """

    def __init__(self, registry: CapabilityRegistry, *, max_concurrency: int | None = None):
        self._registry = registry
        self._max_concurrency = max_concurrency
        # Semaphores bind to the loop that first waits on them; keep one per loop.
        self._semaphores: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Semaphore] = (
            weakref.WeakKeyDictionary()
        )

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    async def invoke(
        self,
        name: str,
        inputs: dict[str, Any],
        cancel_event: asyncio.Event,
        *,
        run_id: str | None = None,
        step_id: str | None = None,
        attempt: int = 1,
        timeout: float | None = None,
    ) -> Any:
        """Invoke capability ``name`` with ``inputs``.

        Returns:
            The capability's output value.

        Raises:
            TransientCapabilityError: retry-eligible failure, including
                ``CapabilityTimeoutError`` when ``timeout`` expires.
            PermanentCapabilityError: failure that retrying cannot fix, or
                an unknown capability name.
            InvocationCancelledError: ``cancel_event`` fired first.
        """
        fn = self._registry.get(name)
        if fn is None:
            raise PermanentCapabilityError(f"Unknown capability: '{name}'", capability=name)

        call = CapabilityCall(
            capability=name,
            run_id=run_id,
            step_id=step_id,
            attempt=attempt,
            cancel_event=cancel_event,
        )

        semaphore = self._loop_semaphore()
        if semaphore is None:
            return await self._invoke_once(fn, name, inputs, call, timeout)
        async with semaphore:
            return await self._invoke_once(fn, name, inputs, call, timeout)

    def _loop_semaphore(self) -> asyncio.Semaphore | None:
        if not self._max_concurrency:
            return None
        loop = asyncio.get_running_loop()
        semaphore = self._semaphores.get(loop)
        if semaphore is None:
            semaphore = self._semaphores[loop] = asyncio.Semaphore(self._max_concurrency)
        return semaphore

    async def _invoke_once(
        self,
        fn: Callable[..., Any],
        name: str,
        inputs: dict[str, Any],
        call: CapabilityCall,
        timeout: float | None,
    ) -> Any:
        if call.cancelled:
            raise InvocationCancelledError(f"Capability '{name}' not started: run halted")

        work = asyncio.ensure_future(self._call(fn, inputs, call))
        waiter = asyncio.ensure_future(call.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work not in done:
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            if waiter in done:
                raise InvocationCancelledError(f"Capability '{name}' interrupted: run halted")
            raise CapabilityTimeoutError(timeout or 0.0, capability=name)

        try:
            return work.result()
        except CapabilityError as exc:
            if exc.capability is None:
                exc.capability = name
            raise
        except asyncio.CancelledError:
            if call.cancelled:
                raise InvocationCancelledError(f"Capability '{name}' was cancelled") from None
            # cancelled from inside the handler, not by the run
            raise TransientCapabilityError(
                f"Capability '{name}' cancelled itself", capability=name
            ) from None
        except Exception as exc:
            logger.exception(
                "Capability '%s' raised an unexpected exception (step %s)",
                name,
                call.step_id,
                extra={"run_id": call.run_id, "step_id": call.step_id, "attempt": call.attempt},
            )
            raise TransientCapabilityError(
                f"{type(exc).__name__}: {exc}", capability=name
            ) from exc

    @staticmethod
    async def _call(fn: Callable[..., Any], inputs: dict[str, Any], call: CapabilityCall) -> Any:
        args: tuple[Any, ...] = (inputs, call) if _accepts_call(fn) else (inputs,)
        if inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(
            getattr(fn, "__call__", None)
        ):
            return await fn(*args)
        result = await asyncio.to_thread(fn, *args)
        if inspect.isawaitable(result):
            result = await result
        return result


def _accepts_call(fn: Callable[..., Any]) -> bool:
    """True if ``fn`` takes a second positional argument for the CapabilityCall."""
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        return True
    positional = 0
    for param in sig.parameters.values():
        if param.kind == param.VAR_POSITIONAL:
            return True
        if param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD):
            positional += 1
    return positional >= 2
