"""Run logs — recent engine log records, queryable and streamable per run.

The scheduler, dispatcher and variable store tag their records with
``run_id`` / ``step_id`` (and ``attempt`` where one applies). ``RunLogHandler``
turns each record into a ``LogEntry`` and appends it to a ``RunLog``:

    run_log = RunLog(maxlen=config.run_log_size)
    logging.getLogger("stepflow").addHandler(RunLogHandler(run_log))

    trace = runner.run(definition)
    with run_log.subscribe(trace.run_id) as live:
        ...
        entry = await live.get()

    run_log.entries(trace.run_id, level="WARNING")

Sync capabilities log from worker threads; entries reach subscribers on the
event loop that subscribed.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict


class LogEntry(BaseModel):
    """One captured log record."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    level: str
    levelno: int
    logger: str
    message: str
    run_id: str | None = None
    step_id: str | None = None
    attempt: int | None = None

    @classmethod
    def from_record(cls, record: logging.LogRecord) -> LogEntry:
        return cls(
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc),
            level=record.levelname,
            levelno=record.levelno,
            logger=record.name,
            message=record.getMessage(),
            run_id=getattr(record, "run_id", None),
            step_id=getattr(record, "step_id", None),
            attempt=getattr(record, "attempt", None),
        )

    def matches(
        self,
        *,
        run_id: str | None = None,
        step_id: str | None = None,
        min_level: int | None = None,
        logger: str | None = None,
    ) -> bool:
        if run_id is not None and self.run_id != run_id:
            return False
        if step_id is not None and self.step_id != step_id:
            return False
        if min_level is not None and self.levelno < min_level:
            return False
        if logger is not None and not self.logger.startswith(logger):
            return False
        return True


def _level_number(level: str | int | None) -> int | None:
    if level is None or isinstance(level, int):
        return level
    number = logging.getLevelName(level.upper())
    if not isinstance(number, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return number


class RunLogHandler(logging.Handler):
    """Feeds every record it sees into a ``RunLog``."""

    def __init__(self, run_log: RunLog, level: int = logging.DEBUG) -> None:
        super().__init__(level)
        self.run_log = run_log

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.run_log.append(LogEntry.from_record(record))
        except Exception:
            self.handleError(record)


class RunLogSubscription:
    """Live entries for one run (or all runs), delivered on the subscriber's loop.

    Entries beyond ``maxsize`` pending are dropped and counted in ``dropped``.
    """

    def __init__(
        self,
        run_log: RunLog,
        loop: asyncio.AbstractEventLoop,
        run_id: str | None,
        maxsize: int,
    ) -> None:
        self.run_id = run_id
        self.dropped = 0
        self._run_log = run_log
        self._loop = loop
        self._queue: asyncio.Queue[LogEntry] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def wants(self, entry: LogEntry) -> bool:
        return not self._closed and entry.matches(run_id=self.run_id)

    def deliver(self, entry: LogEntry) -> None:
        """Hand ``entry`` to the subscriber; callable from any thread."""
        try:
            on_own_loop = asyncio.get_running_loop() is self._loop
        except RuntimeError:
            on_own_loop = False
        if on_own_loop:
            self._put(entry)
            return
        try:
            self._loop.call_soon_threadsafe(self._put, entry)
        except RuntimeError:
            # subscriber's loop is closed
            self.close()

    def _put(self, entry: LogEntry) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            self.dropped += 1

    async def get(self) -> LogEntry:
        return await self._queue.get()

    def get_nowait(self) -> LogEntry:
        return self._queue.get_nowait()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._run_log.unsubscribe(self)

    def __enter__(self) -> RunLogSubscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class RunLog:
    """Bounded history of engine log entries, with per-run queries and streams.

    The oldest entries are discarded once ``maxlen`` is reached.
    """

    def __init__(self, maxlen: int = 20_000) -> None:
        self._entries: deque[LogEntry] = deque(maxlen=maxlen)
        self._subscriptions: list[RunLogSubscription] = []
        self._lock = threading.Lock()

    # ── Write path ───────────────────────────────────────────────────────────

    def append(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)
            targets = [s for s in self._subscriptions if s.wants(entry)]
        for subscription in targets:
            subscription.deliver(entry)

    # ── Queries ──────────────────────────────────────────────────────────────

    def entries(
        self,
        run_id: str | None = None,
        *,
        step_id: str | None = None,
        level: str | int | None = None,
        logger: str | None = None,
        limit: int | None = None,
    ) -> list[LogEntry]:
        """Matching entries, oldest first. ``limit`` keeps the most recent N.

        ``level`` is a minimum (``"WARNING"`` includes errors); ``logger``
        matches by name prefix.
        """
        min_level = _level_number(level)
        with self._lock:
            snapshot = list(self._entries)
        matched = [
            e
            for e in snapshot
            if e.matches(run_id=run_id, step_id=step_id, min_level=min_level, logger=logger)
        ]
        if limit is not None:
            matched = matched[-limit:] if limit > 0 else []
        return matched

    def runs(self) -> list[str]:
        """Run ids with entries still in the history, in first-seen order."""
        with self._lock:
            snapshot = list(self._entries)
        return list(dict.fromkeys(e.run_id for e in snapshot if e.run_id))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def maxlen(self) -> int:
        return self._entries.maxlen or 0

    # ── Streaming ────────────────────────────────────────────────────────────

    def subscribe(self, run_id: str | None = None, *, maxsize: int = 1000) -> RunLogSubscription:
        """Stream new entries for ``run_id`` (all runs when None).

        Must be called from a running event loop; entries are delivered there.
        """
        subscription = RunLogSubscription(self, asyncio.get_running_loop(), run_id, maxsize)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: RunLogSubscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
