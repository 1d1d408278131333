"""Execution context — the per-run variable store shared by all steps.

Steps publish their output under the name they declare in ``produces``;
later steps read it through ``$name`` references in their inputs and
conditions.

Supports:
    - Whole-variable references: ``$report``
    - Dotted paths: ``$report.summary.title``
    - Index access: ``$files[0].path``
    - Escaped literals: ``$$5`` resolves to the string ``$5``
    - Recursive resolution of dicts and lists; other values pass through

The store is the single shared mutable resource of a run. Each write swaps
in a new read-only snapshot under a lock, so a reader sees either the old
mapping or the new one and never a half-written value.
"""

from __future__ import annotations

import logging
import re
import threading
from types import MappingProxyType
from typing import Any, Iterator, Mapping, NamedTuple

from stepflow.engine.errors import UnresolvedReferenceError, VariableConflictError

logger = logging.getLogger("stepflow.engine.context")

_REFERENCE_RE = re.compile(
    r"^\$(?P<name>[a-zA-Z_][a-zA-Z0-9_]*)(?P<path>(?:\.[a-zA-Z_][a-zA-Z0-9_]*|\[\d+\])*)$"
)
_PATH_PART_RE = re.compile(r"\.([a-zA-Z_][a-zA-Z0-9_]*)|\[(\d+)\]")


class VariableReference(NamedTuple):
    """A parsed ``$name.path[0]`` reference."""

    name: str
    path: tuple[str | int, ...] = ()

    def __str__(self) -> str:
        text = f"${self.name}"
        for part in self.path:
            text += f"[{part}]" if isinstance(part, int) else f".{part}"
        return text


def is_reference(value: Any) -> bool:
    """True for strings that should be read from the store."""
    return isinstance(value, str) and value.startswith("$") and not value.startswith("$$")


def parse_reference(text: str) -> VariableReference:
    """Parse a ``$name.path`` string.

    Raises ValueError when the text starts with ``$`` but is not a valid
    reference.
    """
    match = _REFERENCE_RE.match(text.strip())
    if not match:
        msg = f"Malformed variable reference {text!r}"
        raise ValueError(msg)
    path: list[str | int] = []
    for attr, index in _PATH_PART_RE.findall(match.group("path")):
        path.append(int(index) if index else attr)
    return VariableReference(match.group("name"), tuple(path))


def iter_references(value: Any) -> Iterator[VariableReference]:
    """Yield every reference inside an inputs value, recursing into containers."""
    if isinstance(value, str):
        if is_reference(value):
            yield parse_reference(value)
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def resolve_path(value: Any, path: tuple[str | int, ...]) -> Any:
    """Walk ``path`` into ``value``. Missing keys, attributes or indexes yield None."""
    current = value
    for part in path:
        if current is None:
            return None
        if isinstance(part, int):
            if isinstance(current, (list, tuple)) and 0 <= part < len(current):
                current = current[part]
            else:
                return None
        elif isinstance(current, Mapping):
            current = current.get(part)
        elif hasattr(current, part):
            current = getattr(current, part)
        else:
            return None
    return current


class ExecutionContext:
    """Variable store for one workflow run.

    Initial variables may be overwritten once by the step that declares them
    in ``produces``; any other second write is a conflict.
    """

    def __init__(self, initial: Mapping[str, Any] | None = None, *, run_id: str | None = None):
        self.run_id = run_id
        self._values: Mapping[str, Any] = MappingProxyType(dict(initial or {}))
        self._writers: dict[str, str] = {}
        self._lock = threading.Lock()

    # ── Read path ────────────────────────────────────────────────────────────

    def snapshot(self) -> Mapping[str, Any]:
        """Current read-only view. Later writes do not change it."""
        return self._values

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __len__(self) -> int:
        return len(self._values)

    def names(self) -> set[str]:
        return set(self._values)

    def to_dict(self) -> dict[str, Any]:
        return dict(self._values)

    def lookup(self, ref: VariableReference) -> Any:
        """Read a reference. Raises UnresolvedReferenceError for unknown roots."""
        values = self._values
        if ref.name not in values:
            raise UnresolvedReferenceError(ref.name)
        return resolve_path(values[ref.name], ref.path)

    def resolve(self, value: Any) -> Any:
        """Resolve references inside a step's inputs against one snapshot.

        - ``$name`` strings are replaced by the stored value (type preserved).
        - ``$$text`` strings become ``$text``.
        - Dicts and lists are resolved recursively.
        - Other values are returned as-is.
        """
        return _resolve(value, self._values)

    # ── Write path ───────────────────────────────────────────────────────────

    def publish(self, name: str, value: Any, *, writer: str) -> None:
        """Atomically bind ``name`` to ``value`` on behalf of step ``writer``."""
        with self._lock:
            owner = self._writers.get(name)
            if owner is not None and owner != writer:
                msg = f"Variable '{name}' already written by step '{owner}', not '{writer}'"
                raise VariableConflictError(msg)
            updated = dict(self._values)
            updated[name] = value
            self._values = MappingProxyType(updated)
            self._writers[name] = writer
        logger.debug(
            "Published variable '%s' from step '%s' (run %s)",
            name,
            writer,
            self.run_id,
            extra={"run_id": self.run_id, "step_id": writer},
        )

    def writer_of(self, name: str) -> str | None:
        """Step that wrote ``name``, or None for initial/unknown variables."""
        return self._writers.get(name)


def _resolve(value: Any, values: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        if value.startswith("$$"):
            return value[1:]
        if value.startswith("$"):
            try:
                ref = parse_reference(value)
            except ValueError:
                raise UnresolvedReferenceError(value.lstrip("$")) from None
            if ref.name not in values:
                raise UnresolvedReferenceError(ref.name)
            return resolve_path(values[ref.name], ref.path)
        return value
    if isinstance(value, dict):
        return {k: _resolve(v, values) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve(item, values) for item in value]
    if isinstance(value, tuple):
        return tuple(_resolve(item, values) for item in value)
    return value
