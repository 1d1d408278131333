"""Workflow definition loading from YAML files and plain dicts.

Two layouts are accepted::

    name: review
    root:
      type: sequential
      id: main
      children: [...]

or the shorthand, a top-level ``steps:`` list that becomes a sequential
root group with id ``main``::

    name: review
    steps:
      - id: fetch
        capability: fetch_report
        produces: report
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from stepflow.engine.errors import DefinitionError
from stepflow.engine.models import WorkflowDefinition

logger = logging.getLogger("stepflow.engine.loader")

SHORTHAND_ROOT_ID = "main"


def parse_workflow(data: Mapping[str, Any], *, name: str | None = None) -> WorkflowDefinition:
    """Build a ``WorkflowDefinition`` from parsed YAML/JSON data.

    Args:
        data: The raw mapping.
        name: Workflow name to use when ``data`` has none.

    Raises:
        DefinitionError: the data does not describe a valid workflow. Every
            pydantic validation problem becomes one entry in ``errors``.
    """
    if not isinstance(data, Mapping):
        raise DefinitionError(f"Workflow definition must be a mapping, got {type(data).__name__}")

    raw = dict(data)
    if name and "name" not in raw:
        raw["name"] = name

    if "steps" in raw:
        if "root" in raw:
            raise DefinitionError("Workflow may declare 'root' or 'steps', not both")
        raw["root"] = {
            "type": "sequential",
            "id": SHORTHAND_ROOT_ID,
            "children": raw.pop("steps"),
        }

    try:
        return WorkflowDefinition.model_validate(raw)
    except ValidationError as exc:
        raise DefinitionError(_format_validation_errors(exc)) from exc


def load_workflow(path: str | Path) -> WorkflowDefinition:
    """Load a workflow definition from a YAML file.

    The file stem is used as the workflow name when the file does not set one.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        DefinitionError: If the content is not a valid workflow.
    """
    workflow_path = Path(path)
    if not workflow_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {workflow_path}")

    with open(workflow_path) as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise DefinitionError(f"Invalid YAML in {workflow_path}: {exc}") from exc

    definition = parse_workflow(raw, name=workflow_path.stem)
    logger.info(
        "Loaded workflow '%s' from %s (%d steps)",
        definition.name,
        workflow_path,
        sum(1 for _ in definition.iter_steps()),
    )
    return definition


def _format_validation_errors(exc: ValidationError) -> list[str]:
    errors = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        message = err.get("msg", "invalid value")
        errors.append(f"{location}: {message}" if location else message)
    return errors
