"""Tests for loading workflow definitions from dicts and YAML files."""

from __future__ import annotations

import textwrap

import pytest

from stepflow.engine.errors import DefinitionError
from stepflow.engine.loader import load_workflow, parse_workflow
from stepflow.engine.models import GroupDefinition, GroupType, StepDefinition


class TestParseWorkflow:
    def test_steps_shorthand(self):
        wf = parse_workflow(
            {
                "name": "review",
                "steps": [
                    {"id": "fetch", "capability": "fetch_report", "produces": "report"},
                    {"id": "notify", "capability": "post_comment", "inputs": {"body": "$report"}},
                ],
            }
        )
        assert isinstance(wf.root, GroupDefinition)
        assert wf.root.id == "main"
        assert wf.root.type == GroupType.SEQUENTIAL
        assert [c.id for c in wf.root.children] == ["fetch", "notify"]

    def test_explicit_root(self):
        wf = parse_workflow(
            {
                "name": "fanout",
                "description": "checks in parallel",
                "root": {
                    "type": "parallel",
                    "id": "checks",
                    "children": [
                        {"id": "lint", "capability": "run_linter"},
                        {"id": "test", "capability": "run_tests", "critical": True},
                    ],
                },
            }
        )
        assert wf.description == "checks in parallel"
        assert wf.root.is_parallel
        assert wf.root.children[1].critical is True

    def test_name_fallback(self):
        wf = parse_workflow({"steps": [{"id": "a", "capability": "x"}]}, name="from-file")
        assert wf.name == "from-file"

    def test_root_and_steps_conflict(self):
        with pytest.raises(DefinitionError, match="not both"):
            parse_workflow(
                {
                    "name": "x",
                    "root": {"id": "a", "capability": "x"},
                    "steps": [{"id": "b", "capability": "x"}],
                }
            )

    def test_validation_errors_become_definition_error(self):
        with pytest.raises(DefinitionError) as exc_info:
            parse_workflow({"name": "x", "steps": [{"id": "a"}]})
        assert any("capability" in e for e in exc_info.value.errors)

    def test_missing_name(self):
        with pytest.raises(DefinitionError) as exc_info:
            parse_workflow({"steps": [{"id": "a", "capability": "x"}]})
        assert any(e.startswith("name") for e in exc_info.value.errors)

    def test_not_a_mapping(self):
        with pytest.raises(DefinitionError, match="must be a mapping"):
            parse_workflow(["a", "b"])  # type: ignore[arg-type]


class TestLoadWorkflow:
    def test_load_yaml(self, tmp_path):
        path = tmp_path / "triage.yaml"
        path.write_text(
            textwrap.dedent(
                """
                description: Triage a new issue
                steps:
                  - id: classify
                    capability: classify_issue
                    inputs:
                      title: $issue.title
                    produces: labels
                    retry:
                      max_attempts: 3
                      delay: 500ms
                      backoff: exponential
                    timeout: 30s
                  - id: apply
                    capability: apply_labels
                    condition: $labels != null
                    inputs:
                      labels: $labels
                    on_failure:
                      id: apply_fallback
                      capability: notify
                """
            )
        )
        wf = load_workflow(path)
        assert wf.name == "triage"
        classify, apply = wf.root.children
        assert isinstance(classify, StepDefinition)
        assert classify.retry.max_attempts == 3
        assert classify.retry.delay == pytest.approx(0.5)
        assert classify.timeout == 30.0
        assert apply.condition == "$labels != null"
        assert apply.on_failure.id == "apply_fallback"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_workflow(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("steps: [unclosed\n")
        with pytest.raises(DefinitionError, match="Invalid YAML"):
            load_workflow(path)
