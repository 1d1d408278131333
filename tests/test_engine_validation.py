"""Tests for definition-time validation and planning."""

from __future__ import annotations

from typing import Any

import pytest

from stepflow.engine.errors import DefinitionError
from stepflow.engine.loader import parse_workflow
from stepflow.engine.validation import validate_workflow

CAPABILITIES = {"fetch", "analyze", "notify"}


def step(step_id: str, capability: str = "fetch", **kwargs: Any) -> dict[str, Any]:
    return {"id": step_id, "capability": capability, **kwargs}


def seq(group_id: str, *children: dict[str, Any]) -> dict[str, Any]:
    return {"type": "sequential", "id": group_id, "children": list(children)}


def par(group_id: str, *children: dict[str, Any]) -> dict[str, Any]:
    return {"type": "parallel", "id": group_id, "children": list(children)}


def validate(root: dict[str, Any], *, initial=(), **kwargs):
    definition = parse_workflow({"name": "test", "root": root})
    return validate_workflow(
        definition, capabilities=CAPABILITIES, initial_variables=initial, **kwargs
    )


def errors_of(root: dict[str, Any], **kwargs) -> list[str]:
    with pytest.raises(DefinitionError) as exc_info:
        validate(root, **kwargs)
    return exc_info.value.errors


# ── Valid workflows ──────────────────────────────────────────────────────────


class TestValidWorkflows:
    def test_sequential_data_flow(self):
        plan = validate(
            seq(
                "main",
                step("a", produces="report"),
                step("b", "analyze", inputs={"r": "$report"}, condition="$report.size > 0"),
            )
        )
        assert plan.definition.name == "test"
        assert plan.parallel_dependencies == {}

    def test_initial_variables_satisfy_references(self):
        plan = validate(step("a", inputs={"repo": "$repo.name"}), initial={"repo"})
        assert plan.initial_variables == frozenset({"repo"})

    def test_parallel_sibling_dependency(self):
        plan = validate(
            par(
                "fan",
                step("a", produces="x"),
                step("b", inputs={"v": "$x"}),
                step("c"),
            )
        )
        assert plan.dependencies_for("fan") == {"a": set(), "b": {"a"}, "c": set()}

    def test_nested_group_dependency(self):
        plan = validate(
            par(
                "fan",
                seq("left", step("a", produces="x"), step("a2")),
                seq("right", step("b", inputs={"v": "$x"})),
            )
        )
        assert plan.dependencies_for("fan")["right"] == {"left"}

    def test_fallback_may_read_available_variables(self):
        validate(
            seq(
                "main",
                step("a", produces="x"),
                step("b", inputs={"v": "$x"}, on_failure=step("b_fix", "notify", inputs={"v": "$x"})),
            )
        )

    def test_escaped_literal_is_not_a_reference(self):
        validate(step("a", inputs={"price": "$$5"}))

    def test_capability_check_skipped_without_registry(self):
        definition = parse_workflow({"name": "t", "root": step("a", "anything")})
        validate_workflow(definition)


# ── Errors ───────────────────────────────────────────────────────────────────


class TestValidationErrors:
    def test_duplicate_ids(self):
        errors = errors_of(seq("main", step("a"), step("a")))
        assert any("Duplicate node IDs" in e and "'a'" in e for e in errors)

    def test_duplicate_produces(self):
        errors = errors_of(seq("main", step("a", produces="x"), step("b", produces="x")))
        assert any("produced by more than one step" in e for e in errors)

    def test_fallback_cannot_reuse_parent_produces(self):
        errors = errors_of(step("a", produces="x", on_failure=step("a_fix", produces="x")))
        assert any("'x'" in e and "more than one step" in e for e in errors)

    def test_unknown_capability(self):
        errors = errors_of(step("a", "teleport"))
        assert errors == ["Step 'a' uses unknown capability 'teleport'. Available: ['analyze', 'fetch', 'notify']"]

    def test_condition_syntax(self):
        errors = errors_of(step("a", condition="$x >"))
        assert any("Invalid condition" in e for e in errors)

    def test_malformed_input_reference(self):
        errors = errors_of(step("a", inputs={"v": "$1bad"}))
        assert any("Malformed variable reference" in e for e in errors)

    def test_unresolved_reference(self):
        errors = errors_of(step("a", inputs={"v": "$nowhere"}))
        assert errors == ["Step 'a' references unresolved variable '$nowhere'"]

    def test_condition_reference_checked(self):
        errors = errors_of(step("a", condition="$flag == true"))
        assert errors == ["Step 'a' references unresolved variable '$flag'"]

    def test_reference_to_later_step(self):
        errors = errors_of(
            seq("main", step("a", inputs={"v": "$x"}), step("b", produces="x"))
        )
        assert errors == ["Step 'a' references unresolved variable '$x'"]

    def test_self_reference(self):
        errors = errors_of(step("a", produces="x", inputs={"v": "$x"}))
        assert errors == ["Step 'a' references its own output '$x'"]

    def test_parallel_cycle(self):
        errors = errors_of(
            par(
                "fan",
                step("a", produces="x", inputs={"v": "$y"}),
                step("b", produces="y", inputs={"v": "$x"}),
            )
        )
        assert len(errors) == 1
        assert "Cyclic variable dependency in parallel group 'fan'" in errors[0]

    def test_fallback_depth(self):
        root = step(
            "a",
            on_failure=step("b", on_failure=step("c", on_failure=step("d"))),
        )
        validate(root)  # depth 3 is allowed by default
        errors = errors_of(root, max_fallback_depth=2)
        assert errors == ["Step 'c': on_failure nesting exceeds max depth 2"]

    def test_all_errors_collected(self):
        with pytest.raises(DefinitionError) as exc_info:
            validate(
                seq(
                    "main",
                    step("a", "teleport"),
                    step("b", inputs={"v": "$missing"}),
                    step("c", condition="((("),
                )
            )
        assert len(exc_info.value.errors) == 3
        assert "3 definition errors" in str(exc_info.value)
