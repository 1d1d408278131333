"""Condition expressions evaluated against the variable store.

Supports:
    - References: ``$report``, ``$report.size``, ``$files[0].name``
    - Comparisons: ``==``, ``!=``, ``<``, ``<=``, ``>``, ``>=``, ``in``, ``not in``
    - Boolean logic: ``and`` / ``&&``, ``or`` / ``||``, ``not`` / ``!``
    - Literals: integers, floats, quoted strings, ``true``/``false``/``null``
      (Python spellings accepted), lists ``["a", "b"]``
    - Parentheses for grouping

No arbitrary code execution and no function calls. A bare value is tested
for truthiness. Parsed expressions are cached, and evaluation has no side
effects, so evaluating the same expression against the same snapshot
always gives the same answer.
"""

from __future__ import annotations

import functools
import logging
import operator
import re
from typing import Any, Callable, Mapping

from stepflow.engine.context import VariableReference, parse_reference, resolve_path
from stepflow.engine.errors import (
    ConditionSyntaxError,
    ConditionTypeError,
    UnboundVariableError,
)

logger = logging.getLogger("stepflow.engine.conditions")

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<number>-?\d+(?:\.\d+)?)
      | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<ref>\$[a-zA-Z_][a-zA-Z0-9_]*(?:\.[a-zA-Z_][a-zA-Z0-9_]*|\[\d+\])*)
      | (?P<op>==|!=|<=|>=|&&|\|\||<|>|!|\(|\)|\[|\]|,)
      | (?P<word>[a-zA-Z_][a-zA-Z0-9_]*)
    )
    """,
    re.VERBOSE,
)

_LITERAL_WORDS: dict[str, Any] = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
}

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda a, b: a in b,
    "not in": lambda a, b: a not in b,
}

# Expression tree nodes are plain tuples:
#   ("lit", value) | ("ref", VariableReference) | ("list", [nodes])
#   ("not", node) | ("and", [nodes]) | ("or", [nodes]) | ("cmp", op, lhs, rhs)
Expr = tuple


# ── Tokenizer ────────────────────────────────────────────────────────────────


def _tokenize(expression: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    text = expression.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise ConditionSyntaxError(expression, f"unexpected character at offset {pos}")
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))  # type: ignore[arg-type]
        pos = match.end()
    return tokens


# ── Parser ───────────────────────────────────────────────────────────────────


class _Parser:
    """Recursive-descent parser: or → and → not → comparison → operand."""

    def __init__(self, expression: str):
        self._expression = expression
        self._tokens = _tokenize(expression)
        self._pos = 0

    def parse(self) -> Expr:
        if not self._tokens:
            raise ConditionSyntaxError(self._expression, "empty expression")
        node = self._parse_or()
        if self._pos < len(self._tokens):
            raise ConditionSyntaxError(
                self._expression, f"unexpected token {self._tokens[self._pos][1]!r}"
            )
        return node

    def _peek(self) -> tuple[str, str] | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _accept(self, *values: str) -> str | None:
        tok = self._peek()
        if tok and tok[0] in ("op", "word") and tok[1] in values:
            self._pos += 1
            return tok[1]
        return None

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            tok = self._peek()
            found = repr(tok[1]) if tok else "end of expression"
            raise ConditionSyntaxError(self._expression, f"expected {value!r}, found {found}")

    def _parse_or(self) -> Expr:
        items = [self._parse_and()]
        while self._accept("or", "||"):
            items.append(self._parse_and())
        return items[0] if len(items) == 1 else ("or", items)

    def _parse_and(self) -> Expr:
        items = [self._parse_not()]
        while self._accept("and", "&&"):
            items.append(self._parse_not())
        return items[0] if len(items) == 1 else ("and", items)

    def _parse_not(self) -> Expr:
        if self._accept("not", "!"):
            return ("not", self._parse_not())
        return self._parse_comparison()

    def _parse_comparison(self) -> Expr:
        lhs = self._parse_operand()
        op = self._accept("==", "!=", "<=", ">=", "<", ">", "in")
        if op is None:
            # "not in" is two tokens; a lone "not" here is a syntax error
            tok = self._peek()
            if tok and tok == ("word", "not"):
                self._pos += 1
                self._expect("in")
                op = "not in"
            else:
                return lhs
        rhs = self._parse_operand()
        return ("cmp", op, lhs, rhs)

    def _parse_operand(self) -> Expr:
        tok = self._peek()
        if tok is None:
            raise ConditionSyntaxError(self._expression, "unexpected end of expression")
        kind, value = tok
        self._pos += 1

        if kind == "number":
            return ("lit", float(value) if "." in value else int(value))
        if kind == "string":
            return ("lit", _unquote(value))
        if kind == "ref":
            return ("ref", parse_reference(value))
        if kind == "word":
            if value in _LITERAL_WORDS:
                return ("lit", _LITERAL_WORDS[value])
            raise ConditionSyntaxError(
                self._expression,
                f"unknown identifier {value!r} (variables are written as ${value})",
            )
        if value == "(":
            node = self._parse_or()
            self._expect(")")
            return node
        if value == "[":
            items: list[Expr] = []
            if not self._accept("]"):
                items.append(self._parse_operand())
                while self._accept(","):
                    items.append(self._parse_operand())
                self._expect("]")
            return ("list", items)
        raise ConditionSyntaxError(self._expression, f"unexpected token {value!r}")


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


@functools.lru_cache(maxsize=512)
def parse_condition(expression: str) -> Expr:
    """Parse an expression into a tree. Raises ConditionSyntaxError."""
    return _Parser(expression).parse()


# ── Evaluation ───────────────────────────────────────────────────────────────


class ConditionEvaluator:
    """Evaluates condition expressions against a variable snapshot.

    Usage::

        evaluator = ConditionEvaluator()
        evaluator.evaluate("$report.size > 0", {"report": {"size": 5}})
        # → True
    """

    def evaluate(self, expression: str, variables: Mapping[str, Any]) -> bool:
        """Return the truth value of ``expression``.

        Raises:
            UnboundVariableError: a referenced root variable is not present.
            ConditionTypeError: an operator got incompatible operand kinds.
            ConditionSyntaxError: the expression does not parse.
        """
        tree = parse_condition(expression)
        return bool(self._eval(tree, variables))

    def references(self, expression: str) -> set[str]:
        """Root variable names an expression reads."""
        names: set[str] = set()
        _collect_refs(parse_condition(expression), names)
        return names

    def _eval(self, node: Expr, variables: Mapping[str, Any]) -> Any:
        kind = node[0]
        if kind == "lit":
            return node[1]
        if kind == "ref":
            ref: VariableReference = node[1]
            if ref.name not in variables:
                raise UnboundVariableError(ref.name)
            return resolve_path(variables[ref.name], ref.path)
        if kind == "list":
            return [self._eval(item, variables) for item in node[1]]
        if kind == "not":
            return not self._eval(node[1], variables)
        if kind == "and":
            return all(self._eval(item, variables) for item in node[1])
        if kind == "or":
            return any(self._eval(item, variables) for item in node[1])
        if kind == "cmp":
            _, op, lhs_node, rhs_node = node
            lhs = self._eval(lhs_node, variables)
            rhs = self._eval(rhs_node, variables)
            try:
                return _COMPARATORS[op](lhs, rhs)
            except TypeError as exc:
                msg = (
                    f"Cannot apply '{op}' to {type(lhs).__name__} and "
                    f"{type(rhs).__name__}: {exc}"
                )
                raise ConditionTypeError(msg) from exc
        msg = f"Unknown expression node {kind!r}"
        raise ValueError(msg)


def _collect_refs(node: Expr, names: set[str]) -> None:
    kind = node[0]
    if kind == "ref":
        names.add(node[1].name)
    elif kind in ("and", "or", "list"):
        for item in node[1]:
            _collect_refs(item, names)
    elif kind == "not":
        _collect_refs(node[1], names)
    elif kind == "cmp":
        _collect_refs(node[2], names)
        _collect_refs(node[3], names)


def evaluate(expression: str, variables: Mapping[str, Any]) -> bool:
    """Convenience wrapper around ``ConditionEvaluator().evaluate``."""
    return ConditionEvaluator().evaluate(expression, variables)
