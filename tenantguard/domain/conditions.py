"""JSON condition dialect evaluated against a request context.

A condition is a JSON object. Each key is a dotted context path compared
either for equality or through an operator object::

    {"resource.owner_id": "${principal.id}"}
    {"department_id": {"in": "${principal.department_subtree}"}}
    {"$any": [{"amount": {"lt": 1000}}, {"principal.role_codes": {"contains": "cfo"}}]}

Empty conditions always hold. Anything malformed raises ``EvaluationError``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Mapping
from typing import Any

from tenantguard.domain.errors import EvaluationError

ConditionEvaluator = Callable[[str, Mapping[str, Any]], bool]

_TEMPLATE = re.compile(r"\$\{([^}]+)\}")
_MISSING = object()


def parse_condition(condition: str | None) -> dict[str, Any]:
    if condition is None or not condition.strip():
        return {}
    try:
        parsed = json.loads(condition)
    except ValueError as exc:
        raise EvaluationError(f"condition is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise EvaluationError("condition must be a JSON object")
    return parsed


def lookup(context: Mapping[str, Any], path: str) -> Any:
    current: Any = context
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def resolve_value(value: Any, context: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        whole = _TEMPLATE.fullmatch(value)
        if whole is not None:
            resolved = lookup(context, whole.group(1).strip())
            if resolved is _MISSING:
                raise EvaluationError(f"unresolved template variable: {value}")
            return resolved

        def _interpolate(match: re.Match[str]) -> str:
            resolved = lookup(context, match.group(1).strip())
            if resolved is _MISSING:
                raise EvaluationError(f"unresolved template variable: {match.group(0)}")
            return str(resolved)

        return _TEMPLATE.sub(_interpolate, value)
    if isinstance(value, list):
        return [resolve_value(item, context) for item in value]
    if isinstance(value, dict):
        return {key: resolve_value(item, context) for key, item in value.items()}
    return value


def _as_collection(value: Any, op: str) -> list[Any] | set[Any] | tuple[Any, ...] | frozenset[Any]:
    if not isinstance(value, list | tuple | set | frozenset):
        raise EvaluationError(f"operator {op!r} expects a list")
    return value


def _apply_operator(op: str, actual: Any, expected: Any) -> bool:
    try:
        if op == "eq":
            return bool(actual == expected)
        if op == "ne":
            return bool(actual != expected)
        if op == "gt":
            return bool(actual > expected)
        if op == "gte":
            return bool(actual >= expected)
        if op == "lt":
            return bool(actual < expected)
        if op == "lte":
            return bool(actual <= expected)
        if op == "in":
            return actual in _as_collection(expected, op)
        if op == "nin":
            return actual not in _as_collection(expected, op)
        if op == "contains":
            if actual is None:
                return False
            return expected in actual
        if op in ("starts_with", "startsWith"):
            return isinstance(actual, str) and isinstance(expected, str) and actual.startswith(expected)
    except TypeError as exc:
        raise EvaluationError(f"cannot apply {op!r} to {actual!r} and {expected!r}") from exc
    raise EvaluationError(f"unknown operator: {op!r}")


def _field_holds(field: str, clause: Any, context: Mapping[str, Any]) -> bool:
    actual = lookup(context, field)
    if actual is _MISSING:
        actual = None
    if isinstance(clause, dict):
        if not clause:
            raise EvaluationError(f"empty operator object for {field!r}")
        return all(_apply_operator(op, actual, resolve_value(value, context)) for op, value in clause.items())
    return _apply_operator("eq", actual, resolve_value(clause, context))


def check_condition(condition: Mapping[str, Any], context: Mapping[str, Any]) -> bool:
    for key, clause in condition.items():
        if key == "$all":
            if not isinstance(clause, list) or not all(isinstance(item, dict) for item in clause):
                raise EvaluationError("'$all' expects a list of objects")
            if not all(check_condition(item, context) for item in clause):
                return False
        elif key == "$any":
            if not isinstance(clause, list) or not all(isinstance(item, dict) for item in clause):
                raise EvaluationError("'$any' expects a list of objects")
            if not any(check_condition(item, context) for item in clause):
                return False
        elif key == "$not":
            if not isinstance(clause, dict):
                raise EvaluationError("'$not' expects an object")
            if check_condition(clause, context):
                return False
        elif key.startswith("$"):
            raise EvaluationError(f"unknown combinator: {key!r}")
        elif not _field_holds(key, clause, context):
            return False
    return True


def evaluate_condition(condition: str, context: Mapping[str, Any]) -> bool:
    """Default evaluator. Raises ``EvaluationError`` for malformed conditions."""
    return check_condition(parse_condition(condition), context)


def resolve_condition(condition: str | None, context: Mapping[str, Any]) -> dict[str, Any]:
    """Parse a condition and substitute its template values, keeping its shape."""
    parsed = parse_condition(condition)
    resolved = resolve_value(parsed, context)
    if not isinstance(resolved, dict):
        raise EvaluationError("condition must be a JSON object")
    return resolved


def validate_condition(condition: str | None) -> str | None:
    """Static shape check used when a policy is attached."""
    parsed = parse_condition(condition)
    if not parsed:
        return None
    _validate_shape(parsed)
    return json.dumps(parsed, sort_keys=True)


# "startsWith" is accepted as a spelling of "starts_with"
_OPERATORS = {"eq", "ne", "gt", "gte", "lt", "lte", "in", "nin", "contains", "starts_with", "startsWith"}


def _validate_shape(condition: Mapping[str, Any]) -> None:
    for key, clause in condition.items():
        if key in {"$all", "$any"}:
            if not isinstance(clause, list) or not all(isinstance(item, dict) for item in clause):
                raise EvaluationError(f"{key!r} expects a list of objects")
            for item in clause:
                _validate_shape(item)
        elif key == "$not":
            if not isinstance(clause, dict):
                raise EvaluationError("'$not' expects an object")
            _validate_shape(clause)
        elif key.startswith("$"):
            raise EvaluationError(f"unknown combinator: {key!r}")
        elif isinstance(clause, dict):
            if not clause:
                raise EvaluationError(f"empty operator object for {key!r}")
            unknown = sorted(set(clause) - _OPERATORS)
            if unknown:
                raise EvaluationError(f"unknown operator(s) for {key!r}: {unknown}")
