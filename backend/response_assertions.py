# -*- coding: utf-8 -*-
"""
Response Assertions
Field resolution and operator evaluation for API and scenario assertions
"""

import re
from typing import Any, Dict, List, Optional

from api_test_models import AssertionKind, AssertionResult, ComparisonOperator, ResponseAssertion


class _Missing:
    """Marker for a field path that does not resolve"""

    def __repr__(self):
        return "<missing>"


MISSING = _Missing()


def resolve_field_path(value: Any, path: Optional[str]) -> Any:
    """
    Walk a dot-notation path. `length` yields the size of arrays, strings
    and objects that have no key of that name, numeric segments index into
    arrays. Returns MISSING when any segment fails to resolve.
    """
    if not path:
        return value

    current = value
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment in current:
                current = current[segment]
            elif segment == "length":
                current = len(current)
            else:
                return MISSING
        elif isinstance(current, (list, tuple)):
            if segment == "length":
                current = len(current)
            elif segment.lstrip("-").isdigit() and -len(current) <= int(segment) < len(current):
                current = current[int(segment)]
            else:
                return MISSING
        elif isinstance(current, str) and segment == "length":
            current = len(current)
        else:
            return MISSING
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_number(value: Any) -> float:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        return float(value.strip())
    raise TypeError(f"{value!r} is not numeric")


def _equals(actual: Any, expected: Any, tolerance: Optional[float]) -> bool:
    if _is_number(actual) and _is_number(expected):
        if tolerance is not None:
            return abs(actual - expected) <= tolerance
        return actual == expected
    # Keep true/1 and false/0 distinct
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    return actual == expected


def compare_values(actual: Any, expected: Any, operator, tolerance: Optional[float] = None) -> bool:
    """
    Apply an operator to a resolved value. Raises TypeError or ValueError
    when the operands cannot be compared with that operator.
    """
    operator = ComparisonOperator(operator.value if hasattr(operator, "value") else operator)
    present = actual is not MISSING

    if operator == ComparisonOperator.EXISTS:
        return present and actual is not None
    if operator == ComparisonOperator.NOT_EXISTS:
        return not present or actual is None
    if not present:
        return False

    if operator == ComparisonOperator.EQUALS:
        return _equals(actual, expected, tolerance)
    if operator == ComparisonOperator.NOT_EQUALS:
        return not _equals(actual, expected, tolerance)
    if operator == ComparisonOperator.CONTAINS:
        if isinstance(actual, str):
            return str(expected) in actual
        if isinstance(actual, (list, tuple, dict)):
            return expected in actual
        return str(expected) in str(actual)
    if operator == ComparisonOperator.MATCHES:
        return re.search(str(expected), str(actual)) is not None

    left, right = _as_number(actual), _as_number(expected)
    if operator == ComparisonOperator.GT:
        return left > right
    if operator == ComparisonOperator.LT:
        return left < right
    if operator == ComparisonOperator.GTE:
        return left >= right
    return left <= right


def _header_lookup(headers: Dict[str, str], name: str) -> Any:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return MISSING


def evaluate_assertion(
    assertion: ResponseAssertion,
    status: int,
    headers: Dict[str, str],
    body: Any,
) -> AssertionResult:
    if assertion.kind == AssertionKind.STATUS:
        actual = status
    elif assertion.kind == AssertionKind.HEADER:
        actual = _header_lookup(headers, assertion.field)
    else:
        actual = resolve_field_path(body, assertion.field)

    found = actual is not MISSING
    recorded = actual if found else None

    try:
        passed = compare_values(actual, assertion.expected_value, assertion.operator, assertion.tolerance)
    except (TypeError, ValueError, re.error) as e:
        return AssertionResult(assertion=assertion, passed=False, actual_value=recorded, found=found,
                               message=f"Cannot compare with {assertion.operator.value}: {e}")

    message = None
    if not found and not passed:
        message = f"{assertion.kind.value.capitalize()} field '{assertion.field}' not found"
    elif not passed:
        message = f"Expected {assertion.operator.value} {assertion.expected_value!r}, got {recorded!r}"
    return AssertionResult(assertion=assertion, passed=passed, actual_value=recorded, found=found,
                           message=message)


def evaluate_assertions(
    assertions: List[ResponseAssertion],
    status: int,
    headers: Dict[str, str],
    body: Any,
) -> List[AssertionResult]:
    """Evaluate every assertion in order; failures never short-circuit"""
    return [evaluate_assertion(a, status, headers, body) for a in assertions]
