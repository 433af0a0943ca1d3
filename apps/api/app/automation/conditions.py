"""Flat AND-only predicate evaluation over event data.

Coercions follow the loose semantics rule authors expect from the UI: values are
compared after string or numeric coercion where the operator calls for it, and a
path that does not resolve yields ``UNDEFINED`` rather than ``None``.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable, Mapping
from typing import Any


logger = logging.getLogger("app.automation.conditions")


class _Undefined:
    __slots__ = ()

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED: Any = _Undefined()

_NUMERIC_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_RADIX_PREFIXES = {"0x": 16, "0o": 8, "0b": 2}


def resolve_path(data: Any, path: str) -> Any:
    current = data
    for segment in path.split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return UNDEFINED
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return UNDEFINED
            current = current[index]
        else:
            return UNDEFINED
    return current


def to_display_string(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, list):
        return ",".join("" if item is None or item is UNDEFINED else to_display_string(item) for item in value)
    if isinstance(value, Mapping):
        return "[object Object]"
    return str(value)


def to_number(value: Any) -> float:
    if value is UNDEFINED:
        return math.nan
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return _parse_numeric_string(value)
    if isinstance(value, list):
        if not value:
            return 0.0
        if len(value) == 1:
            return to_number(to_display_string(value[0]))
    return math.nan


def _parse_numeric_string(raw: str) -> float:
    text = raw.strip()
    if not text:
        return 0.0
    unsigned = text.lstrip("+-")
    if unsigned == "Infinity":
        return -math.inf if text.startswith("-") else math.inf
    prefix = text[:2].lower()
    if prefix in _RADIX_PREFIXES:
        try:
            return float(int(text[2:], _RADIX_PREFIXES[prefix]))
        except ValueError:
            return math.nan
    if _NUMERIC_RE.match(text):
        return float(text)
    return math.nan


def strict_equals(left: Any, right: Any) -> bool:
    if left is UNDEFINED or right is UNDEFINED:
        return left is right
    if left is None or right is None:
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return float(left) == float(right)
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    # Containers decoded from JSON are distinct objects and never strictly equal.
    return False


def _membership(field_value: Any, candidates: Iterable[Any]) -> bool:
    needle = to_display_string(field_value)
    return any(strict_equals(candidate, needle) for candidate in candidates)


def evaluate_condition(condition: Any, data: Mapping[str, Any]) -> bool:
    if not isinstance(condition, Mapping):
        return False
    field = condition.get("field")
    operator = condition.get("operator")
    if not isinstance(field, str) or not field or not isinstance(operator, str):
        return False

    expected = condition.get("value", UNDEFINED)
    actual = resolve_path(data, field)

    if operator == "equals":
        return strict_equals(actual, expected)
    if operator == "not_equals":
        return not strict_equals(actual, expected)
    if operator == "contains":
        return to_display_string(expected).lower() in to_display_string(actual).lower()
    if operator == "greater_than":
        return to_number(actual) > to_number(expected)
    if operator == "less_than":
        return to_number(actual) < to_number(expected)
    if operator == "in":
        return isinstance(expected, list) and _membership(actual, expected)
    if operator == "not_in":
        return isinstance(expected, list) and not _membership(actual, expected)
    return False


def evaluate_conditions(conditions: Any, data: Mapping[str, Any]) -> bool:
    if not conditions:
        return True
    if not isinstance(conditions, list):
        return False
    for condition in conditions:
        try:
            matched = evaluate_condition(condition, data)
        except Exception as exc:
            logger.warning("automation.condition.error", extra={"error": str(exc)})
            matched = False
        if not matched:
            return False
    return True
