"""
Condition evaluation for conditional responses (expectations).

A condition reads one value from the request (query, header, body or path
parameter) and compares it with an operator. Evaluation never raises: bad
regex patterns and non-numeric comparisons simply don't match.
"""

import math
import re
from typing import List, Dict, Any, Optional

from ..common import extract_body_value, stringify_value


OPERATORS = ('equals', 'contains', 'regex', 'exists', 'gt', 'lt')
SOURCES = ('query', 'header', 'body', 'pathParam')


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def lookup_value(source: str, key: str, request: Any) -> Optional[Any]:
    """
    Read the value a condition refers to.

    Args:
        source: One of query, header, body, pathParam
        key: Parameter name, header name or body path
        request: Request view with ``query``, ``headers``, ``body`` and ``params``

    Returns:
        The value, or None when absent
    """
    if source == 'query':
        return _first((request.query or {}).get(key))
    if source == 'header':
        return (request.headers or {}).get((key or '').lower())
    if source == 'body':
        return extract_body_value(request.body, key)
    if source == 'pathParam':
        return (request.params or {}).get(key)
    return None


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def evaluate_condition(condition: Dict[str, Any], request: Any) -> bool:
    """
    Evaluate one condition against a request.

    Args:
        condition: ``{source, key, operator, value}``
        request: Request view

    Returns:
        True when the condition holds
    """
    operator = condition.get('operator', 'equals')
    expected = condition.get('value')
    expected = '' if expected is None else str(expected)
    actual = lookup_value(condition.get('source', 'query'), condition.get('key', ''), request)

    if operator == 'exists':
        return actual is not None

    if actual is None:
        return False

    actual_text = stringify_value(actual)

    if operator == 'equals':
        return actual_text == expected
    if operator == 'contains':
        return expected in actual_text
    if operator == 'regex':
        try:
            return re.search(expected, actual_text) is not None
        except re.error:
            return False
    if operator in ('gt', 'lt'):
        left = _to_number(actual)
        right = _to_number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == 'gt' else left < right

    return False


def expectation_matches(expectation: Dict[str, Any], request: Any) -> bool:
    """All conditions of an expectation must hold; an empty list never matches."""
    conditions = expectation.get('conditions') or []
    if not conditions:
        return False
    return all(evaluate_condition(condition, request) for condition in conditions)


def find_expectation(expectations: List[Dict[str, Any]], request: Any) -> Optional[Dict[str, Any]]:
    """Return the first expectation whose conditions all hold, in declaration order."""
    for expectation in expectations or []:
        if expectation_matches(expectation, request):
            return expectation
    return None
