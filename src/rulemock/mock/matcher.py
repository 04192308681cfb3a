"""
rulemock Request Matcher

Resolves an inbound method + path to a rule inside a service.

Matching is layered:
- the service prefix is stripped from the request path
- each group's sub-prefix is stripped independently
- inside a group, an exact pass runs before a ``:param`` pass

Example:
    result = match_service(service, 'GET', '/api/users/42')

    if result.matched:
        print(result.rule['url'], result.params)   # /users/:id {'id': '42'}
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple

from ..common import normalize_path


@dataclass
class StripResult:
    """Outcome of stripping a prefix from a path."""

    ok: bool
    rest: str
    prefix: str = ""


@dataclass
class MatchResult:
    """Result of matching a request against a service."""

    matched: bool
    rule: Optional[Dict[str, Any]] = None
    group: Optional[Dict[str, Any]] = None
    params: Dict[str, str] = field(default_factory=dict)
    path: str = ""
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'matched': self.matched,
            'rule_id': self.rule.get('id') if self.rule else None,
            'group_id': self.group.get('id') if self.group else None,
            'params': dict(self.params),
            'path': self.path,
            'reason': self.reason,
        }


def normalize_prefix(prefix: Optional[str]) -> str:
    """
    Normalize a prefix to ``/segment`` form.

    Returns an empty string for an empty (or ``/``) prefix.
    """
    prefix = (prefix or '').strip()
    if not prefix:
        return ''
    prefix = normalize_path(prefix).rstrip('/')
    return prefix


def strip_prefix(path: str, prefix: Optional[str]) -> StripResult:
    """
    Strip ``prefix`` from the front of ``path``.

    Args:
        path: Request path (leading slash)
        prefix: Prefix as configured; may lack the leading slash or carry a trailing one

    Returns:
        StripResult with ``ok`` False when the path is outside the prefix
    """
    normalized = normalize_prefix(prefix)
    if not normalized:
        return StripResult(ok=True, rest=path, prefix='')

    if path == normalized:
        return StripResult(ok=True, rest='/', prefix=normalized)
    if path.startswith(normalized + '/'):
        return StripResult(ok=True, rest=path[len(normalized):], prefix=normalized)
    return StripResult(ok=False, rest=path, prefix=normalized)


def split_segments(path: str) -> List[str]:
    """Split a path on ``/`` dropping empty segments."""
    return [segment for segment in path.split('/') if segment]


def is_parameterized(url: str) -> bool:
    """True when any segment of ``url`` is a ``:name`` parameter."""
    return any(segment.startswith(':') for segment in split_segments(url))


def match_path_params(pattern: str, path: str) -> Optional[Dict[str, str]]:
    """
    Match a ``:param`` pattern against a concrete path.

    Args:
        pattern: Rule URL such as ``/users/:id/posts``
        path: Request remainder such as ``/users/42/posts``

    Returns:
        Extracted parameters, or None when the structure differs
    """
    pattern_parts = split_segments(pattern)
    path_parts = split_segments(path)

    if len(pattern_parts) != len(path_parts):
        return None

    params: Dict[str, str] = {}
    for expected, actual in zip(pattern_parts, path_parts):
        if expected.startswith(':'):
            params[expected[1:]] = actual
        elif expected != actual:
            return None
    return params


def _eligible(rule: Dict[str, Any], method: str) -> bool:
    return bool(rule.get('active')) and str(rule.get('method', '')).upper() == method


def find_rule(rules: List[Dict[str, Any]], method: str, path: str) -> Tuple[Optional[Dict[str, Any]], Dict[str, str]]:
    """
    Find the rule serving ``method`` + ``path`` within one group.

    Exact pass first (literal URLs only), then the parameterized pass in
    declaration order.

    Args:
        rules: Rules of a single group
        method: Upper-case HTTP method
        path: Remainder path after prefix stripping

    Returns:
        Tuple of (rule or None, extracted params)
    """
    method = method.upper()

    for rule in rules:
        if not _eligible(rule, method):
            continue
        url = normalize_path(rule.get('url'))
        if is_parameterized(url):
            continue
        if url == path:
            return rule, {}

    for rule in rules:
        if not _eligible(rule, method):
            continue
        url = normalize_path(rule.get('url'))
        if not is_parameterized(url):
            continue
        params = match_path_params(url, path)
        if params is not None:
            return rule, params

    return None, {}


def match_service(service: Dict[str, Any], method: str, path: str) -> MatchResult:
    """
    Match a request (already stripped of the service prefix) against a service.

    Groups are tried in declaration order; a group whose sub-prefix doesn't
    apply is skipped without failing the request.

    Args:
        service: Service document
        method: HTTP method
        path: Remainder path after the service prefix

    Returns:
        MatchResult describing the selected rule, group and params
    """
    method = method.upper()
    for group in service.get('groups') or []:
        stripped = strip_prefix(path, group.get('subPrefix'))
        if not stripped.ok:
            continue

        rule, params = find_rule(group.get('children') or [], method, stripped.rest)
        if rule is not None:
            return MatchResult(
                matched=True,
                rule=rule,
                group=group,
                params=params,
                path=stripped.rest,
                reason="Parameterized match" if params else "Exact match",
            )

    return MatchResult(matched=False, path=path, reason=f"No mock rule matched for {method} {path}")
