"""
WebSocket message matching.

Rules are scanned in declared order and the first rule whose match type
holds for the inbound message wins. Unlike HTTP rules, matching looks at the
message text only, never at a path.
"""

import re
from typing import List, Dict, Any, Optional


MATCH_TYPES = ('exact', 'contains', 'regex', 'any')


def is_active(rule: Dict[str, Any]) -> bool:
    """A rule without an ``active`` flag counts as active."""
    return rule.get('active', True) is not False


def rule_matches(rule: Dict[str, Any], message: str) -> bool:
    """
    Test one rule against a message.

    Bad regex patterns and unknown match types never match.
    """
    match_type = rule.get('matchType') or 'exact'
    pattern = rule.get('matchPattern')
    pattern = '' if pattern is None else str(pattern)

    if match_type == 'any':
        return True
    if match_type == 'exact':
        return message == pattern
    if match_type == 'contains':
        return pattern in message
    if match_type == 'regex':
        try:
            return re.search(pattern, message) is not None
        except re.error:
            return False
    return False


def find_ws_rule(rules: Optional[List[Dict[str, Any]]], message: str) -> Optional[Dict[str, Any]]:
    """First active rule matching ``message``, or None."""
    for rule in rules or []:
        if is_active(rule) and rule_matches(rule, message):
            return rule
    return None
