"""Shared fixtures for rulemock tests."""

import pytest

from rulemock.store import MemoryDocumentStore, RuleRepository


def make_rule(url, method='GET', **overrides):
    """Build a rule document with editor defaults."""
    rule = {
        'id': abs(hash((method, url))) % 100000,
        'name': f"{method} {url}",
        'active': True,
        'method': method,
        'url': url,
        'delay': 0,
        'headers': [],
        'params': [],
        'responseHeaders': [],
        'responseMode': 'basic',
        'responseType': 'application/json',
        'responseBasic': '{}',
        'responseAdvanced': '',
        'expectations': [],
    }
    rule.update(overrides)
    return rule


def make_service(rules=None, groups=None, **overrides):
    """Build a service document; ``rules`` go into one default group."""
    service = {
        'id': 1,
        'name': 'Test service',
        'port': 4001,
        'prefix': '',
        'proxyEnabled': False,
        'proxyTarget': '',
        'groups': groups if groups is not None else [
            {'id': 10, 'name': 'Default', 'subPrefix': '', 'children': rules or []}
        ],
    }
    service.update(overrides)
    return service


@pytest.fixture
def repository():
    """Repository over an in-memory store."""
    return RuleRepository(MemoryDocumentStore())
