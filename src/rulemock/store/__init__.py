"""
rulemock Rule Store

Whole-document persistence for services, WebSocket servers and templates.
"""

from .documents import DocumentStore, MemoryDocumentStore, JsonFileDocumentStore, ConflictError
from .repository import RuleRepository, SERVICES_KEY, WS_SERVERS_KEY, TEMPLATES_KEY

__all__ = [
    'DocumentStore',
    'MemoryDocumentStore',
    'JsonFileDocumentStore',
    'ConflictError',
    'RuleRepository',
    'SERVICES_KEY',
    'WS_SERVERS_KEY',
    'TEMPLATES_KEY',
]
