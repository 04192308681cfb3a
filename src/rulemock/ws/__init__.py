"""
rulemock WebSocket Mock Module

Message-matched WebSocket mock servers with interaction logs and a live
client registry.
"""

from .matcher import MATCH_TYPES, find_ws_rule, rule_matches
from .server import WsMockServerManager, WsRequest, WsClient, WsServerState

__all__ = [
    'MATCH_TYPES',
    'find_ws_rule',
    'rule_matches',
    'WsMockServerManager',
    'WsRequest',
    'WsClient',
    'WsServerState',
]
