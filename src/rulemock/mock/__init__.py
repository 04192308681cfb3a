"""
rulemock Mock Server Module

Rule-driven HTTP mock listeners.

This module provides:
- Per-service FastAPI listeners and their manager
- Prefix stripping and path matching
- Conditional response resolution
- Sandboxed response scripts and data templates
- Proxy fallback with recording
"""

from .server import (
    MockConfig,
    MockMetrics,
    MockEngine,
    ServiceListener,
    create_service_app,
)
from .manager import MockServerManager
from .matcher import MatchResult, StripResult, strip_prefix, find_rule, match_service
from .conditions import evaluate_condition, find_expectation
from .resolver import ResponseResolver, ResponseDescriptor, resolve_descriptor
from .sandbox import ScriptSandbox, ScriptRequest
from .template import DataTemplate
from .proxy import ProxyForwarder, TrafficRecorder, ProxiedResponse
from .errors import (
    MockError,
    ClientError,
    UpstreamError,
    RenderError,
    ScriptError,
    LifecycleError,
)

__all__ = [
    # Server
    'MockConfig',
    'MockMetrics',
    'MockEngine',
    'ServiceListener',
    'create_service_app',
    'MockServerManager',

    # Matching
    'MatchResult',
    'StripResult',
    'strip_prefix',
    'find_rule',
    'match_service',
    'evaluate_condition',
    'find_expectation',

    # Responses
    'ResponseResolver',
    'ResponseDescriptor',
    'resolve_descriptor',
    'ScriptSandbox',
    'ScriptRequest',
    'DataTemplate',

    # Proxy
    'ProxyForwarder',
    'TrafficRecorder',
    'ProxiedResponse',

    # Errors
    'MockError',
    'ClientError',
    'UpstreamError',
    'RenderError',
    'ScriptError',
    'LifecycleError',
]
