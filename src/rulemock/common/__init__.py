"""
rulemock Common Utilities

Shared helpers used across rulemock modules.
"""

from .serving import (
    EmbeddedServer,
    PortInUseError,
    RunningServer,
    bind_socket,
    check_port,
)
from .utils import (
    RulesFileLoader,
    safe_json_parse,
    normalize_path,
    stringify_value,
    extract_body_value,
    base_content_type,
    is_textual_content_type,
    is_binary_content_type,
    get_local_ip,
    now_ms,
)

__all__ = [
    'EmbeddedServer',
    'PortInUseError',
    'RunningServer',
    'bind_socket',
    'check_port',
    'RulesFileLoader',
    'safe_json_parse',
    'normalize_path',
    'stringify_value',
    'extract_body_value',
    'base_content_type',
    'is_textual_content_type',
    'is_binary_content_type',
    'get_local_ip',
    'now_ms',
]
