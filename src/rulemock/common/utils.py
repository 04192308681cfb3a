"""
rulemock Common Utilities

Path, content-type and value helpers shared by the HTTP and WebSocket engines.
"""

import json
import socket
import time
from pathlib import Path
from typing import List, Dict, Any, Optional

import yaml
from jsonpath_ng.ext import parse as jsonpath_parse


# Content types served from a local file instead of the rule's text body
BINARY_CONTENT_TYPES = {
    'application/pdf',
    'application/zip',
    'application/octet-stream',
    'video/mp4',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
}


def safe_json_parse(json_string: Any, default: Any = None) -> Any:
    """
    Safely parse JSON string with error handling.

    Args:
        json_string: JSON string (or bytes) to parse
        default: Default value to return if parsing fails

    Returns:
        Parsed JSON object, or default if parsing fails

    Example:
        body = safe_json_parse(rule.get('responseBasic'), default={})
    """
    if not json_string:
        return default

    try:
        return json.loads(json_string)
    except (json.JSONDecodeError, TypeError, ValueError):
        return default


def normalize_path(path: Optional[str]) -> str:
    """Ensure a path starts with a single leading slash."""
    path = (path or '').strip()
    if not path.startswith('/'):
        path = '/' + path
    return path


def stringify_value(value: Any) -> str:
    """
    Convert a request value to the string form used by comparisons.

    Booleans become ``true``/``false`` and containers become compact JSON,
    matching how the values read in the rule editor.
    """
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(',', ':'), ensure_ascii=False)
    return str(value)


def extract_body_value(body: Any, key: str) -> Optional[Any]:
    """
    Look up a value inside a decoded request body.

    Keys starting with ``$`` are JSONPath expressions; anything else is a
    dotted path where numeric segments index into lists (``data.items.0.id``).

    Args:
        body: Decoded request body (dict, list or scalar)
        key: JSONPath expression or dotted path

    Returns:
        The value found, or None when any segment is missing
    """
    if not key:
        return None

    if key.startswith('$'):
        try:
            matches = jsonpath_parse(key).find(body)
        except Exception:
            return None
        return matches[0].value if matches else None

    current = body
    for segment in key.split('.'):
        if isinstance(current, dict):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def base_content_type(content_type: Optional[str]) -> str:
    """Strip parameters (charset, boundary) from a Content-Type value."""
    return (content_type or '').split(';', 1)[0].strip().lower()


def is_textual_content_type(content_type: Optional[str]) -> bool:
    """True for JSON and ``text/*`` content types."""
    base = base_content_type(content_type)
    return base.startswith('text/') or 'json' in base


def is_binary_content_type(content_type: Optional[str]) -> bool:
    """True for the content types served from a configured local file."""
    return base_content_type(content_type) in BINARY_CONTENT_TYPES


def get_local_ip() -> str:
    """
    Best-effort LAN address of this machine.

    Returns:
        IPv4 address of the default route interface, or ``localhost``
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packets are sent for a UDP connect
        sock.connect(('10.255.255.255', 1))
        return sock.getsockname()[0]
    except OSError:
        return 'localhost'
    finally:
        sock.close()


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


class RulesFileLoader:
    """
    Loader for service rule files (JSON or YAML).

    Handles the layouts people keep rule files in:
    - Format 1: {"services": [...]}  (wrapped format)
    - Format 2: [...]                (direct list format)

    Example:
        loader = RulesFileLoader("services.yaml")
        services = loader.load()

        for service in services:
            print(service['name'])
    """

    def __init__(self, file_path: str):
        """
        Initialize rules loader.

        Args:
            file_path: Path to a .json, .yaml or .yml rules file
        """
        self.file_path = Path(file_path)

    def load(self) -> List[Dict[str, Any]]:
        """
        Load services from the file.

        Returns:
            List of service dictionaries

        Raises:
            FileNotFoundError: If the rules file doesn't exist
            ValueError: If the format is invalid or unrecognized
        """
        if not self.file_path.exists():
            raise FileNotFoundError(f"Rules file not found: {self.file_path}")

        with open(self.file_path, 'r', encoding='utf-8') as f:
            if self.file_path.suffix.lower() in ('.yaml', '.yml'):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)

        if isinstance(data, dict):
            if 'services' in data:
                return data['services']
            raise ValueError(
                f"Unexpected format in {self.file_path}. "
                f"Expected dict with 'services' key or a list of services. "
                f"Found keys: {list(data.keys())}"
            )
        elif isinstance(data, list):
            return data
        else:
            raise ValueError(
                f"Unexpected format in {self.file_path}. "
                f"Expected dict or list, got {type(data).__name__}"
            )

    def validate_service(self, service: Dict[str, Any]) -> bool:
        """
        Validate that a service has the fields a listener needs.

        Args:
            service: Service dictionary to validate

        Returns:
            True if the service has an id, a port and a groups list
        """
        return (
            'id' in service
            and 'port' in service
            and isinstance(service.get('groups', []), list)
        )
