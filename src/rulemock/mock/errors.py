"""
Error types raised by the mock engines.

Per-request errors carry the HTTP status they render as; lifecycle errors
are raised to whoever called start/stop/send.
"""

from typing import List, Dict, Any, Optional


class MockError(Exception):
    """Base class for errors rendered into a mock response."""

    status_code = 500

    def __init__(self, message: str, details: Optional[List[str]] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the ``{error, details?}`` response body."""
        body: Dict[str, Any] = {'error': self.message}
        if self.details:
            body['details'] = list(self.details)
        return body


class ClientError(MockError):
    """Malformed or unmatched request (4xx)."""

    status_code = 400


class UpstreamError(MockError):
    """Proxy target unreachable or failing."""

    status_code = 502


class RenderError(MockError):
    """Response could not be produced from the matched rule."""

    status_code = 500


class ScriptError(RenderError):
    """A response script failed to compile, load or run."""


class LifecycleError(Exception):
    """Listener start/stop/admin operation failed."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
