"""
rulemock Proxy Fallback & Recording

When no rule matches, requests can be forwarded to a real upstream. Textual
upstream responses are recorded as new rules in the service's first group
so the next identical request is served from the mock.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

import httpx

from ..common import base_content_type, is_textual_content_type
from .errors import UpstreamError
from .matcher import strip_prefix
from ..store import RuleRepository


# Hop-by-hop headers never relayed to the client
HOP_BY_HOP_HEADERS = {
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'te', 'trailers', 'transfer-encoding', 'upgrade', 'content-length',
}

# Recomputed by the client for the forwarded body
REQUEST_SKIP_HEADERS = {'host', 'content-length', 'transfer-encoding'}

RECORD_TAG = '[REC]'


@dataclass
class ProxiedResponse:
    """Upstream response captured byte-for-byte."""

    status_code: int
    headers: List[tuple] = field(default_factory=list)
    content: bytes = b''
    url: str = ''

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return None

    @property
    def content_type(self) -> str:
        return self.header('content-type') or ''

    def relay_headers(self) -> List[tuple]:
        """Raw header pairs to send back to the client, repeated headers kept."""
        return [
            (key.lower().encode('latin-1'), value.encode('latin-1'))
            for key, value in self.headers
            if key.lower() not in HOP_BY_HOP_HEADERS
        ]

    def text_for_recording(self) -> Optional[str]:
        """Decoded body, or None when the body is compressed or not UTF-8."""
        encoding = (self.header('content-encoding') or 'identity').lower()
        if encoding != 'identity':
            return None
        try:
            return self.content.decode('utf-8')
        except UnicodeDecodeError:
            return None


def build_target_url(target: str, path: str, query: str = '') -> str:
    """Append ``path`` (and ``query``) to the proxy target."""
    url = target.rstrip('/') + path
    if query:
        url = f"{url}?{query}"
    return url


class ProxyForwarder:
    """
    Forwards unmatched requests to a service's proxy target.

    Example:
        forwarder = ProxyForwarder(timeout=30.0)
        upstream = await forwarder.forward('http://api.local', 'GET', '/users', '', headers, b'')
    """

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize forwarder.

        Args:
            timeout: Upstream timeout in seconds
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        """
        self.timeout = timeout
        self.transport = transport
        self.logger = logging.getLogger("rulemock.proxy")

    async def forward(
        self,
        target: str,
        method: str,
        path: str,
        query: str,
        headers: List[tuple],
        body: bytes
    ) -> ProxiedResponse:
        """
        Send the request upstream and read the raw response.

        Args:
            target: Proxy target base URL
            method: HTTP method
            path: Remainder path after the service prefix
            query: Raw query string
            headers: Inbound header pairs (Host and framing headers are dropped)
            body: Raw inbound body, sent for methods other than GET/HEAD

        Returns:
            ProxiedResponse with the upstream status, headers and raw bytes

        Raises:
            UpstreamError: If the upstream can't be reached
        """
        url = build_target_url(target, path, query)
        forward_headers = [(k, v) for k, v in headers if k.lower() not in REQUEST_SKIP_HEADERS]
        content = body if method.upper() not in ('GET', 'HEAD') else None

        self.logger.info(f"Proxy {method} {path} -> {url}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                request = client.build_request(method, url, headers=forward_headers, content=content)
                upstream = await client.send(request, stream=True)
                try:
                    chunks = [chunk async for chunk in upstream.aiter_raw()]
                finally:
                    await upstream.aclose()
        except httpx.HTTPError as e:
            self.logger.warning(f"Proxy to {url} failed: {e}")
            raise UpstreamError(f"Proxy request failed: {e}")

        return ProxiedResponse(
            status_code=upstream.status_code,
            headers=list(upstream.headers.multi_items()),
            content=b''.join(chunks),
            url=url,
        )


class TrafficRecorder:
    """
    Turns proxied exchanges into rules in the service's first group.

    Recording is best-effort: failures are logged and never reach the client.
    """

    def __init__(self, repository: RuleRepository, limit: int = 50, enabled: bool = True):
        """
        Initialize recorder.

        Args:
            repository: Rule repository to write recorded rules to
            limit: Maximum recorded rules kept in a first group
            enabled: Turn recording off entirely when False
        """
        self.repository = repository
        self.limit = limit
        self.enabled = enabled
        self.logger = logging.getLogger("rulemock.proxy")

    def should_record(self, upstream: ProxiedResponse) -> bool:
        """Only textual (JSON or ``text/*``) responses are recorded."""
        return self.enabled and is_textual_content_type(upstream.content_type)

    def record(self, service_id: Any, method: str, path: str, upstream: ProxiedResponse) -> Optional[Dict[str, Any]]:
        """
        Append a rule built from a proxied exchange.

        Args:
            service_id: Owning service id
            method: Request method
            path: Remainder path after the service prefix
            upstream: The relayed upstream response

        Returns:
            The new rule, or None when nothing was recorded
        """
        try:
            return self._record(service_id, method, path, upstream)
        except Exception as e:
            self.logger.warning(f"Recording {method} {path} failed: {e}")
            return None

    def _record(self, service_id: Any, method: str, path: str, upstream: ProxiedResponse) -> Optional[Dict[str, Any]]:
        if not self.should_record(upstream):
            return None

        body = upstream.text_for_recording()
        if body is None:
            self.logger.debug(f"Skipping recording of {method} {path}: body is compressed or not UTF-8")
            return None

        services = self.repository.get_services()
        service = next((s for s in services if str(s.get('id')) == str(service_id)), None)
        if service is None or not service.get('groups'):
            return None

        group = service['groups'][0]
        children = group.setdefault('children', [])

        recorded = [r for r in children if r.get('recorded')]
        if len(recorded) >= self.limit:
            self.logger.info(f"Recording limit ({self.limit}) reached for service {service_id}")
            return None

        stripped = strip_prefix(path, group.get('subPrefix'))
        url = stripped.rest if stripped.ok else path
        method = method.upper()
        if any(r.get('method', '').upper() == method and r.get('url') == url for r in children):
            return None

        now = int(time.time() * 1000)
        rule = {
            'id': now,
            'name': f"{RECORD_TAG} {method} {url}",
            'active': True,
            'recorded': True,
            'method': method,
            'url': url,
            'delay': 0,
            'headers': [],
            'params': [],
            'responseHeaders': [],
            'responseMode': 'basic',
            'responseType': base_content_type(upstream.content_type) or 'application/json',
            'responseBasic': body,
            'responseAdvanced': '',
            'expectations': [],
            'createdAt': now,
            'updatedAt': now,
        }
        children.append(rule)
        self.repository.save_services(services)
        self.logger.info(f"Recorded {method} {url} into group {group.get('name') or group.get('id')}")
        return rule
