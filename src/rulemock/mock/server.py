"""
rulemock Mock Server

FastAPI application served by each running mock service.

Every request goes through one catch-all handler that runs the resolution
pipeline:
- strip the service prefix
- re-read the service from the rule store
- match a rule (groups, exact pass, ``:param`` pass)
- validate required headers and query params
- simulate the configured delay
- resolve and render the response
- fall back to the proxy target (and record) when nothing matched
"""

from __future__ import annotations  # Enable forward references for type hints

import asyncio
import random
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Any, Optional
from urllib.parse import parse_qsl
import logging

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.background import BackgroundTask

from ..common import base_content_type, safe_json_parse
from ..store import RuleRepository
from .errors import ClientError, MockError
from .matcher import match_service, strip_prefix
from .proxy import ProxyForwarder, TrafficRecorder
from .resolver import ResponseResolver
from .sandbox import ScriptSandbox, ScriptRequest
from .template import DataTemplate


ALL_METHODS = ['GET', 'POST', 'PUT', 'DELETE', 'PATCH', 'HEAD', 'OPTIONS']


@dataclass
class MockConfig:
    """Configuration for mock server behavior."""

    # Rule store
    store_path: str = "rulemock-db.json"

    # Server options
    bind_host: str = "0.0.0.0"
    admin_host: str = "0.0.0.0"
    admin_port: int = 3000
    log_level: str = "info"
    verbose_mode: bool = False  # Print one line per request to the console

    # Proxy recording
    recording_enabled: bool = True
    recording_limit: int = 50  # Recorded rules kept in a service's first group
    proxy_timeout: float = 30.0  # Seconds

    # WebSocket servers
    ws_log_capacity: int = 200  # Log entries kept per ws server

    # Data generation
    faker_locale: str = "en_US"
    faker_seed: Optional[int] = None

    # Scripts
    script_entry: str = "main"

    # Request log kept per running service
    request_log_limit: int = 100


@dataclass
class MockMetrics:
    """Track per-listener request metrics."""

    total_requests: int = 0
    matched_requests: int = 0
    unmatched_requests: int = 0
    proxied_requests: int = 0
    validation_failures: int = 0
    errors: int = 0
    start_time: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        uptime_seconds = (datetime.now() - datetime.fromisoformat(self.start_time)).total_seconds()
        return {
            'total_requests': self.total_requests,
            'matched_requests': self.matched_requests,
            'unmatched_requests': self.unmatched_requests,
            'proxied_requests': self.proxied_requests,
            'validation_failures': self.validation_failures,
            'errors': self.errors,
            'match_rate': round((self.matched_requests / self.total_requests * 100) if self.total_requests > 0 else 0, 2),
            'uptime_seconds': round(uptime_seconds, 2),
            'start_time': self.start_time
        }


@dataclass
class ServiceListener:
    """
    Runtime state of one running service.

    ``port`` and ``prefix`` are the values captured at start time; the
    prefix can be updated in place by restarting on the same port.
    """

    service_id: str
    port: int
    prefix: str = ""
    running: Any = None
    metrics: MockMetrics = field(default_factory=MockMetrics)
    request_log: deque = field(default_factory=lambda: deque(maxlen=100))

    def status(self) -> Dict[str, Any]:
        return {'running': True, 'port': self.port, 'prefix': self.prefix}


def parse_query(request: Request) -> Dict[str, Any]:
    """Query params as a dict; repeated keys hold a list."""
    query: Dict[str, Any] = {}
    for key, value in request.query_params.multi_items():
        if key in query:
            existing = query[key]
            query[key] = existing + [value] if isinstance(existing, list) else [existing, value]
        else:
            query[key] = value
    return query


def decode_body(content_type: Optional[str], raw: bytes) -> Any:
    """
    Decode a request body by content family.

    JSON is parsed (malformed JSON stays text), urlencoded forms become a
    dict, ``text/*`` and XML become a string, and anything else is ``{}``.
    """
    if not raw:
        return {}

    base = base_content_type(content_type)
    if 'json' in base:
        text = raw.decode('utf-8', errors='replace')
        parsed = safe_json_parse(text, default=None)
        return parsed if parsed is not None else text
    if base == 'application/x-www-form-urlencoded':
        form: Dict[str, Any] = {}
        for key, value in parse_qsl(raw.decode('utf-8', errors='replace'), keep_blank_values=True):
            if key in form:
                existing = form[key]
                form[key] = existing + [value] if isinstance(existing, list) else [existing, value]
            else:
                form[key] = value
        return form
    if base.startswith('text/') or base == 'application/xml':
        return raw.decode('utf-8', errors='replace')
    return {}


def validate_request(rule: Dict[str, Any], headers: Dict[str, str], query: Dict[str, Any]) -> List[str]:
    """
    Check required headers and query params declared on a rule.

    Returns:
        One message per missing field (empty when valid)
    """
    missing = []
    for header in rule.get('headers') or []:
        key = header.get('key')
        if header.get('required') and key and not headers.get(key.lower()):
            missing.append(f"Missing header: {key}")
    for param in rule.get('params') or []:
        key = param.get('key')
        if param.get('required') and key and not query.get(key):
            missing.append(f"Missing query param: {key}")
    return missing


def compute_delay_ms(rule: Dict[str, Any]) -> int:
    """
    Delay for a rule in milliseconds.

    ``delayMax > delay`` picks a random integer in ``[delay, delayMax)``;
    otherwise the delay is exactly ``delay``.
    """
    try:
        delay = max(int(rule.get('delay') or 0), 0)
        delay_max = max(int(rule.get('delayMax') or 0), 0)
    except (TypeError, ValueError):
        return 0
    if delay_max > delay:
        return random.randint(delay, delay_max - 1)
    return delay


class MockEngine:
    """
    Runs the request resolution pipeline for every service listener.

    One engine is shared by all listeners; each request carries its
    listener so the engine knows which service and prefix apply.

    Example:
        engine = MockEngine(repository, MockConfig())
        app = create_service_app(ServiceListener('1', 4001), engine)
    """

    def __init__(
        self,
        repository: RuleRepository,
        config: Optional[MockConfig] = None,
        resolver: Optional[ResponseResolver] = None,
        forwarder: Optional[ProxyForwarder] = None,
        recorder: Optional[TrafficRecorder] = None
    ):
        """
        Initialize engine.

        Args:
            repository: Rule repository read on every request
            config: Optional MockConfig
            resolver: Optional ResponseResolver (will create if None)
            forwarder: Optional ProxyForwarder (will create if None)
            recorder: Optional TrafficRecorder (will create if None)
        """
        self.repository = repository
        self.config = config or MockConfig()

        self.logger = logging.getLogger("rulemock.mock")
        self.logger.setLevel(getattr(logging, self.config.log_level.upper()))

        if resolver is None:
            template = DataTemplate(locale=self.config.faker_locale, seed=self.config.faker_seed)
            sandbox = ScriptSandbox(template, entry=self.config.script_entry)
            resolver = ResponseResolver(sandbox, template)
        self.resolver = resolver
        self.forwarder = forwarder or ProxyForwarder(timeout=self.config.proxy_timeout)
        self.recorder = recorder or TrafficRecorder(
            repository,
            limit=self.config.recording_limit,
            enabled=self.config.recording_enabled
        )

    async def handle(self, request: Request, listener: ServiceListener) -> Response:
        """
        Handle one request for ``listener``.

        Never raises: every failure becomes an error response for this
        request only.
        """
        start_time = time.time()
        method = request.method.upper()
        path = request.url.path

        if path == '/':
            return PlainTextResponse(
                f"Mock service {listener.service_id} is running on port {listener.port}"
            )

        listener.metrics.total_requests += 1
        entry: Dict[str, Any] = {'mode': 'mock'}

        try:
            response = await self._resolve(request, listener, method, path, entry)
        except MockError as e:
            if e.status_code >= 500:
                listener.metrics.errors += 1
                self.logger.error(f"[{listener.service_id}] {method} {path} failed: {e.message}")
            else:
                self.logger.info(f"[{listener.service_id}] {method} {path} -> {e.status_code} {e.message}")
            response = JSONResponse(content=e.to_dict(), status_code=e.status_code)
        except Exception as e:
            listener.metrics.errors += 1
            self.logger.exception(f"[{listener.service_id}] Unexpected error handling {method} {path}")
            response = JSONResponse(content={'error': f"Internal mock error: {e}"}, status_code=500)

        elapsed_ms = (time.time() - start_time) * 1000
        self._log_request(listener, method, str(request.url), response.status_code, elapsed_ms, entry)
        return response

    async def _resolve(
        self,
        request: Request,
        listener: ServiceListener,
        method: str,
        path: str,
        entry: Dict[str, Any]
    ) -> Response:
        stripped = strip_prefix(path, listener.prefix)
        if not stripped.ok:
            listener.metrics.unmatched_requests += 1
            raise ClientError(f"Path must start with prefix: {stripped.prefix}", status_code=404)

        service = self.repository.find_service(listener.service_id)
        if service is None:
            raise ClientError(f"Service {listener.service_id} not found in rule store", status_code=404)

        raw_body = await request.body()
        headers = {k.lower(): v for k, v in request.headers.items()}
        query = parse_query(request)

        match = match_service(service, method, stripped.rest)
        if not match.matched:
            listener.metrics.unmatched_requests += 1
            target = (service.get('proxyTarget') or '').strip()
            if service.get('proxyEnabled') and target:
                entry['mode'] = 'proxy'
                return await self._proxy(request, listener, method, stripped.rest, target, raw_body)
            raise ClientError(match.reason, status_code=404)

        rule = match.rule
        listener.metrics.matched_requests += 1
        entry.update({
            'ruleId': rule.get('id'),
            'ruleName': rule.get('name'),
            'groupName': match.group.get('name') if match.group else None,
        })
        self.logger.info(f"[{listener.service_id}] Hit: {method} {stripped.rest} ({match.reason})")

        missing = validate_request(rule, headers, query)
        if missing:
            listener.metrics.validation_failures += 1
            raise ClientError("Validation failed", details=missing, status_code=400)

        delay_ms = compute_delay_ms(rule)
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)

        view = ScriptRequest(
            method=method,
            path=path,
            query=query,
            headers=headers,
            body=decode_body(headers.get('content-type'), raw_body),
            params=match.params,
        )
        return await self.resolver.respond(rule, view)

    async def _proxy(
        self,
        request: Request,
        listener: ServiceListener,
        method: str,
        path: str,
        target: str,
        raw_body: bytes
    ) -> Response:
        upstream = await self.forwarder.forward(
            target, method, path, request.url.query, request.headers.items(), raw_body
        )
        listener.metrics.proxied_requests += 1

        response = Response(content=upstream.content, status_code=upstream.status_code)
        response.raw_headers.extend(upstream.relay_headers())

        if self.recorder.should_record(upstream):
            response.background = BackgroundTask(
                self.recorder.record, listener.service_id, method, path, upstream
            )
        return response

    def _log_request(
        self,
        listener: ServiceListener,
        method: str,
        url: str,
        status: int,
        elapsed_ms: float,
        entry: Dict[str, Any]
    ) -> None:
        """Append to the listener's request log (FIFO with limit)."""
        if listener.request_log.maxlen != self.config.request_log_limit:
            listener.request_log = deque(listener.request_log, maxlen=self.config.request_log_limit)

        entry.update({
            'id': int(time.time() * 1000000),
            'timestamp': int(time.time() * 1000),
            'method': method,
            'url': url,
            'status': status,
            'duration': round(elapsed_ms, 2),
        })
        listener.request_log.append(entry)

        if self.config.verbose_mode:
            status_emoji = "✓" if 200 <= status < 300 else "✗"
            print(f"[{datetime.now().strftime('%H:%M:%S')}] {status_emoji} {method} {url} -> {status} ({elapsed_ms:.1f}ms)")


def create_service_app(listener: ServiceListener, engine: MockEngine) -> FastAPI:
    """
    Create the FastAPI application for one service listener.

    Args:
        listener: Listener state (service id, captured port and prefix)
        engine: Shared resolution engine

    Returns:
        FastAPI app with CORS and a single catch-all route
    """
    app = FastAPI(
        title=f"rulemock service {listener.service_id}",
        docs_url=None,
        redoc_url=None,
        openapi_url=None
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=['*'],
        allow_methods=['*'],
        allow_headers=['*'],
    )

    @app.api_route('/{full_path:path}', methods=ALL_METHODS, include_in_schema=False)
    async def catch_all(request: Request):
        """Run the resolution pipeline."""
        return await engine.handle(request, listener)

    return app
