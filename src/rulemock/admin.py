"""
rulemock Admin API

FastAPI app used by editors and scripts to manage rule documents and to
start/stop mock listeners. All routes live under ``/_admin``.
"""

import contextlib
import logging
from typing import List, Dict, Any, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .common import check_port, get_local_ip
from .mock import LifecycleError, MockConfig, MockServerManager
from .store import RuleRepository
from .ws import WsMockServerManager


ADMIN_PREFIX = "/_admin"


async def _read_json(request: Request) -> Any:
    """Request body as JSON, or an empty dict when absent or malformed."""
    try:
        return await request.json()
    except ValueError:
        return {}


def _list_payload(body: Any, key: str) -> Optional[List[Any]]:
    """Accept either a bare list or ``{key: [...]}``."""
    if isinstance(body, dict):
        body = body.get(key)
    return body if isinstance(body, list) else None


def _require(body: Dict[str, Any], field: str) -> Any:
    value = body.get(field) if isinstance(body, dict) else None
    if value is None or value == '':
        raise LifecycleError(f"Missing field: {field}", status_code=400)
    return value


class AdminServer:
    """
    Admin API over the rule store and both listener managers.

    Example:
        admin = AdminServer(repository, MockConfig(admin_port=3000))
        admin.start()
    """

    def __init__(
        self,
        repository: RuleRepository,
        config: Optional[MockConfig] = None,
        manager: Optional[MockServerManager] = None,
        ws_manager: Optional[WsMockServerManager] = None,
        autostart: bool = False
    ):
        """
        Initialize admin server.

        Args:
            repository: Rule repository
            config: Optional MockConfig
            manager: HTTP listener manager (will create if None)
            ws_manager: WebSocket server manager (will create if None)
            autostart: Start every stored service and ws server on startup
        """
        self.repository = repository
        self.config = config or MockConfig()
        self.manager = manager or MockServerManager(repository, self.config)
        self.ws_manager = ws_manager or WsMockServerManager(
            repository, self.config, sandbox=self.manager.engine.resolver.sandbox
        )
        self.autostart = autostart
        self.logger = logging.getLogger("rulemock.manager")
        self.app = self._create_app()

    async def start_all(self) -> None:
        """Start every stored service and ws server, logging failures."""
        for service in self.repository.get_services():
            try:
                await self.manager.start(service.get('id'), int(service.get('port') or 0), service.get('prefix'))
            except LifecycleError as e:
                self.logger.error(f"Autostart of service {service.get('id')} failed: {e.message}")
        for ws_server in self.repository.get_ws_servers():
            try:
                await self.ws_manager.start(ws_server.get('id'))
            except LifecycleError as e:
                self.logger.error(f"Autostart of ws server {ws_server.get('id')} failed: {e.message}")

    async def stop_all(self) -> None:
        await self.manager.stop_all()
        await self.ws_manager.stop_all()

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        if self.autostart:
            await self.start_all()
        yield
        await self.stop_all()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application with routes."""
        app = FastAPI(
            title="rulemock Admin",
            description="Manage mock rules and listeners",
            version="1.0.0",
            lifespan=self._lifespan
        )
        app.add_middleware(
            CORSMiddleware,
            allow_origins=['*'],
            allow_methods=['*'],
            allow_headers=['*'],
        )

        @app.exception_handler(LifecycleError)
        async def lifecycle_error(request: Request, exc: LifecycleError):
            return JSONResponse(content={'error': exc.message}, status_code=exc.status_code)

        # Documents

        @app.get(f"{ADMIN_PREFIX}/services")
        async def get_services():
            return JSONResponse(content=self.repository.get_services())

        @app.post(f"{ADMIN_PREFIX}/services")
        async def save_services(request: Request):
            """Replace the whole services list."""
            services = _list_payload(await _read_json(request), 'services')
            if services is None:
                raise LifecycleError("Expected a list of services", status_code=400)
            self.repository.save_services(services)
            return JSONResponse(content={'status': 'saved', 'count': len(services)})

        @app.get(f"{ADMIN_PREFIX}/templates")
        async def get_templates():
            return JSONResponse(content=self.repository.get_templates())

        @app.post(f"{ADMIN_PREFIX}/templates")
        async def save_templates(request: Request):
            templates = _list_payload(await _read_json(request), 'templates')
            if templates is None:
                raise LifecycleError("Expected a list of templates", status_code=400)
            self.repository.save_templates(templates)
            return JSONResponse(content={'status': 'saved', 'count': len(templates)})

        @app.get(f"{ADMIN_PREFIX}/ws/servers")
        async def get_ws_servers():
            return JSONResponse(content=self.repository.get_ws_servers())

        @app.post(f"{ADMIN_PREFIX}/ws/servers")
        async def save_ws_servers(request: Request):
            servers = _list_payload(await _read_json(request), 'servers')
            if servers is None:
                raise LifecycleError("Expected a list of ws servers", status_code=400)
            self.repository.save_ws_servers(servers)
            return JSONResponse(content={'status': 'saved', 'count': len(servers)})

        # HTTP services

        @app.post(f"{ADMIN_PREFIX}/service/start")
        async def start_service(request: Request):
            """
            Start a service listener.

            POST body: {"serviceId": ..., "port"?: int, "prefix"?: str}
            Port and prefix default to the stored service's.
            """
            body = await _read_json(request)
            service_id = _require(body, 'serviceId')
            service = self.repository.find_service(service_id)
            if service is None:
                raise LifecycleError(f"Service {service_id} not found", status_code=404)

            port = body.get('port', service.get('port'))
            prefix = body.get('prefix', service.get('prefix'))
            try:
                port = int(port or 0)
            except (TypeError, ValueError):
                raise LifecycleError(f"Invalid port: {port}", status_code=400)

            bound = await self.manager.start(service_id, port, prefix)
            return JSONResponse(content={'status': 'started', 'serviceId': service_id, 'port': bound})

        @app.post(f"{ADMIN_PREFIX}/service/stop")
        async def stop_service(request: Request):
            body = await _read_json(request)
            service_id = _require(body, 'serviceId')
            stopped = await self.manager.stop(service_id)
            return JSONResponse(content={'status': 'stopped' if stopped else 'not_running', 'serviceId': service_id})

        @app.post(f"{ADMIN_PREFIX}/service/check")
        async def check_service_port(request: Request):
            """Check whether a port is free."""
            body = await _read_json(request)
            try:
                port = int(_require(body, 'port'))
            except (TypeError, ValueError):
                raise LifecycleError("Invalid port", status_code=400)
            return JSONResponse(content={'port': port, 'available': check_port(port, self.config.bind_host)})

        @app.get(f"{ADMIN_PREFIX}/service/status")
        async def service_status():
            return JSONResponse(content=self.manager.status())

        @app.get(f"{ADMIN_PREFIX}/service/{{service_id}}/logs")
        async def service_logs(service_id: str):
            """Recent requests served by a running service (most recent first)."""
            listener = self.manager.get_listener(service_id)
            if listener is None:
                raise LifecycleError(f"Service {service_id} is not running", status_code=404)
            return JSONResponse(content={
                'total': len(listener.request_log),
                'limit': listener.request_log.maxlen,
                'requests': list(reversed(listener.request_log))
            })

        @app.get(f"{ADMIN_PREFIX}/service/{{service_id}}/metrics")
        async def service_metrics(service_id: str):
            listener = self.manager.get_listener(service_id)
            if listener is None:
                raise LifecycleError(f"Service {service_id} is not running", status_code=404)
            return JSONResponse(content=listener.metrics.to_dict())

        # WebSocket servers

        @app.post(f"{ADMIN_PREFIX}/ws/start")
        async def start_ws(request: Request):
            body = await _read_json(request)
            server_id = _require(body, 'serverId')
            status = await self.ws_manager.start(server_id)
            return JSONResponse(content={'status': 'started', 'serverId': server_id, **status})

        @app.post(f"{ADMIN_PREFIX}/ws/stop")
        async def stop_ws(request: Request):
            body = await _read_json(request)
            server_id = _require(body, 'serverId')
            stopped = await self.ws_manager.stop(server_id)
            return JSONResponse(content={'status': 'stopped' if stopped else 'not_running', 'serverId': server_id})

        @app.get(f"{ADMIN_PREFIX}/ws/status")
        async def ws_status():
            return JSONResponse(content=self.ws_manager.status())

        @app.get(f"{ADMIN_PREFIX}/ws/{{server_id}}/clients")
        async def ws_clients(server_id: str):
            return JSONResponse(content=self.ws_manager.get_clients(server_id))

        @app.get(f"{ADMIN_PREFIX}/ws/{{server_id}}/logs")
        async def ws_logs(server_id: str, since: Optional[int] = None):
            """Interaction log, optionally only entries newer than ``since`` (ms)."""
            return JSONResponse(content=self.ws_manager.get_logs(server_id, since=since))

        @app.delete(f"{ADMIN_PREFIX}/ws/{{server_id}}/logs")
        async def clear_ws_logs(server_id: str):
            self.ws_manager.clear_logs(server_id)
            return JSONResponse(content={'status': 'cleared'})

        @app.post(f"{ADMIN_PREFIX}/ws/{{server_id}}/send")
        async def ws_send(server_id: str, request: Request):
            body = await _read_json(request)
            client_id = str(_require(body, 'clientId'))
            await self.ws_manager.send(server_id, client_id, str(body.get('message', '')))
            return JSONResponse(content={'status': 'sent'})

        @app.post(f"{ADMIN_PREFIX}/ws/{{server_id}}/broadcast")
        async def ws_broadcast(server_id: str, request: Request):
            body = await _read_json(request)
            sent = await self.ws_manager.broadcast(server_id, str(body.get('message', '')))
            return JSONResponse(content={'status': 'sent', 'clients': sent})

        @app.post(f"{ADMIN_PREFIX}/ws/{{server_id}}/disconnect")
        async def ws_disconnect(server_id: str, request: Request):
            body = await _read_json(request)
            client_id = str(_require(body, 'clientId'))
            await self.ws_manager.disconnect(server_id, client_id)
            return JSONResponse(content={'status': 'disconnected'})

        @app.get(f"{ADMIN_PREFIX}/info")
        async def info():
            return JSONResponse(content={'localIp': get_local_ip(), 'adminPort': self.config.admin_port})

        return app

    def start(self, host: Optional[str] = None, port: Optional[int] = None):
        """
        Start the admin server (blocking).

        Args:
            host: Host to bind to (overrides config)
            port: Port to bind to (overrides config)
        """
        actual_host = host or self.config.admin_host
        actual_port = port or self.config.admin_port

        print(f"🚀 rulemock admin starting...")
        print(f"   Admin API: http://{actual_host}:{actual_port}{ADMIN_PREFIX}")
        print(f"   Rule store: {self.config.store_path}")
        print(f"   Services: {len(self.repository.get_services())}")
        if self.autostart:
            print(f"   Autostart: all stored services and ws servers")
        print()

        uvicorn.run(
            self.app,
            host=actual_host,
            port=actual_port,
            log_level=self.config.log_level,
        )

    def get_app(self) -> FastAPI:
        """
        Get the FastAPI app instance for testing or custom deployment.

        Returns:
            FastAPI application instance
        """
        return self.app


def create_admin_app(
    repository: RuleRepository,
    config: Optional[MockConfig] = None,
    autostart: bool = False
) -> FastAPI:
    """Convenience function returning a configured admin app."""
    return AdminServer(repository, config, autostart=autostart).get_app()
