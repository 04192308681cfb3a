"""
rulemock WebSocket Mock Server

Each configured WebSocket server is a FastAPI app with one websocket route,
bound to its own port. Inbound text messages are matched against the
server's rules (re-read from the store for every message) and answered
with a basic string or the result of a sandboxed script.

Every server keeps a bounded interaction log and a registry of connected
clients for manual send/broadcast/disconnect.
"""

import asyncio
import itertools
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from fastapi import FastAPI, WebSocket
from starlette.websockets import WebSocketState

from ..common import PortInUseError, RunningServer, bind_socket, normalize_path, now_ms, safe_json_parse
from ..mock.errors import LifecycleError, ScriptError
from ..mock.sandbox import ScriptSandbox
from ..mock.template import DataTemplate
from ..mock.server import MockConfig
from ..store import RuleRepository
from .matcher import find_ws_rule


@dataclass(frozen=True)
class WsRequest:
    """Inbound message view handed to scripts as ``req``."""

    message: str
    data: Any = None
    client_id: str = ''
    client_ip: str = ''
    path: str = '/'

    def get(self, name: str, default: Any = None) -> Any:
        return self.to_dict().get(name, default)

    def __getitem__(self, name: str) -> Any:
        return self.to_dict()[name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message': self.message,
            'data': self.data,
            'client_id': self.client_id,
            'client_ip': self.client_ip,
            'path': self.path,
        }


@dataclass
class WsClient:
    """A connected client."""

    client_id: str
    websocket: WebSocket
    client_ip: str
    connected_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {'clientId': self.client_id, 'clientIp': self.client_ip, 'connectedAt': self.connected_at}


@dataclass
class WsServerState:
    """Runtime state of one running WebSocket server."""

    server_id: str
    port: int
    path: str
    running: Any = None
    clients: Dict[str, WsClient] = field(default_factory=dict)

    def status(self) -> Dict[str, Any]:
        return {'running': True, 'port': self.port, 'path': self.path, 'clients': len(self.clients)}


class WsMockServerManager:
    """
    Start, stop and operate WebSocket mock servers.

    ``start`` is idempotent. Admin operations (send, broadcast, disconnect)
    raise LifecycleError when the server is not running.

    Example:
        manager = WsMockServerManager(repository)
        await manager.start(server_id)
        await manager.broadcast(server_id, '{"type": "tick"}')
        entries = manager.get_logs(server_id, since=last_seen)
    """

    def __init__(
        self,
        repository: RuleRepository,
        config: Optional[MockConfig] = None,
        sandbox: Optional[ScriptSandbox] = None
    ):
        """
        Initialize manager.

        Args:
            repository: Rule repository holding the ws server configs
            config: Optional MockConfig
            sandbox: Script sandbox for advanced rules (will create if None)
        """
        self.repository = repository
        self.config = config or MockConfig()
        self.sandbox = sandbox or ScriptSandbox(
            DataTemplate(locale=self.config.faker_locale, seed=self.config.faker_seed),
            entry=self.config.script_entry
        )
        self.servers: Dict[str, WsServerState] = {}
        self.logs: Dict[str, deque] = {}
        self._log_ids = itertools.count(1)
        self.logger = logging.getLogger("rulemock.ws")

    # Lifecycle

    async def start(self, server_id: Any) -> Dict[str, Any]:
        """
        Start a WebSocket server from its stored config.

        Returns:
            Server status (port and path)

        Raises:
            LifecycleError: Unknown config or port unavailable
        """
        key = str(server_id)
        if key in self.servers:
            return self.servers[key].status()

        ws_config = self.repository.find_ws_server(key)
        if ws_config is None:
            raise LifecycleError(f"WebSocket server {key} not found", status_code=404)

        try:
            sock = bind_socket(int(ws_config.get('port') or 0), self.config.bind_host)
        except PortInUseError as e:
            self.logger.error(f"Failed to start ws server {key}: {e.strerror}")
            raise LifecycleError(e.strerror, status_code=409)

        state = WsServerState(
            server_id=key,
            port=sock.getsockname()[1],
            path=normalize_path(ws_config.get('path') or '/'),
        )
        app = self.build_app(state)
        try:
            state.running = await RunningServer.launch(app, sock, self.config.log_level)
        except RuntimeError as e:
            raise LifecycleError(str(e), status_code=500)

        self.servers[key] = state
        self._log(key, 'system', message=f"Server started on port {state.port} at {state.path}")
        self.logger.info(f"WebSocket server {key} listening on ws://0.0.0.0:{state.port}{state.path}")
        return state.status()

    async def stop(self, server_id: Any) -> bool:
        """
        Stop a WebSocket server, closing its clients.

        Returns:
            True if the server was running
        """
        key = str(server_id)
        state = self.servers.pop(key, None)
        if state is None:
            return False

        for client in list(state.clients.values()):
            await self._close(client, code=1001)
        state.clients.clear()

        if state.running is not None:
            await state.running.shutdown()

        self._log(key, 'system', message="Server stopped")
        self.logger.info(f"WebSocket server {key} stopped")
        return True

    async def stop_all(self) -> None:
        for server_id in list(self.servers):
            await self.stop(server_id)

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Running servers by id."""
        return {key: state.status() for key, state in self.servers.items()}

    def create_app(self, server_id: Any) -> FastAPI:
        """
        Register a server without binding a port and return its app.

        The app can be served by any ASGI server or driven with a test client;
        admin operations treat the server as running.
        """
        key = str(server_id)
        ws_config = self.repository.find_ws_server(key)
        if ws_config is None:
            raise LifecycleError(f"WebSocket server {key} not found", status_code=404)

        state = WsServerState(
            server_id=key,
            port=int(ws_config.get('port') or 0),
            path=normalize_path(ws_config.get('path') or '/'),
        )
        self.servers[key] = state
        return self.build_app(state)

    def build_app(self, state: WsServerState) -> FastAPI:
        app = FastAPI(
            title=f"rulemock ws {state.server_id}",
            docs_url=None,
            redoc_url=None,
            openapi_url=None
        )

        @app.websocket(state.path)
        async def websocket_endpoint(websocket: WebSocket):
            await self._serve_client(state, websocket)

        return app

    # Connections

    async def _serve_client(self, state: WsServerState, websocket: WebSocket) -> None:
        await websocket.accept()

        client_id = uuid.uuid4().hex[:12]
        client_ip = websocket.client.host if websocket.client else 'unknown'
        client = WsClient(client_id=client_id, websocket=websocket, client_ip=client_ip)
        state.clients[client_id] = client
        self._log(state.server_id, 'system', client, f"Client connected from {client_ip}")

        pending = set()
        try:
            ws_config = self.repository.find_ws_server(state.server_id) or {}
            on_connect = ws_config.get('onConnectMessage')
            if on_connect:
                await websocket.send_text(on_connect)
                self._log(state.server_id, 'out', client, on_connect)

            while True:
                frame = await websocket.receive()
                if frame['type'] == 'websocket.disconnect':
                    break

                message = frame.get('text')
                if message is None:
                    message = (frame.get('bytes') or b'').decode('utf-8', errors='replace')

                self._log(state.server_id, 'in', client, message)
                task = asyncio.create_task(self._reply(state, client, message))
                pending.add(task)
                task.add_done_callback(pending.discard)
        except Exception as e:
            self._log(state.server_id, 'system', client, f"Client error: {e}")
            self.logger.warning(f"[{state.server_id}] client {client_id} error: {e}")
        finally:
            for task in list(pending):
                task.cancel()
            if state.clients.pop(client_id, None) is not None:
                self._log(state.server_id, 'system', client, "Client disconnected")

    async def _reply(self, state: WsServerState, client: WsClient, message: str) -> None:
        ws_config = self.repository.find_ws_server(state.server_id) or {}
        rule = find_ws_rule(ws_config.get('rules'), message)
        if rule is None:
            self.logger.debug(f"[{state.server_id}] no rule matched message from {client.client_id}")
            return

        rule_name = rule.get('name') or rule.get('matchType') or 'rule'
        try:
            delay = max(int(rule.get('delay') or 0), 0)
        except (TypeError, ValueError):
            delay = 0
        if delay > 0:
            await asyncio.sleep(delay / 1000)

        request = WsRequest(
            message=message,
            data=safe_json_parse(message),
            client_id=client.client_id,
            client_ip=client.client_ip,
            path=state.path,
        )
        try:
            reply = await self.render(rule, request)
        except ScriptError as e:
            self._log(state.server_id, 'system', client, f"Rule '{rule_name}' failed: {e.message}", rule_name)
            self.logger.error(f"[{state.server_id}] rule '{rule_name}' failed: {e.message}")
            return

        if client.client_id not in state.clients or client.websocket.client_state != WebSocketState.CONNECTED:
            return
        try:
            await client.websocket.send_text(reply)
        except Exception as e:
            self._log(state.server_id, 'system', client, f"Reply to client failed: {e}", rule_name)
            self.logger.warning(f"[{state.server_id}] reply to {client.client_id} failed: {e}")
            return
        self._log(state.server_id, 'out', client, reply, rule_name)

    async def render(self, rule: Dict[str, Any], request: WsRequest) -> str:
        """
        Produce the reply text for a matched rule.

        Advanced scripts may return a string (sent as-is) or any JSON value.

        Raises:
            ScriptError: If the script fails
        """
        if rule.get('responseMode') == 'advanced':
            label = rule.get('name') or 'ws-rule'
            value = await self.sandbox.run(rule.get('responseAdvanced') or '', request, label=label)
            if isinstance(value, str):
                return value
            try:
                return json.dumps(value, ensure_ascii=False, default=str)
            except (TypeError, ValueError) as e:
                raise ScriptError(f"Script result is not JSON serializable: {e}")

        body = rule.get('responseBasic')
        return '' if body is None else str(body)

    # Clients

    def _require_running(self, server_id: Any) -> WsServerState:
        state = self.servers.get(str(server_id))
        if state is None:
            raise LifecycleError(f"WebSocket server {server_id} is not running", status_code=409)
        return state

    def _require_client(self, state: WsServerState, client_id: str) -> WsClient:
        client = state.clients.get(client_id)
        if client is None:
            raise LifecycleError(f"Client {client_id} is not connected", status_code=404)
        return client

    def get_clients(self, server_id: Any) -> List[Dict[str, Any]]:
        """Connected clients of a running server."""
        state = self._require_running(server_id)
        return [client.to_dict() for client in state.clients.values()]

    async def send(self, server_id: Any, client_id: str, message: str) -> None:
        """Send a text message to one client."""
        state = self._require_running(server_id)
        client = self._require_client(state, client_id)
        await client.websocket.send_text(message)
        self._log(state.server_id, 'out', client, message)

    async def broadcast(self, server_id: Any, message: str) -> int:
        """
        Send a text message to every connected client.

        Returns:
            Number of clients the message was sent to
        """
        state = self._require_running(server_id)
        sent = 0
        for client in list(state.clients.values()):
            try:
                await client.websocket.send_text(message)
            except Exception as e:
                self.logger.warning(f"[{state.server_id}] broadcast to {client.client_id} failed: {e}")
                continue
            self._log(state.server_id, 'out', client, message)
            sent += 1
        return sent

    async def disconnect(self, server_id: Any, client_id: str) -> None:
        """Close one client's connection."""
        state = self._require_running(server_id)
        client = self._require_client(state, client_id)
        state.clients.pop(client_id, None)
        await self._close(client)
        self._log(state.server_id, 'system', client, "Client disconnected by admin")

    async def _close(self, client: WsClient, code: int = 1000) -> None:
        if client.websocket.client_state != WebSocketState.CONNECTED:
            return
        try:
            await client.websocket.close(code=code)
        except RuntimeError as e:
            self.logger.debug(f"Closing client {client.client_id}: {e}")

    # Logs

    def _log(
        self,
        server_id: str,
        direction: str,
        client: Optional[WsClient] = None,
        message: str = '',
        matched_rule: Optional[str] = None
    ) -> Dict[str, Any]:
        """Append to the server's log (FIFO with capacity)."""
        entries = self.logs.get(server_id)
        if entries is None:
            entries = self.logs[server_id] = deque(maxlen=self.config.ws_log_capacity)

        entry = {
            'id': next(self._log_ids),
            'serverId': server_id,
            'timestamp': now_ms(),
            'direction': direction,
            'clientId': client.client_id if client else '',
            'clientIp': client.client_ip if client else '',
            'message': message,
        }
        if matched_rule:
            entry['matchedRule'] = matched_rule
        entries.append(entry)
        return entry

    def get_logs(self, server_id: Any, since: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Logged interactions for a server, oldest first.

        Args:
            server_id: WebSocket server id
            since: Only entries with a timestamp after this (ms)
        """
        entries = list(self.logs.get(str(server_id), ()))
        if since is not None:
            entries = [entry for entry in entries if entry['timestamp'] > since]
        return entries

    def clear_logs(self, server_id: Any) -> None:
        self.logs.pop(str(server_id), None)
