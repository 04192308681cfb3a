"""
rulemock HTTP Mock Server Manager

Owns the registry of live service listeners. Each listener is a FastAPI app
bound to its own port and served by an embedded uvicorn server on the
current event loop.
"""

import logging
from typing import Dict, Any, Optional

from ..common import PortInUseError, RunningServer, bind_socket
from ..store import RuleRepository
from .errors import LifecycleError
from .matcher import normalize_prefix
from .server import MockConfig, MockEngine, ServiceListener, create_service_app


class MockServerManager:
    """
    Start, stop and reconfigure per-service HTTP listeners.

    At most one listener exists per service id. Restarting a running
    service on the same port only swaps its prefix; a different port
    closes the old listener and binds a new one.

    Example:
        manager = MockServerManager(repository)
        port = await manager.start('svc-1', 4001, '/api')
        await manager.stop('svc-1')
    """

    def __init__(
        self,
        repository: RuleRepository,
        config: Optional[MockConfig] = None,
        engine: Optional[MockEngine] = None
    ):
        """
        Initialize manager.

        Args:
            repository: Rule repository shared by every listener
            config: Optional MockConfig
            engine: Optional MockEngine (will create if None)
        """
        self.repository = repository
        self.config = config or MockConfig()
        self.engine = engine or MockEngine(repository, self.config)
        self.listeners: Dict[str, ServiceListener] = {}
        self.logger = logging.getLogger("rulemock.manager")

    async def start(self, service_id: Any, port: int, prefix: Optional[str] = '') -> int:
        """
        Start (or reconfigure) the listener for a service.

        Args:
            service_id: Service id
            port: Port to bind (0 picks a free port, or keeps the current one
                when the service is already running)
            prefix: Service prefix captured for this listener

        Returns:
            The bound port

        Raises:
            LifecycleError: If the port can't be bound
        """
        key = str(service_id)
        prefix = normalize_prefix(prefix)
        existing = self.listeners.get(key)

        if existing is not None:
            if port == 0 or existing.port == port:
                existing.prefix = prefix
                self.logger.info(f"Service {key} already on port {existing.port}, prefix set to '{prefix}'")
                return existing.port
            await self.stop(key)

        try:
            sock = bind_socket(port, self.config.bind_host)
        except PortInUseError as e:
            self.logger.error(f"Failed to start service {key}: {e.strerror}")
            raise LifecycleError(e.strerror, status_code=409)

        listener = ServiceListener(service_id=key, port=sock.getsockname()[1], prefix=prefix)
        app = create_service_app(listener, self.engine)
        try:
            listener.running = await RunningServer.launch(app, sock, self.config.log_level)
        except RuntimeError as e:
            raise LifecycleError(str(e), status_code=500)

        self.listeners[key] = listener
        self.logger.info(f"Service {key} listening on port {listener.port} (prefix '{prefix}')")
        return listener.port

    async def stop(self, service_id: Any) -> bool:
        """
        Stop a service listener.

        Returns:
            True if a listener was running
        """
        listener = self.listeners.pop(str(service_id), None)
        if listener is None:
            return False
        if listener.running is not None:
            await listener.running.shutdown()
        self.logger.info(f"Service {listener.service_id} stopped (port {listener.port})")
        return True

    async def stop_all(self) -> None:
        for service_id in list(self.listeners):
            await self.stop(service_id)

    def get_listener(self, service_id: Any) -> Optional[ServiceListener]:
        return self.listeners.get(str(service_id))

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Running listeners by service id."""
        return {key: listener.status() for key, listener in self.listeners.items()}
