"""
Embedded uvicorn serving.

Mock listeners are started and stopped at runtime from inside an already
running event loop, so uvicorn is driven directly instead of through
``uvicorn.run``: the socket is bound up front (bind errors surface to the
caller) and the server runs as a task on the current loop.
"""

import asyncio
import contextlib
import logging
import socket
from typing import Any, Optional

import uvicorn


logger = logging.getLogger("rulemock.manager")


class PortInUseError(OSError):
    """Raised when a listener port can't be bound."""


def bind_socket(port: int, host: str = "0.0.0.0") -> socket.socket:
    """
    Bind a listening TCP socket.

    Args:
        port: Port to bind (0 picks a free port)
        host: Interface to bind

    Returns:
        Bound socket, ready to hand to uvicorn

    Raises:
        PortInUseError: If the port can't be bound
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        raise PortInUseError(e.errno, f"Port {port} is not available: {e.strerror or e}")
    sock.set_inheritable(True)
    return sock


def check_port(port: int, host: str = "0.0.0.0") -> bool:
    """
    Check whether ``port`` can be bound right now.

    The test socket is closed immediately.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


class EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to its owner."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class RunningServer:
    """
    A uvicorn server running as a task on the current loop.

    Example:
        running = await RunningServer.launch(app, bind_socket(4001))
        ...
        await running.shutdown()
    """

    def __init__(self, server: EmbeddedServer, sock: socket.socket, task: "asyncio.Task"):
        self.server = server
        self.sock = sock
        self.task = task
        self.port = sock.getsockname()[1]

    @classmethod
    async def launch(cls, app: Any, sock: socket.socket, log_level: str = "warning") -> "RunningServer":
        """
        Serve ``app`` on an already bound socket and wait until it accepts.

        Raises:
            RuntimeError: If uvicorn exits before startup completes
        """
        config = uvicorn.Config(
            app,
            log_config=None,
            log_level=log_level,
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=2,
        )
        server = EmbeddedServer(config)
        task = asyncio.create_task(server.serve(sockets=[sock]))

        while not server.started:
            if task.done():
                sock.close()
                error: Optional[BaseException] = None if task.cancelled() else task.exception()
                raise RuntimeError(f"Server failed to start: {error or 'exited during startup'}")
            await asyncio.sleep(0.01)

        return cls(server, sock, task)

    async def shutdown(self) -> None:
        """Ask uvicorn to exit and wait for it, then release the socket."""
        self.server.should_exit = True
        try:
            await self.task
        except Exception as e:
            logger.warning(f"Server on port {self.port} stopped with error: {e}")
        finally:
            self.sock.close()
