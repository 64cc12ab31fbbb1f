"""uvicorn running on a background thread over a pre-bound connector."""

import asyncio
import logging
import threading
import time
from typing import Any

import uvicorn

from devserve.server.connector import Connector
from devserve.webapp import LifespanPortal

logger = logging.getLogger(__name__)


class EmbeddedServer:
    """Serves one ASGI application on a connector from a dedicated thread.

    Lifespan is off: the reloadable host drives each generation's lifespan
    itself, on this server's event loop, through ``portal()``.
    """

    def __init__(self, app: Any, connector: Connector):
        self.connector = connector
        self.config = uvicorn.Config(
            app,
            log_config=None,
            lifespan="off",
            access_log=False,
            **connector.ssl_options,
        )
        self.server = uvicorn.Server(self.config)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._error: BaseException | None = None

    @property
    def started(self) -> bool:
        return self.server.started

    @property
    def loop(self) -> asyncio.AbstractEventLoop | None:
        return self._loop

    def start(self, timeout: float = 10.0) -> None:
        """Start serving and wait until the server accepts connections.

        Raises:
            RuntimeError: If the server fails or does not start in time.
        """
        self._thread = threading.Thread(target=self._run, name="devserve-server", daemon=True)
        self._thread.start()

        deadline = time.monotonic() + timeout
        while not self.server.started:
            if not self._thread.is_alive():
                self.connector.close()
                raise RuntimeError("Embedded server exited during startup") from self._error
            if time.monotonic() > deadline:
                self.stop()
                raise RuntimeError(f"Embedded server did not start within {timeout} seconds")
            time.sleep(0.01)
        logger.debug(f"Embedded server listening on port {self.connector.local_port}")

    def _run(self) -> None:
        try:
            asyncio.run(self._serve())
        except Exception as e:
            self._error = e
            logger.debug(f"Embedded server stopped with an error: {e}")

    async def _serve(self) -> None:
        self._loop = asyncio.get_running_loop()
        await self.server.serve(sockets=[self.connector.socket])

    def portal(self) -> LifespanPortal:
        """A portal onto the server's event loop."""
        if self._loop is None:
            raise RuntimeError("Embedded server has not been started")
        return LifespanPortal(self._loop)

    def stop(self, timeout: float = 10.0) -> None:
        """Ask the server to exit, wait for its thread and release the socket."""
        self.server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.connector.close()
