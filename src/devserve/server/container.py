"""Container front-end over a running embedded server and reloadable host."""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from devserve.server.embedded import EmbeddedServer
from devserve.server.log_bridge import ServerLogBridge
from devserve.treelog import LogLevel, TreeLogger
from devserve.webapp import HostState, ReloadableApplication

T = TypeVar("T")


class UnableToCompleteError(Exception):
    """A container operation failed; the cause has already been logged."""


class ServerContainer:
    """What a launcher hands back: the port, refresh and stop."""

    def __init__(
        self,
        logger: TreeLogger,
        server: EmbeddedServer,
        webapp: ReloadableApplication,
        port: int,
        app_root: str | Path,
        log_bridge: ServerLogBridge | None = None,
    ):
        self.logger = logger
        self.server = server
        self.webapp = webapp
        self.app_root = Path(app_root)
        self._port = port
        self._log_bridge = log_bridge

    @property
    def port(self) -> int:
        return self._port

    def get_port(self) -> int:
        return self._port

    def refresh(self) -> None:
        """Rebuild the web application from disk.

        A web application left failed by an earlier refresh is started afresh.

        Raises:
            UnableToCompleteError: If the reload fails or the container is stopped.
        """
        branch = self.logger.branch(
            LogLevel.INFO, f"Reloading web app to reflect changes in {self.app_root}"
        )
        operation = self.webapp.start if self.webapp.state is HostState.FAILED else self.webapp.reload
        self._run(branch, operation, "Unable to restart embedded server")
        branch.log(LogLevel.INFO, "Reload completed successfully")

    def stop(self) -> None:
        """Stop the web application and then the server.

        Raises:
            UnableToCompleteError: If either fails to stop.
        """
        branch = self.logger.branch(LogLevel.INFO, "Stopping embedded server")

        def stop_all() -> None:
            try:
                self.webapp.stop()
            finally:
                self.server.stop()

        self._run(branch, stop_all, "Unable to stop embedded server")
        branch.log(LogLevel.TRACE, "Stopped successfully")

    def _run(self, branch: TreeLogger, operation: Callable[[], T], error_message: str) -> T:
        with self._routed_to(branch):
            try:
                return operation()
            except Exception as e:
                branch.log(LogLevel.ERROR, error_message, e)
                raise UnableToCompleteError(error_message) from e

    @contextmanager
    def _routed_to(self, branch: TreeLogger) -> Iterator[None]:
        if self._log_bridge is None:
            yield
            return
        previous = self._log_bridge.set_target(branch)
        try:
            yield
        finally:
            self._log_bridge.set_target(previous)

    def __repr__(self) -> str:
        return f"ServerContainer(port={self._port}, app_root={str(self.app_root)!r})"
