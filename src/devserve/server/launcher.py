"""Launches a reloadable web application on an embedded uvicorn server.

Usage:
    launcher = Launcher()
    if not launcher.process_arguments(logger, "ssl,clientAuth=WANT"):
        raise SystemExit(1)
    container = launcher.start(logger, 8888, "path/to/app")
    ...
    container.refresh()
    container.stop()
"""

import threading
from collections.abc import Callable
from importlib.resources import as_file, files
from pathlib import Path

from devserve.config import ClientAuth, ServerSettings, StartParams
from devserve.server.connector import ConnectorFactoryBuilder
from devserve.server.container import ServerContainer
from devserve.server.embedded import EmbeddedServer
from devserve.server.log_bridge import ServerLogBridge
from devserve.server.request_log import RequestLogMiddleware
from devserve.treelog import LogLevel, TreeLogger
from devserve.webapp import ReloadableApplication

DEFAULT_KEYSTORE = "localhost.pem"
DEFAULT_KEYSTORE_PASSWORD = "localhost"


class ArgumentError(Exception):
    """A launcher argument could not be processed; already logged."""


class Launcher:
    """Configures and starts a ServerContainer."""

    def __init__(self, settings: ServerSettings | None = None):
        self._lock = threading.Lock()
        self.bind_address: str | None = None
        self.use_ssl = False
        self.keystore: str | None = None
        self.keystore_password: str | None = None
        self.client_auth: ClientAuth | None = ClientAuth.NONE
        self._base_log_level = LogLevel.INFO
        self.log_bridge = ServerLogBridge()
        self._handlers: dict[str, Callable[[TreeLogger, str | None], None]] = {
            "ssl": self._handle_ssl,
            "keystore": self._handle_keystore,
            "password": self._handle_password,
            "pwfile": self._handle_pwfile,
            "clientAuth": self._handle_client_auth,
        }
        if settings is not None:
            self.configure(settings)

    @property
    def is_secure(self) -> bool:
        return self.use_ssl

    @property
    def base_log_level(self) -> LogLevel:
        with self._lock:
            return self._base_log_level

    @base_log_level.setter
    def base_log_level(self, level: LogLevel) -> None:
        with self._lock:
            self._base_log_level = level

    def configure(self, settings: ServerSettings) -> None:
        """Apply listener settings, e.g. from the command line."""
        self.bind_address = settings.bind_address
        self.use_ssl = settings.use_ssl
        self.keystore = settings.keystore
        self.keystore_password = settings.keystore_password
        self.client_auth = settings.client_auth
        self.base_log_level = settings.request_log_level

    # Arguments

    def process_arguments(self, logger: TreeLogger, arguments: str | None) -> bool:
        """Process a comma-separated ``name[=value]`` argument string.

        Args:
            logger: Receives errors and warnings about the arguments.
            arguments: e.g. ``"ssl,keystore=server.pem,pwfile=pw.txt,clientAuth=WANT"``.

        Returns:
            True if every argument was accepted and the result is consistent.
        """
        if arguments:
            for arg in arguments.split(","):
                name, sep, value = arg.partition("=")
                try:
                    self._process_argument(logger, name, value if sep else None)
                except ArgumentError:
                    return False
        return self._validate_arguments(logger)

    def _process_argument(self, logger: TreeLogger, name: str, value: str | None) -> None:
        handler = self._handlers.get(name)
        if handler is None:
            logger.log(LogLevel.ERROR, f"Unexpected argument to {type(self).__name__}: {name}")
            raise ArgumentError(name)
        handler(logger, value)

    def _handle_ssl(self, logger: TreeLogger, value: str | None) -> None:
        self.use_ssl = True
        if self.keystore is not None:
            return
        resource = files("devserve.server").joinpath(DEFAULT_KEYSTORE)
        if not resource.is_file():
            logger.log(LogLevel.ERROR, "Default keystore not found")
            raise ArgumentError("ssl")
        with as_file(resource) as path:
            self.keystore = str(path)
        self.keystore_password = DEFAULT_KEYSTORE_PASSWORD

    def _handle_keystore(self, logger: TreeLogger, value: str | None) -> None:
        self.keystore = value

    def _handle_password(self, logger: TreeLogger, value: str | None) -> None:
        self.keystore_password = value

    def _handle_pwfile(self, logger: TreeLogger, value: str | None) -> None:
        try:
            self.keystore_password = Path(value or "").read_text().strip()
        except OSError as e:
            logger.log(LogLevel.ERROR, f"Unable to read keystore password from '{value}'", e)
            raise ArgumentError("pwfile") from e

    def _handle_client_auth(self, logger: TreeLogger, value: str | None) -> None:
        try:
            self.client_auth = ClientAuth(value)
        except ValueError:
            logger.log(LogLevel.WARN, f"Ignoring invalid clientAuth of '{value}'")

    def _validate_arguments(self, logger: TreeLogger) -> bool:
        if self.use_ssl:
            if self.keystore is None:
                logger.log(LogLevel.ERROR, "A keystore is required to use SSL")
                return False
            if self.keystore_password is None:
                logger.log(LogLevel.ERROR, "A keystore password is required to use SSL")
                return False
        return True

    # Start

    def start(self, logger: TreeLogger, port: int, app_root: str | Path) -> ServerContainer:
        """Bind, start the server and the web application.

        Args:
            logger: Root of the diagnostic tree for this container.
            port: Port to listen on; 0 picks a free one.
            app_root: Application root directory.

        Returns:
            The running container.

        Raises:
            pydantic.ValidationError: If the port or app root is invalid.
            OSError: If the socket cannot be bound.
            LifecycleError: If the web application cannot be started.
        """
        params = StartParams(port=port, app_root=app_root)

        self.log_bridge.set_target(logger)
        self.log_bridge.install()

        connector = (
            ConnectorFactoryBuilder()
            .set_use_ssl(self.use_ssl)
            .set_client_auth(self.client_auth)
            .set_keystore_path(self.keystore)
            .set_keystore_password(self.keystore_password)
            .build()
            .get_connector(logger, self.bind_address, params.port)
        )

        webapp = ReloadableApplication(logger, params.app_root.absolute())
        app = RequestLogMiddleware(webapp, logger, self.base_log_level)
        server = EmbeddedServer(app, connector)
        server.start()
        try:
            webapp.attach_portal(server.portal())
            webapp.start()
        except Exception:
            server.stop()
            raise

        return ServerContainer(
            logger, server, webapp, connector.local_port, params.app_root, self.log_bridge
        )
