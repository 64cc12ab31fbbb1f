"""Listening connectors for the embedded server.

A connector is a bound socket plus the TLS options uvicorn needs to serve on
it. Factories are built with ConnectorFactoryBuilder:

    factory = (
        ConnectorFactoryBuilder()
        .set_use_ssl(True)
        .set_client_auth(ClientAuth.WANT)
        .set_keystore_path("localhost.pem")
        .set_keystore_password("secret")
        .build()
    )
    connector = factory.get_connector(logger, "127.0.0.1", 8888)
"""

import socket
import ssl
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from devserve.config import ClientAuth
from devserve.treelog import LogLevel, TreeLogger


def bind_socket(bind_address: str | None, port: int) -> socket.socket:
    """Bind a listening socket without address reuse and with zero linger."""
    host = bind_address or "0.0.0.0"
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


@dataclass
class Connector:
    """A bound listening socket and the TLS options to serve it with."""

    socket: socket.socket
    ssl_options: dict[str, Any] = field(default_factory=dict)

    @property
    def local_port(self) -> int:
        return self.socket.getsockname()[1]

    @property
    def is_secure(self) -> bool:
        return bool(self.ssl_options)

    def close(self) -> None:
        self.socket.close()


class ConnectorFactory(ABC):
    """Creates connectors from settings provided by the caller."""

    @abstractmethod
    def get_connector(self, logger: TreeLogger, bind_address: str | None, port: int) -> Connector:
        """Bind and return a new connector."""


class PlainConnectorFactory(ConnectorFactory):
    def get_connector(self, logger: TreeLogger, bind_address: str | None, port: int) -> Connector:
        return Connector(bind_socket(bind_address, port))


class SslConnectorFactory(ConnectorFactory):
    """Creates TLS connectors from a PEM file holding both key and certificate.

    The key material also serves as the trust store for client certificates.
    """

    def __init__(self, client_auth: ClientAuth, keystore_path: str, keystore_password: str):
        self.client_auth = client_auth
        self.keystore_path = keystore_path
        self.keystore_password = keystore_password

    def get_connector(self, logger: TreeLogger, bind_address: str | None, port: int) -> Connector:
        ssl_logger = logger.branch(LogLevel.INFO, "Listening for SSL connections")
        if ssl_logger.is_loggable(LogLevel.TRACE):
            ssl_logger.log(LogLevel.TRACE, f"Using keystore {self.keystore_path}")
        self._load_keystore(ssl_logger)
        ssl_logger.log(LogLevel.TRACE, self.client_auth.description)
        options = {
            "ssl_keyfile": self.keystore_path,
            "ssl_certfile": self.keystore_path,
            "ssl_keyfile_password": self.keystore_password,
            "ssl_cert_reqs": self.client_auth.cert_reqs,
        }
        if self.client_auth is not ClientAuth.NONE:
            options["ssl_ca_certs"] = self.keystore_path
        return Connector(bind_socket(bind_address, port), options)

    def _load_keystore(self, logger: TreeLogger) -> ssl.SSLContext:
        """Load the key material eagerly so a bad keystore fails at startup.

        Raises:
            RuntimeError: If the keystore cannot be loaded.
        """
        error_msg = "unable to load the SSL keystore"
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        try:
            context.load_cert_chain(self.keystore_path, password=self.keystore_password)
        except (OSError, ssl.SSLError) as e:
            logger.log(LogLevel.ERROR, error_msg, e)
            raise RuntimeError(error_msg) from e
        return context


class ConnectorFactoryBuilder:
    """Builds plain or TLS connector factories."""

    def __init__(self):
        self._use_ssl = False
        self._client_auth: ClientAuth | None = ClientAuth.NONE
        self._keystore_path: str | None = None
        self._keystore_password: str | None = None

    def set_use_ssl(self, use_ssl: bool) -> "ConnectorFactoryBuilder":
        self._use_ssl = use_ssl
        return self

    def set_client_auth(self, client_auth: ClientAuth | None) -> "ConnectorFactoryBuilder":
        self._client_auth = client_auth
        return self

    def set_keystore_path(self, keystore_path: str | None) -> "ConnectorFactoryBuilder":
        self._keystore_path = keystore_path
        return self

    def set_keystore_password(self, keystore_password: str | None) -> "ConnectorFactoryBuilder":
        self._keystore_password = keystore_password
        return self

    def build(self) -> ConnectorFactory:
        """Build the connector factory.

        Raises:
            ValueError: If TLS is requested without its required settings.
        """
        if not self._use_ssl:
            return PlainConnectorFactory()
        if self._client_auth is None:
            raise ValueError("the client authentication strategy is required for SSL")
        if self._keystore_path is None:
            raise ValueError("the keystore path is required for SSL")
        if self._keystore_password is None:
            raise ValueError("the keystore password is required for SSL")
        return SslConnectorFactory(self._client_auth, self._keystore_path, self._keystore_password)
