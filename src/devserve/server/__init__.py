"""Embedded uvicorn server for reloadable web applications.

- Plain and TLS connectors with client certificate policies
- Access logging of every request through a TreeLogger
- A container front-end offering refresh and stop
"""

from devserve.server.connector import (
    Connector,
    ConnectorFactory,
    ConnectorFactoryBuilder,
    PlainConnectorFactory,
    SslConnectorFactory,
)
from devserve.server.container import ServerContainer, UnableToCompleteError
from devserve.server.embedded import EmbeddedServer
from devserve.server.launcher import Launcher
from devserve.server.log_bridge import ServerLogBridge
from devserve.server.request_log import LoggingStrategy, RequestLogMiddleware

__all__ = [
    "Connector",
    "ConnectorFactory",
    "ConnectorFactoryBuilder",
    "EmbeddedServer",
    "Launcher",
    "LoggingStrategy",
    "PlainConnectorFactory",
    "RequestLogMiddleware",
    "ServerContainer",
    "ServerLogBridge",
    "SslConnectorFactory",
    "UnableToCompleteError",
]
