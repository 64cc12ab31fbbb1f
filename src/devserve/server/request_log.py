"""Access logging for requests served by the embedded server.

Each completed HTTP request is logged as one line at a level chosen from its
status, with the request and response headers in a nested branch:

    500 - GET /boom (127.0.0.1) 21 bytes
      Request headers
        host: localhost:8888
      Response headers
        content-type: text/plain; charset=utf-8
"""

from dataclasses import dataclass
from typing import Any

from devserve.treelog import LogLevel, TreeLogger


@dataclass(frozen=True)
class LoggingStrategy:
    """The levels one response is logged at."""

    log_level: LogLevel
    header_level: LogLevel

    @classmethod
    def for_response(
        cls, path: str, query_string: str, status: int, normal_level: LogLevel
    ) -> "LoggingStrategy":
        if status >= 500:
            return cls(LogLevel.ERROR, LogLevel.INFO)
        if status == 404:
            if path == "/favicon.ico" and not query_string:
                return cls(LogLevel.TRACE, LogLevel.DEBUG)
            return cls(LogLevel.WARN, LogLevel.INFO)
        if status >= 400:
            return cls(LogLevel.WARN, LogLevel.INFO)
        return cls(normal_level, LogLevel.DEBUG)


def _decode_headers(raw: list[tuple[bytes, bytes]] | None) -> list[tuple[str, str]]:
    return [(k.decode("latin-1"), v.decode("latin-1")) for k, v in raw or []]


def _client(scope: dict[str, Any]) -> str:
    client = scope.get("client")
    return client[0] if client else "-"


def format_request_line(scope: dict[str, Any], status: int, size: int) -> str:
    query_string = scope.get("query_string", b"").decode("latin-1")
    uri = scope.get("path", "/") + (f"?{query_string}" if query_string else "")
    return f"{status} - {scope.get('method', '-')} {uri} ({_client(scope)}) {size} bytes"


class RequestLogMiddleware:
    """ASGI middleware that logs each HTTP response through a TreeLogger."""

    def __init__(self, app: Any, logger: TreeLogger, normal_level: LogLevel = LogLevel.INFO):
        self.app = app
        self.logger = logger
        self.normal_level = normal_level

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        status = 500
        size = 0
        response_headers: list[tuple[bytes, bytes]] = []

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status, size, response_headers
            if message["type"] == "http.response.start":
                status = message["status"]
                response_headers = list(message.get("headers", []))
            elif message["type"] == "http.response.body":
                size += len(message.get("body", b""))
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            self.log_request(scope, status, size, response_headers)

    def log_request(
        self,
        scope: dict[str, Any],
        status: int,
        size: int,
        response_headers: list[tuple[bytes, bytes]],
    ) -> None:
        strategy = LoggingStrategy.for_response(
            scope.get("path", "/"),
            scope.get("query_string", b"").decode("latin-1"),
            status,
            self.normal_level,
        )
        if not self.logger.is_loggable(strategy.log_level):
            return

        branch = self.logger.branch(strategy.log_level, format_request_line(scope, status, size))
        if branch.is_loggable(strategy.header_level):
            self._log_headers(branch, strategy.header_level, "Request headers", scope.get("headers"))
            self._log_headers(branch, strategy.header_level, "Response headers", response_headers)

    @staticmethod
    def _log_headers(
        logger: TreeLogger, level: LogLevel, title: str, raw: list[tuple[bytes, bytes]] | None
    ) -> None:
        headers = logger.branch(level, title)
        for name, value in _decode_headers(raw):
            headers.log(level, f"{name}: {value}")
