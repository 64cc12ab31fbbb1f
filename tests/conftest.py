"""Pytest configuration and fixtures."""

import logging
from collections.abc import Callable
from pathlib import Path

import pytest

from devserve.loader import NamePattern
from devserve.treelog import TreeLogger

# Minimal raw ASGI application; reports helper.VALUE and the lifespan greeting
RAW_APP = '''
import helper


async def app(scope, receive, send):
    if scope["type"] == "lifespan":
        while True:
            message = await receive()
            if message["type"] == "lifespan.startup":
                scope["state"]["greeting"] = "hello"
                await send({"type": "lifespan.startup.complete"})
            elif message["type"] == "lifespan.shutdown":
                await send({"type": "lifespan.shutdown.complete"})
                return
    body = f"{helper.VALUE}:{scope['state'].get('greeting', '-')}".encode()
    await send({
        "type": "http.response.start",
        "status": 200,
        "headers": [(b"content-type", b"text/plain")],
    })
    await send({"type": "http.response.body", "body": body})
'''


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio as the async backend."""
    return "asyncio"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "network: mark test as binding a real listening socket on localhost",
    )


class StubContext:
    """Application context with explicit system and server name patterns."""

    def __init__(self, system: list[str] | None = None, server: list[str] | None = None):
        self.system = NamePattern(system or [])
        self.server = NamePattern(server or [])

    def is_system_name(self, name: str) -> bool:
        return self.system.matches(name)

    def is_server_name(self, name: str) -> bool:
        return self.server.matches(name)


def write_tree(root: Path, files: dict[str, str]) -> Path:
    """Write a mapping of relative paths to contents beneath root."""
    for name, content in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def context_factory() -> type[StubContext]:
    """Builds application contexts from explicit name patterns."""
    return StubContext


@pytest.fixture
def tree_logger() -> TreeLogger:
    """A TreeLogger that emits everything down to SPAM."""
    target = logging.getLogger("devserve.tests")
    target.setLevel(1)
    return TreeLogger(target)


@pytest.fixture
def make_tree(tmp_path: Path) -> Callable[[str, dict[str, str]], Path]:
    """Factory writing a named directory of files under tmp_path."""

    def _make(name: str, files: dict[str, str]) -> Path:
        return write_tree(tmp_path / name, files)

    return _make


@pytest.fixture
def raw_app_root(tmp_path: Path) -> Path:
    """An application root serving a raw ASGI app that reports helper.VALUE."""
    return write_tree(
        tmp_path / "webapp",
        {
            "app.py": RAW_APP,
            "helper.py": 'VALUE = "one"\n',
        },
    )
