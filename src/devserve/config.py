"""Configuration models for the development server.

Application settings are read from the ``[webapp]`` table of an optional
``devserve.toml`` in the application root:

    [webapp]
    entry_point = "myapp.main:create_app"
    factory = true
    source_dirs = ["src"]
    system_names = ["fastapi.", "starlette.", "sqlalchemy."]
"""

import logging
import os
import ssl
from enum import Enum
from pathlib import Path
from typing import Literal

import tomli
from pydantic import BaseModel, Field

from devserve.treelog import LogLevel

logger = logging.getLogger(__name__)

CONFIG_FILE = "devserve.toml"

# Set to silence warnings when the web application's search path is widened
NOWARN_ENV = "DEVSERVE_NOWARN_WEBAPP_CLASSPATH"

# Modules the host shares with applications (ASGI stack the app builds on)
DEFAULT_SYSTEM_NAMES = [
    "fastapi.",
    "starlette.",
    "pydantic.",
    "pydantic_core.",
    "anyio.",
    "sniffio.",
    "typing_extensions",
    "annotated_types.",
    "typing_inspection.",
]

# Modules of the server itself, never visible to applications
DEFAULT_SERVER_NAMES = [
    "devserve.",
    "uvicorn.",
    "click.",
    "rich.",
]


class ClientAuth(str, Enum):
    """Whether TLS client certificates are ignored, requested or required."""

    NONE = "NONE"
    WANT = "WANT"
    REQUIRE = "REQUIRE"

    @property
    def cert_reqs(self) -> ssl.VerifyMode:
        return {
            ClientAuth.NONE: ssl.CERT_NONE,
            ClientAuth.WANT: ssl.CERT_OPTIONAL,
            ClientAuth.REQUIRE: ssl.CERT_REQUIRED,
        }[self]

    @property
    def description(self) -> str:
        return {
            ClientAuth.NONE: "Not requesting client certificates",
            ClientAuth.WANT: "Requesting client certificates",
            ClientAuth.REQUIRE: "Requiring client certificates",
        }[self]


def _warn_on_augment_default() -> bool:
    return os.environ.get(NOWARN_ENV) is None


class WebAppSettings(BaseModel):
    """How an application root is turned into a running ASGI application."""

    entry_point: str = "app:app"
    factory: bool = False
    lifespan: Literal["auto", "on", "off"] = "auto"
    source_dirs: list[str] = Field(default_factory=lambda: ["."])
    lib_dir: str = "lib"
    system_names: list[str] = Field(default_factory=lambda: list(DEFAULT_SYSTEM_NAMES))
    server_names: list[str] = Field(default_factory=lambda: list(DEFAULT_SERVER_NAMES))
    # None permits widening the search path with any host path root
    augment_roots: list[str] | None = None
    warn_on_augment: bool = Field(default_factory=_warn_on_augment_default)


class ServerSettings(BaseModel):
    """Listener settings for the embedded server."""

    bind_address: str | None = None
    use_ssl: bool = False
    keystore: str | None = None
    keystore_password: str | None = None
    client_auth: ClientAuth = ClientAuth.NONE
    request_log_level: LogLevel = LogLevel.INFO


class StartParams(BaseModel):
    """Arguments of a container start, validated before anything is built."""

    port: int = Field(ge=0, le=65535)
    app_root: Path


def load_webapp_settings(app_root: str | Path) -> WebAppSettings:
    """Load application settings from the app root's devserve.toml.

    Args:
        app_root: Application root directory.

    Returns:
        Settings from the ``[webapp]`` table, or defaults if the file is absent.
    """
    config_path = Path(app_root) / CONFIG_FILE
    if not config_path.is_file():
        return WebAppSettings()

    data = tomli.loads(config_path.read_text())
    logger.debug(f"Loaded web application settings from {config_path}")
    return WebAppSettings.model_validate(data.get("webapp", {}))
