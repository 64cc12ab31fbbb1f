"""Reloadable hosting of a web application.

- Builds the application through a fresh import domain on every start
- Reloads by discarding the whole generation, never patching in place
- Dispatches requests to the current generation
"""

from devserve.webapp.context import (
    HostState,
    LoggingHandlerUnloadHook,
    ReloadableApplication,
    UnloadHook,
)
from devserve.webapp.errors import ApplicationLoadError, LifecycleError
from devserve.webapp.handle import ApplicationHandle, LifespanPortal

__all__ = [
    "ApplicationHandle",
    "ApplicationLoadError",
    "HostState",
    "LifecycleError",
    "LifespanPortal",
    "LoggingHandlerUnloadHook",
    "ReloadableApplication",
    "UnloadHook",
]
