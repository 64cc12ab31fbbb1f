"""Reloadable web application host.

The host owns the current import domain and the application handle built
through it. A reload does not patch modules in place: it shuts the handle
down, runs the unload hooks, discards the domain and builds everything again
from disk. The listening server keeps pointing at the host, which dispatches
each request to whatever handle is current.

States:

    STOPPED -> STARTING -> RUNNING -> RELOADING -> RUNNING -> STOPPING -> STOPPED
                                          |
                                          +-> FAILED (until start() or stop())
"""

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from fastapi.responses import PlainTextResponse

from devserve.config import WebAppSettings, load_webapp_settings
from devserve.loader import HostPath, IsolatingDomain, NamePattern, SearchPathEntry
from devserve.treelog import LogLevel, TreeLogger
from devserve.webapp.errors import LifecycleError
from devserve.webapp.handle import ApplicationHandle, LifespanPortal

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = (".zip", ".whl", ".pyz")


class HostState(str, Enum):
    """Lifecycle states of the reloadable host."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RELOADING = "reloading"
    STOPPING = "stopping"
    FAILED = "failed"


class UnloadHook(Protocol):
    """Releases process-wide resources pinned by a domain about to be discarded."""

    def before_discard(self, domain: IsolatingDomain) -> None: ...


class LoggingHandlerUnloadHook:
    """Detaches logging handlers and filters created by the outgoing domain.

    The logging registry is process-wide, so a handler class defined by the
    application would otherwise keep its whole generation reachable.
    """

    def before_discard(self, domain: IsolatingDomain) -> None:
        loggers = [logging.getLogger()] + [
            item for item in logging.Logger.manager.loggerDict.values() if isinstance(item, logging.Logger)
        ]
        for target in loggers:
            for handler in list(target.handlers):
                if domain.owns(handler):
                    target.removeHandler(handler)
                    handler.close()
            for log_filter in list(target.filters):
                if domain.owns(log_filter):
                    target.removeFilter(log_filter)


class ReloadableApplication:
    """Hosts one web application and rebuilds it from disk on reload.

    The host is the enclosing context of its domains: it decides which names
    the host interpreter provides (system names) and which belong to the
    server and stay hidden (server names).
    """

    def __init__(
        self,
        logger: TreeLogger,
        app_root: str | Path,
        settings: WebAppSettings | None = None,
        *,
        host_path: HostPath | None = None,
        portal: LifespanPortal | None = None,
    ):
        self.app_root = Path(app_root)
        self._logger = logger
        self._fixed_settings = settings
        self._settings = settings or WebAppSettings()
        self._host_path = host_path
        self._portal = portal
        self._owns_portal = False

        self._lock = threading.RLock()
        self._state = HostState.STOPPED
        self._domain: IsolatingDomain | None = None
        self._handle: ApplicationHandle | None = None
        self._unload_hooks: list[UnloadHook] = [LoggingHandlerUnloadHook()]
        self._apply_name_patterns()

    def _apply_name_patterns(self) -> None:
        self._system_names = NamePattern(self._settings.system_names)
        self._server_names = NamePattern(self._settings.server_names)

    # Context predicates

    def is_system_name(self, name: str) -> bool:
        return self._system_names.matches(name)

    def is_server_name(self, name: str) -> bool:
        return self._server_names.matches(name)

    # State

    @property
    def state(self) -> HostState:
        return self._state

    @property
    def settings(self) -> WebAppSettings:
        return self._settings

    @property
    def domain(self) -> IsolatingDomain | None:
        return self._domain

    @property
    def handle(self) -> ApplicationHandle | None:
        return self._handle

    def add_unload_hook(self, hook: UnloadHook) -> None:
        with self._lock:
            self._unload_hooks.append(hook)

    def attach_portal(self, portal: LifespanPortal) -> None:
        """Run application lifespans on the given portal's loop from now on."""
        with self._lock:
            self._release_portal()
            self._portal = portal

    # Lifecycle

    def start(self) -> None:
        """Build a fresh domain and application handle.

        Raises:
            LifecycleError: If the host is not stopped or the application cannot be built.
        """
        with self._lock:
            if self._state not in (HostState.STOPPED, HostState.FAILED):
                raise LifecycleError(f"Cannot start a web application that is {self._state.value}")
            self._state = HostState.STARTING
            try:
                self._construct()
            except Exception as e:
                self._state = HostState.STOPPED
                raise LifecycleError(f"Unable to start web application in {self.app_root}: {e}") from e
            self._state = HostState.RUNNING

    def reload(self) -> None:
        """Discard the running generation and build a new one from disk.

        A failed reload leaves the host FAILED; the old generation is not revived.

        Raises:
            LifecycleError: If the host is not running or the reload fails.
        """
        with self._lock:
            if self._state is not HostState.RUNNING:
                raise LifecycleError(f"Cannot reload a web application that is {self._state.value}")
            self._state = HostState.RELOADING
            try:
                self._teardown()
                self._construct()
            except Exception as e:
                self._state = HostState.FAILED
                raise LifecycleError(f"Unable to reload web application in {self.app_root}: {e}") from e
            self._state = HostState.RUNNING

    def stop(self) -> None:
        """Shut the application down and discard its domain.

        Raises:
            LifecycleError: If the application's shutdown sequence fails.
        """
        with self._lock:
            if self._state is HostState.STOPPED:
                return
            if self._state not in (HostState.RUNNING, HostState.FAILED):
                raise LifecycleError(f"Cannot stop a web application that is {self._state.value}")
            self._state = HostState.STOPPING
            try:
                self._teardown()
            except Exception as e:
                raise LifecycleError(f"Unable to stop web application in {self.app_root}: {e}") from e
            finally:
                self._release_portal()
                self._state = HostState.STOPPED

    def _construct(self) -> None:
        if self._fixed_settings is None:
            self._settings = load_webapp_settings(self.app_root)
            self._apply_name_patterns()

        domain = IsolatingDomain(
            self,
            self._logger,
            self._initial_search_path(),
            host_path=self._host_path,
            augment_roots=self._settings.augment_roots,
            warn_on_augment=self._settings.warn_on_augment,
        )
        self._domain = domain
        try:
            domain.activate()
            handle = ApplicationHandle.build(domain, self._settings, self._logger)
            handle.startup(self._get_portal())
        except Exception:
            self._discard(domain)
            raise
        self._handle = handle
        self._logger.log(
            LogLevel.TRACE, f"Started {self._settings.entry_point} in generation {domain.generation}"
        )

    def _teardown(self) -> None:
        handle, domain = self._handle, self._domain
        self._handle = None
        try:
            if handle is not None:
                handle.shutdown(self._get_portal())
        finally:
            if domain is not None:
                self._discard(domain)

    def _discard(self, domain: IsolatingDomain) -> None:
        try:
            for hook in list(self._unload_hooks):
                hook.before_discard(domain)
        finally:
            domain.close()
            if self._domain is domain:
                self._domain = None
            logger.debug(f"Discarded generation {domain.generation} of {self.app_root}")

    def _initial_search_path(self) -> list[SearchPathEntry]:
        root = self.app_root.resolve()
        if not root.is_dir():
            raise FileNotFoundError(f"Application root is not a directory: {root}")

        entries = []
        for source_dir in self._settings.source_dirs:
            path = root / source_dir
            if path.is_dir():
                entries.append(SearchPathEntry.from_path(path))
            else:
                self._logger.log(LogLevel.WARN, f"Source directory {path} does not exist; skipping")

        lib_dir = root / self._settings.lib_dir
        if lib_dir.is_dir():
            for archive in sorted(lib_dir.iterdir()):
                if archive.suffix in ARCHIVE_SUFFIXES and archive.is_file():
                    entries.append(SearchPathEntry.from_path(archive))
        return entries

    def _get_portal(self) -> LifespanPortal:
        if self._portal is None:
            self._portal = LifespanPortal()
            self._owns_portal = True
        return self._portal

    def _release_portal(self) -> None:
        if self._owns_portal and self._portal is not None:
            self._portal.close()
            self._portal = None
            self._owns_portal = False

    # ASGI

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        handle = self._handle
        if handle is not None and self._state is HostState.RUNNING:
            await handle(scope, receive, send)
            return

        if scope["type"] == "http":
            response = PlainTextResponse(
                f"Web application is {self._state.value}", status_code=503
            )
            await response(scope, receive, send)
        elif scope["type"] == "websocket":
            await send({"type": "websocket.close", "code": 1013})
