"""The live ASGI application built from one import domain generation.

An ApplicationHandle is built once per generation and never patched: a reload
shuts the old handle down and builds a new one through a fresh domain.
"""

import asyncio
import threading
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, TypeVar

from devserve.config import WebAppSettings
from devserve.loader import IsolatingDomain
from devserve.treelog import LogLevel, TreeLogger
from devserve.webapp.errors import ApplicationLoadError


T = TypeVar("T")

Message = dict[str, Any]
ASGIApp = Callable[[dict[str, Any], Callable[[], Awaitable[Message]], Callable[[Message], Awaitable[None]]], Awaitable[None]]


class LifespanPortal:
    """Runs coroutines on an event loop that lives in another thread.

    Lifecycle calls are synchronous, but an application's lifespan has to run
    on the loop that later serves its requests. Given no loop, the portal
    starts and owns a private one.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._owned = loop is None
        self._thread: threading.Thread | None = None
        if loop is None:
            loop = asyncio.new_event_loop()
            self._thread = threading.Thread(
                target=self._run, args=(loop,), name="devserve-lifespan", daemon=True
            )
            self._thread.start()
        self._loop = loop

    @staticmethod
    def _run(loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        loop.run_forever()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def call(self, coro: Coroutine[Any, Any, T], timeout: float | None = None) -> T:
        """Run a coroutine on the portal's loop and wait for its result."""
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout)

    def close(self) -> None:
        """Stop the private loop, if this portal owns one."""
        if not self._owned or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join()
        self._loop.close()


class Lifespan:
    """Drives the ASGI lifespan protocol for one application.

    In ``auto`` mode an application that fails before acknowledging startup is
    treated as not supporting lifespan; in ``on`` mode that is a load error.
    """

    def __init__(self, app: ASGIApp, mode: str, logger: TreeLogger):
        self.state: dict[str, Any] = {}
        self.supported = True
        self._app = app
        self._mode = mode
        self._logger = logger
        self._task: asyncio.Task[None] | None = None
        self._shutdown_requested = False

    async def startup(self) -> None:
        loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[Message] = asyncio.Queue()
        self._startup_done: asyncio.Future[None] = loop.create_future()
        self._shutdown_done: asyncio.Future[None] = loop.create_future()
        self._task = loop.create_task(self._main())
        await self._queue.put({"type": "lifespan.startup"})
        await self._startup_done

    async def shutdown(self) -> None:
        if self._task is None:
            return
        if self.supported and not self._task.done():
            self._shutdown_requested = True
            await self._queue.put({"type": "lifespan.shutdown"})
            await self._shutdown_done
        await self._task

    async def _main(self) -> None:
        scope = {
            "type": "lifespan",
            "asgi": {"version": "3.0", "spec_version": "2.0"},
            "state": self.state,
        }
        try:
            await self._app(scope, self._receive, self._send)
        except Exception as e:
            if not self._startup_done.done():
                if self._mode == "auto":
                    self.supported = False
                    self._logger.log(LogLevel.TRACE, "ASGI 'lifespan' protocol appears unsupported")
                else:
                    self._fail(self._startup_done, "Application startup failed", e)
            elif self._shutdown_requested and not self._shutdown_done.done():
                self._fail(self._shutdown_done, "Application shutdown failed", e)
            else:
                self._logger.log(LogLevel.ERROR, "Application lifespan raised an exception", e)
        finally:
            if not self._startup_done.done():
                self.supported = False
                self._startup_done.set_result(None)
            if not self._shutdown_done.done():
                self._shutdown_done.set_result(None)

    @staticmethod
    def _fail(future: asyncio.Future[None], message: str, cause: BaseException | None = None) -> None:
        error = ApplicationLoadError(message)
        error.__cause__ = cause
        future.set_exception(error)

    async def _receive(self) -> Message:
        return await self._queue.get()

    async def _send(self, message: Message) -> None:
        kind = message["type"]
        if kind == "lifespan.startup.complete":
            self._startup_done.set_result(None)
        elif kind == "lifespan.startup.failed":
            self._fail(self._startup_done, f"Application startup failed: {message.get('message', '')}")
        elif kind == "lifespan.shutdown.complete":
            self._shutdown_done.set_result(None)
        elif kind == "lifespan.shutdown.failed":
            self._fail(self._shutdown_done, f"Application shutdown failed: {message.get('message', '')}")


class ApplicationHandle:
    """An ASGI application loaded through one import domain."""

    def __init__(
        self,
        domain: IsolatingDomain,
        app: ASGIApp,
        settings: WebAppSettings,
        logger: TreeLogger,
    ):
        self.domain = domain
        self.app = app
        self.entry_point = settings.entry_point
        self._lifespan = Lifespan(app, settings.lifespan, logger) if settings.lifespan != "off" else None

    @classmethod
    def build(
        cls, domain: IsolatingDomain, settings: WebAppSettings, logger: TreeLogger
    ) -> "ApplicationHandle":
        """Resolve the entry point through a domain and wrap the application.

        Raises:
            ApplicationLoadError: If the entry point cannot be resolved or is not callable.
        """
        try:
            target = domain.load_attribute(settings.entry_point)
        except (ImportError, AttributeError) as e:
            raise ApplicationLoadError(f"Unable to load entry point {settings.entry_point!r}: {e}") from e

        if settings.factory:
            target = target()
        if not callable(target):
            raise ApplicationLoadError(
                f"Entry point {settings.entry_point!r} is not an ASGI application: {target!r}"
            )
        logger.log(LogLevel.DEBUG, f"Built {settings.entry_point} in generation {domain.generation}")
        return cls(domain, target, settings, logger)

    @property
    def state(self) -> dict[str, Any]:
        return self._lifespan.state if self._lifespan is not None else {}

    def startup(self, portal: LifespanPortal) -> None:
        if self._lifespan is not None:
            portal.call(self._lifespan.startup())

    def shutdown(self, portal: LifespanPortal) -> None:
        if self._lifespan is not None:
            portal.call(self._lifespan.shutdown())

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] in ("http", "websocket"):
            scope = {**scope, "state": dict(self.state)}
        await self.app(scope, receive, send)
