"""Errors raised by the reloadable application host."""


class LifecycleError(Exception):
    """A start, reload or stop of the web application could not complete."""


class ApplicationLoadError(LifecycleError):
    """The application's entry point did not produce a usable ASGI application."""
