"""Routes the embedded server's own log records into a TreeLogger.

uvicorn logs through the standard ``uvicorn`` and ``uvicorn.error`` loggers.
The bridge replaces their handlers so that those records land in whichever
tree branch is current, e.g. the branch of a reload in progress.
"""

import logging
import threading

from devserve.treelog import LogLevel, TreeLogger

SERVER_LOGGERS = ("uvicorn", "uvicorn.error")


def escape_control_chars(message: str) -> str:
    """Replace control characters so a record stays on one line."""
    out = []
    for ch in message:
        if ch == "\n":
            out.append("|")
        elif ch == "\r":
            out.append("<")
        elif ch < " " or ch == "\x7f":
            out.append("?")
        else:
            out.append(ch)
    return "".join(out)


def tree_level(levelno: int) -> LogLevel:
    """Map a standard record level onto a diagnostic level."""
    if levelno >= logging.ERROR:
        return LogLevel.ERROR
    if levelno >= logging.WARNING:
        return LogLevel.WARN
    if levelno >= logging.INFO:
        return LogLevel.TRACE
    return LogLevel.SPAM


class ServerLogBridge(logging.Handler):
    """A logging handler that forwards records to the current TreeLogger."""

    def __init__(self, target: TreeLogger | None = None):
        super().__init__(level=logging.NOTSET)
        self._target = target
        self._target_lock = threading.Lock()

    @property
    def target(self) -> TreeLogger | None:
        return self._target

    def set_target(self, target: TreeLogger | None) -> TreeLogger | None:
        """Replace the current target, returning the previous one."""
        with self._target_lock:
            previous, self._target = self._target, target
        return previous

    def emit(self, record: logging.LogRecord) -> None:
        target = self._target
        if target is None:
            return
        level = tree_level(record.levelno)
        if not target.is_loggable(level):
            return
        try:
            message = escape_control_chars(record.getMessage())
        except (TypeError, ValueError):
            self.handleError(record)
            return
        exc = record.exc_info[1] if record.exc_info else None
        target.log(level, message, exc)

    def install(self, names: tuple[str, ...] = SERVER_LOGGERS) -> None:
        """Make this bridge the only handler of the server's loggers."""
        for name in names:
            server_logger = logging.getLogger(name)
            for handler in list(server_logger.handlers):
                server_logger.removeHandler(handler)
            server_logger.addHandler(self)
            server_logger.setLevel(logging.DEBUG)
            server_logger.propagate = False

    def uninstall(self, names: tuple[str, ...] = SERVER_LOGGERS) -> None:
        for name in names:
            server_logger = logging.getLogger(name)
            server_logger.removeHandler(self)
            server_logger.propagate = True
