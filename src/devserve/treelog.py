"""Hierarchical diagnostic logging.

A TreeLogger writes level-tagged messages to a standard ``logging.Logger`` and
can open nested branches. Each branch indents its messages one step further,
so a reload or a classpath augmentation reads as a small tree in the output:

    Reloading web app to reflect changes in /srv/app
      Server module, util, could not be found in the web app ...
        Adding search path entry, file:///srv/shared/, ...
      Reload completed successfully
"""

import logging
from enum import IntEnum

logger = logging.getLogger(__name__)

INDENT = "  "


class LogLevel(IntEnum):
    """Diagnostic levels, mapped onto standard logging levels."""

    ERROR = logging.ERROR
    WARN = logging.WARNING
    INFO = logging.INFO
    TRACE = 15
    DEBUG = logging.DEBUG
    SPAM = 5


logging.addLevelName(LogLevel.TRACE, "TRACE")
logging.addLevelName(LogLevel.SPAM, "SPAM")


class TreeLogger:
    """Level-tagged logger with nested branch scoping."""

    def __init__(self, target: logging.Logger | None = None, depth: int = 0):
        self._target = target or logger
        self._depth = depth

    @property
    def target(self) -> logging.Logger:
        return self._target

    @property
    def depth(self) -> int:
        return self._depth

    def is_loggable(self, level: LogLevel) -> bool:
        """Check whether a message at this level would be emitted."""
        return self._target.isEnabledFor(level)

    def log(self, level: LogLevel, message: str, exc: BaseException | None = None) -> None:
        """Log a message at this branch's depth.

        Args:
            level: Severity of the message.
            message: Text to log.
            exc: Optional exception whose traceback is attached.
        """
        if not self.is_loggable(level):
            return
        exc_info = (type(exc), exc, exc.__traceback__) if exc is not None else None
        self._target.log(level, "%s%s", INDENT * self._depth, message, exc_info=exc_info)

    def branch(
        self, level: LogLevel, message: str, exc: BaseException | None = None
    ) -> "TreeLogger":
        """Log a message and return a child logger nested beneath it."""
        self.log(level, message, exc)
        return TreeLogger(self._target, self._depth + 1)

    def __repr__(self) -> str:
        return f"TreeLogger({self._target.name!r}, depth={self._depth})"
