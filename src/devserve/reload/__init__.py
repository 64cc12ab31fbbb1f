"""Reload-on-change support for the development server.

- Polling scan of the application root
- Change detection by content hash
- Debounced callback loop
"""

from devserve.reload.watcher import ChangeType, FileChange, FileChangeWatcher

__all__ = [
    "ChangeType",
    "FileChange",
    "FileChangeWatcher",
]
