"""Polling file watcher that triggers web application reloads.

Watches an application root for changes to:
- Python sources
- Archives in the library directory (zip, wheel, pyz)
- devserve.toml
"""

import asyncio
import fnmatch
import hashlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PATTERNS = ["*.py", "*.zip", "*.whl", "*.pyz", "*.toml"]
DEFAULT_IGNORE_PATTERNS = ["__pycache__", "*.pyc", ".git", ".venv", "*.egg-info", ".pytest_cache"]


class ChangeType(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass
class FileChange:
    """A detected file change."""

    path: Path
    change_type: ChangeType
    detected_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class FileChangeWatcher:
    """Scans directories for created, modified and deleted files.

    A file counts as modified only when its content hash changes; the hash is
    recomputed only for files whose modification time moved.
    """

    def __init__(
        self,
        watch_dirs: list[str | Path],
        patterns: list[str] | None = None,
        ignore_patterns: list[str] | None = None,
    ):
        self.watch_dirs = [Path(d) for d in watch_dirs]
        self.patterns = patterns or list(DEFAULT_PATTERNS)
        self.ignore_patterns = ignore_patterns or list(DEFAULT_IGNORE_PATTERNS)

        self._file_states: dict[Path, tuple[float, str]] = {}  # path -> (mtime, hash)
        self._initialized = False

    def _should_ignore(self, path: Path) -> bool:
        return any(
            fnmatch.fnmatch(part, pattern) for part in path.parts for pattern in self.ignore_patterns
        )

    def _matches_pattern(self, path: Path) -> bool:
        return any(fnmatch.fnmatch(path.name, pattern) for pattern in self.patterns)

    @staticmethod
    def _compute_hash(path: Path) -> str:
        return hashlib.sha256(path.read_bytes()).hexdigest()

    def _scan_files(self) -> dict[Path, tuple[float, str]]:
        files: dict[Path, tuple[float, str]] = {}

        for watch_dir in self.watch_dirs:
            if not watch_dir.is_dir():
                continue

            for path in watch_dir.rglob("*"):
                relative = path.relative_to(watch_dir)
                if self._should_ignore(relative) or not self._matches_pattern(path):
                    continue
                try:
                    if not path.is_file():
                        continue
                    mtime = path.stat().st_mtime
                    previous = self._file_states.get(path)
                    if previous is not None and previous[0] == mtime:
                        files[path] = previous
                    else:
                        files[path] = (mtime, self._compute_hash(path))
                except OSError as e:
                    logger.debug(f"Error scanning {path}: {e}")

        return files

    def initialize(self) -> None:
        """Record the current state of every watched file."""
        self._file_states = self._scan_files()
        self._initialized = True
        logger.debug(f"FileChangeWatcher initialized with {len(self._file_states)} files")

    def detect_changes(self) -> list[FileChange]:
        """Detect changes since the last scan.

        The first call only initializes the watcher and reports nothing.

        Returns:
            The changes, in no particular order.
        """
        if not self._initialized:
            self.initialize()
            return []

        current_files = self._scan_files()
        changes: list[FileChange] = []

        for path, (_mtime, file_hash) in current_files.items():
            previous = self._file_states.get(path)
            if previous is None:
                changes.append(FileChange(path=path, change_type=ChangeType.CREATED))
            elif previous[1] != file_hash:
                changes.append(FileChange(path=path, change_type=ChangeType.MODIFIED))

        for path in self._file_states.keys() - current_files.keys():
            changes.append(FileChange(path=path, change_type=ChangeType.DELETED))

        self._file_states = current_files
        return changes

    async def watch_loop(
        self,
        callback: Callable[[list[FileChange]], Awaitable[None]],
        poll_interval: float = 1.0,
        debounce_seconds: float = 0.5,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Poll until stopped, calling back once changes have settled.

        Args:
            callback: Async function called with the accumulated changes.
            poll_interval: Seconds between directory scans.
            debounce_seconds: Quiet period required before the callback runs.
            stop_event: Ends the loop when set.
        """
        self.initialize()
        pending_changes: list[FileChange] = []
        last_change_time: datetime | None = None

        while stop_event is None or not stop_event.is_set():
            changes = await asyncio.to_thread(self.detect_changes)

            if changes:
                pending_changes.extend(changes)
                last_change_time = datetime.now(UTC)

            if (
                pending_changes
                and last_change_time
                and (datetime.now(UTC) - last_change_time).total_seconds() >= debounce_seconds
            ):
                logger.info(f"Detected {len(pending_changes)} file changes")
                await callback(pending_changes)
                pending_changes = []
                last_change_time = None

            await asyncio.sleep(poll_interval)
