"""Search-path entries, resource addresses and the host path.

A search-path entry is the ``file:`` URL of a directory root (always with a
trailing slash) or of a zip archive. Resources found beneath an entry are
addressed as:

    file:///app/src/pkg/data.json                    (directory root)
    archive:file:///app/lib/util.zip!/pkg/data.json  (archive root)
"""

import functools
import logging
import sys
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

from devserve.treelog import LogLevel, TreeLogger

logger = logging.getLogger(__name__)

FILE_SCHEME = "file"
ARCHIVE_SCHEME = "archive"
ARCHIVE_SEPARATOR = "!/"


def is_valid_resource_name(name: str) -> bool:
    """Reject empty, absolute or parent-relative resource names."""
    if not name or name.startswith("/") or "\\" in name:
        return False
    return ".." not in PurePosixPath(name).parts


@functools.lru_cache(maxsize=256)
def _archive_names(path: str, mtime: float) -> frozenset[str]:
    # Keyed on mtime so a rebuilt archive is re-indexed
    with zipfile.ZipFile(path) as archive:
        return frozenset(archive.namelist())


@dataclass(frozen=True)
class SearchPathEntry:
    """One root consulted during resolution: a directory or a zip archive."""

    url: str

    @classmethod
    def from_path(cls, path: str | Path) -> "SearchPathEntry":
        """Create an entry for an existing directory or archive.

        Raises:
            FileNotFoundError: If the path does not exist.
        """
        resolved = Path(path).resolve()
        if not resolved.exists():
            raise FileNotFoundError(f"Search path entry does not exist: {resolved}")
        url = resolved.as_uri()
        if resolved.is_dir():
            url += "/"
        return cls(url)

    @classmethod
    def from_url(cls, url: str) -> "SearchPathEntry":
        """Create an entry from a ``file:`` URL.

        Raises:
            ValueError: If the URL does not use the file scheme.
            FileNotFoundError: If the location does not exist.
        """
        parsed = urlparse(url)
        if parsed.scheme != FILE_SCHEME:
            raise ValueError(f"Unsupported search path URL: {url}")
        return cls.from_path(url2pathname(unquote(parsed.path)))

    @property
    def path(self) -> Path:
        return Path(url2pathname(unquote(urlparse(self.url).path)))

    @property
    def is_archive(self) -> bool:
        return not self.url.endswith("/")

    def address(self, name: str) -> str:
        if self.is_archive:
            return f"{ARCHIVE_SCHEME}:{self.url}{ARCHIVE_SEPARATOR}{name}"
        return self.url + name

    def origin(self, name: str) -> str:
        """Filesystem-style location of a resource, used for tracebacks."""
        return str(self.path / name) if not self.is_archive else f"{self.path}/{name}"

    def contains(self, name: str) -> bool:
        if not is_valid_resource_name(name):
            return False
        try:
            if self.is_archive:
                path = self.path
                return name in _archive_names(str(path), path.stat().st_mtime)
            return (self.path / name).is_file()
        except (OSError, zipfile.BadZipFile) as e:
            logger.debug(f"Unable to read search path entry {self.url}: {e}")
            return False

    def find(self, name: str) -> str | None:
        """Return the address of a resource beneath this entry, if present."""
        return self.address(name) if self.contains(name) else None

    def read(self, name: str) -> bytes:
        """Read a resource beneath this entry.

        Raises:
            FileNotFoundError: If the resource is not present.
        """
        if not self.contains(name):
            raise FileNotFoundError(f"{name} not found in {self.url}")
        if self.is_archive:
            with zipfile.ZipFile(self.path) as archive:
                return archive.read(name)
        return (self.path / name).read_bytes()


def read_address(address: str) -> bytes:
    """Read the resource a ``file:`` or ``archive:`` address points at.

    Raises:
        ValueError: If the address format is not recognized.
        FileNotFoundError: If the resource does not exist.
    """
    scheme, _, rest = address.partition(":")
    if scheme == ARCHIVE_SCHEME and ARCHIVE_SEPARATOR in rest:
        archive_url, _, name = rest.partition(ARCHIVE_SEPARATOR)
        return SearchPathEntry(archive_url).read(name)
    if scheme == FILE_SCHEME:
        return Path(url2pathname(unquote(urlparse(address).path))).read_bytes()
    raise ValueError(f"Unrecognized resource address: {address}")


def classpath_entry_for_resource(
    resource_name: str, address: str, logger: TreeLogger
) -> str | None:
    """Recover the URL of the root that contains a resource.

    Args:
        resource_name: Logical name of the resource (``pkg/data.json``).
        address: Address the resource was found at.
        logger: Receives an error if the address format is not recognized.

    Returns:
        The containing entry's URL, or None if it cannot be derived.
    """
    scheme = address.partition(":")[0]
    if scheme == FILE_SCHEME:
        if address.endswith(resource_name):
            return address[: len(address) - len(resource_name)]
    elif scheme == ARCHIVE_SCHEME:
        suffix = ARCHIVE_SEPARATOR + resource_name
        if address.endswith(suffix):
            return address[len(ARCHIVE_SCHEME) + 1 : len(address) - len(suffix)]
    logger.log(LogLevel.ERROR, f"Found resource but unrecognized address format: {address}")
    return None


class HostPath:
    """The hosting interpreter's import path, used as the outer loader.

    By default the live ``sys.path`` is consulted, so entries added to the host
    process after construction are seen.
    """

    def __init__(self, path: list[str | Path] | None = None):
        self._path = path

    def entries(self) -> list[SearchPathEntry]:
        entries: list[SearchPathEntry] = []
        for item in self._path if self._path is not None else sys.path:
            candidate = Path(item or ".")
            if candidate.is_dir() or (candidate.is_file() and zipfile.is_zipfile(candidate)):
                entries.append(SearchPathEntry.from_path(candidate))
        return entries

    def find_resource(self, name: str) -> str | None:
        """Find a resource on the host path, returning its address."""
        for entry in self.entries():
            address = entry.find(name)
            if address is not None:
                return address
        return None
