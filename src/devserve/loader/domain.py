"""Isolating import domains for reloadable web applications.

An IsolatingDomain loads an application's modules from its own search path
into a private module table. Code executed in the domain imports through the
domain because every module it loads gets a ``__builtins__`` mapping whose
``__import__`` is the domain's.

The domain sits beneath a RuntimeDomain that exposes only the interpreter's
standard library. Everything else is found through two ordered chains of
attempts, one for modules and one for resources:

Modules:
1. Names the host declares as system names come from the host interpreter.
2. The domain's own search path. A miss for a declared server name is final.
3. The host path. If the module's source is there, the entry containing it is
   appended to the domain's search path and step 2 is retried.

Resources:
a. The name with ``META-INF/services/`` stripped, from the host path, if it is
   a system name.
b. The domain's own search path.
c. The host path, widening the domain's search path as for modules (logged).

An activated domain publishes the modules it loads in ``sys.modules`` and
answers ``importlib`` lookups for names on its own search path, so that
libraries resolving annotations or importing dynamically see the live
generation. Server names are never published. Closing the domain withdraws
both and discards everything loaded through it; the next domain starts from
an empty module table.

Compiled extension modules cannot be initialised once per generation. They
are loaded once per file and shared by every domain that resolves them.
"""

import builtins
import importlib
import importlib.util
import itertools
import logging
import sys
import threading
import weakref
from collections.abc import Iterable, Sequence
from importlib.abc import Loader, MetaPathFinder
from importlib.machinery import EXTENSION_SUFFIXES, ExtensionFileLoader, ModuleSpec
from pathlib import Path
from types import ModuleType
from typing import Any, Protocol

from devserve.loader.errors import ResourceNotFoundError
from devserve.loader.names import matches_prefix
from devserve.loader.paths import (
    HostPath,
    SearchPathEntry,
    classpath_entry_for_resource,
    read_address,
)
from devserve.treelog import LogLevel, TreeLogger

logger = logging.getLogger(__name__)

SERVICES_PREFIX = "META-INF/services/"

# XML and template libraries resolved by the host for every application
FIXED_SYSTEM_PREFIXES = ("lxml.", "jinja2.", "markupsafe.")

_generations = itertools.count(1)

# Extension modules by (name, file); shared across generations
_extensions: dict[tuple[str, str], ModuleType] = {}
_extensions_lock = threading.Lock()


class WebAppContext(Protocol):
    """The enclosing application context a domain classifies names with."""

    def is_system_name(self, name: str) -> bool:
        """True for names the host provides to the application."""
        ...

    def is_server_name(self, name: str) -> bool:
        """True for names that belong to the server and must never be loaded by the app."""
        ...


class RuntimeDomain:
    """Parent domain exposing only the interpreter's own modules.

    Neither the tool's modules nor any installed distribution is visible here.
    """

    def owns(self, name: str) -> bool:
        top = name.partition(".")[0]
        return top in sys.stdlib_module_names or top in sys.builtin_module_names

    def resolve_type(self, name: str) -> ModuleType:
        if not self.owns(name):
            raise ModuleNotFoundError(f"No module named {name!r}", name=name)
        return importlib.import_module(name)


RUNTIME_DOMAIN = RuntimeDomain()


def strip_services_prefix(name: str) -> str:
    return name[len(SERVICES_PREFIX) :] if name.startswith(SERVICES_PREFIX) else name


def module_resources(name: str) -> list[tuple[str, bool]]:
    """Candidate resources for a module: package, then extension modules, then source."""
    base = name.replace(".", "/")
    return [
        (f"{base}/__init__.py", True),
        *((base + suffix, False) for suffix in EXTENSION_SUFFIXES),
        (f"{base}.py", False),
    ]


def is_extension(resource_name: str) -> bool:
    return resource_name.endswith(tuple(EXTENSION_SUFFIXES))


class SharedExtensionLoader(ExtensionFileLoader):
    """Extension loader that hands back the module it already initialised."""

    module: ModuleType | None = None

    def create_module(self, spec: ModuleSpec) -> ModuleType:
        if self.module is not None:
            return self.module
        return super().create_module(spec)

    def exec_module(self, module: ModuleType) -> None:
        if module is self.module:
            return
        super().exec_module(module)
        self.module = module


def load_extension(name: str, path: str) -> ModuleType:
    """Load a compiled extension module, or return the copy already loaded from path."""
    with _extensions_lock:
        module = _extensions.get((name, path))
        if module is None:
            loader = SharedExtensionLoader(name, path)
            spec = importlib.util.spec_from_file_location(name, path, loader=loader)
            module = importlib.util.module_from_spec(spec)
            loader.exec_module(module)
            _extensions[(name, path)] = module
            logger.debug(f"Loaded extension module {name} from {path}")
        return module


def _is_domain_module(module: Any) -> bool:
    return isinstance(getattr(module, "__loader__", None), DomainLoader)


def _is_self_or_parent(candidate: str, name: str) -> bool:
    return candidate == name or name.startswith(candidate + ".")


def _calc_package(globals: dict[str, Any] | None) -> str:
    if not globals:
        raise ImportError("attempted relative import with no known parent package")
    package = globals.get("__package__")
    if package is not None:
        return package
    module_name = globals["__name__"]
    return module_name if "__path__" in globals else module_name.rpartition(".")[0]


class DomainLoader(Loader):
    """Loads one module's source from a search-path entry into a domain."""

    def __init__(self, domain: "IsolatingDomain", entry: SearchPathEntry, resource_name: str):
        self.domain = domain
        self.entry = entry
        self.resource_name = resource_name
        self.module: ModuleType | None = None

    def create_module(self, spec: ModuleSpec) -> ModuleType | None:
        # importlib re-enters with a spec the domain already executed
        return self.module

    def exec_module(self, module: ModuleType) -> None:
        if module is self.module:
            return
        source = self.entry.read(self.resource_name)
        code = compile(source, module.__spec__.origin, "exec", dont_inherit=True)
        exec(code, module.__dict__)
        self.module = module

    def get_source(self, fullname: str) -> str:
        return importlib.util.decode_source(self.entry.read(self.resource_name))


class DomainFinder(MetaPathFinder):
    """Answers ``importlib`` lookups with the active domain's application modules.

    Sits at the front of ``sys.meta_path`` while any domain is active. Only
    names found on the most recently activated domain's own search path are
    claimed; everything else is left to the host's finders.
    """

    def __init__(self):
        self._domains: list[IsolatingDomain] = []
        self._lock = threading.Lock()

    @property
    def active(self) -> "IsolatingDomain | None":
        with self._lock:
            return self._domains[-1] if self._domains else None

    def add(self, domain: "IsolatingDomain") -> None:
        with self._lock:
            if domain not in self._domains:
                self._domains.append(domain)
            if self not in sys.meta_path:
                sys.meta_path.insert(0, self)

    def remove(self, domain: "IsolatingDomain") -> None:
        with self._lock:
            if domain in self._domains:
                self._domains.remove(domain)
            if not self._domains and self in sys.meta_path:
                sys.meta_path.remove(self)

    def find_spec(
        self, fullname: str, path: Sequence[str] | None = None, target: ModuleType | None = None
    ) -> ModuleSpec | None:
        domain = self.active
        if domain is None or not domain.claims(fullname):
            return None
        return domain.resolve_type(fullname).__spec__


DOMAIN_FINDER = DomainFinder()


class IsolatingDomain:
    """A generation of application code, isolated from the host's modules.

    Module loading is serialized by a re-entrant import lock; modules already
    loaded are returned without it. The search path is a tuple replaced on
    append, so readers never lock.
    """

    def __init__(
        self,
        context: WebAppContext,
        logger: TreeLogger,
        search_path: Iterable[SearchPathEntry | str | Path] = (),
        *,
        host_path: HostPath | None = None,
        parent: RuntimeDomain = RUNTIME_DOMAIN,
        augment_roots: Sequence[str | Path] | None = None,
        warn_on_augment: bool = True,
    ):
        self.generation = next(_generations)
        self._context = context
        self._logger = logger
        self._host = host_path or HostPath()
        self._parent = parent
        self._warn_on_augment = warn_on_augment
        self._augment_roots = (
            None if augment_roots is None else [Path(r).resolve().as_uri() for r in augment_roots]
        )

        self._entries: tuple[SearchPathEntry, ...] = ()
        self._entries_lock = threading.Lock()
        self._import_lock = threading.RLock()
        self._modules: dict[str, ModuleType] = {}
        self._loading: set[str] = set()
        self._local: set[str] = set()
        self._published: dict[str, ModuleType] = {}
        self._types: weakref.WeakSet[type] = weakref.WeakSet()
        self._active = False
        self._closed = False

        self._builtins = dict(vars(builtins))
        self._builtins["__import__"] = self._import
        self._builtins["__build_class__"] = self._build_class

        self._find_type_attempts = (
            self._resolve_system_type,
            self._resolve_own_type,
            self._resolve_augmented_type,
        )
        self._find_resource_attempts = (
            self._resolve_system_resource,
            self._resolve_own_resource,
            self._resolve_augmented_resource,
        )

        for entry in search_path:
            self.append_search_path(entry)

    def __repr__(self) -> str:
        return f"IsolatingDomain(generation={self.generation}, entries={len(self._entries)})"

    @property
    def search_path(self) -> tuple[SearchPathEntry, ...]:
        return self._entries

    @property
    def modules(self) -> dict[str, ModuleType]:
        """Snapshot of the modules resolved through this domain."""
        with self._import_lock:
            return dict(self._modules)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active(self) -> bool:
        return self._active

    def is_system_path(self, name: str) -> bool:
        """Check whether a module or resource name is resolved by the host."""
        name = name.replace("/", ".")
        return self._context.is_system_name(name) or any(
            matches_prefix(name, prefix) for prefix in FIXED_SYSTEM_PREFIXES
        )

    # Search path

    def append_search_path(self, entry: SearchPathEntry | str | Path) -> bool:
        """Append an entry to the search path.

        Appending an entry that is already present has no effect.

        Returns:
            True once the entry is on the search path.

        Raises:
            FileNotFoundError: If the entry does not exist.
            ValueError: If a URL does not use the file scheme.
        """
        if isinstance(entry, Path):
            entry = SearchPathEntry.from_path(entry)
        elif isinstance(entry, str):
            entry = SearchPathEntry.from_url(entry)
        with self._entries_lock:
            if entry not in self._entries:
                self._entries = (*self._entries, entry)
        return True

    def _augment_allowed(self, url: str) -> bool:
        if self._augment_roots is None:
            return True
        return any(url == root or url.startswith(root.rstrip("/") + "/") for root in self._augment_roots)

    def _add_containing_entry(self, message: str, found: str, resource_name: str) -> bool:
        level = LogLevel.WARN if self._warn_on_augment else LogLevel.DEBUG
        branch = self._logger.branch(level, message)
        url = classpath_entry_for_resource(resource_name, found, branch)
        if url is None:
            return False
        if not self._augment_allowed(url):
            branch.log(level, f"Search path entry, {url}, is outside the permitted roots; not adding it")
            return False
        return self._add_search_path(
            url,
            branch.branch(
                level, f"Adding search path entry, {url}, to the web application search path for this session"
            ),
        )

    def _add_search_path(self, url: str, logger: TreeLogger) -> bool:
        try:
            return self.append_search_path(url)
        except (OSError, ValueError) as e:
            logger.log(LogLevel.ERROR, f"Failed to add container URL: '{url}'", e)
            return False

    # Modules

    def resolve_type(self, name: str) -> ModuleType:
        """Resolve a dotted module name through this domain.

        Raises:
            ModuleNotFoundError: If the module cannot be found.
            ImportError: If the domain has been closed.
        """
        module = self._modules.get(name)
        if module is not None and name not in self._loading:
            return module
        with self._import_lock:
            if self._closed:
                raise ImportError(f"Import domain {self.generation} has been discarded", name=name)
            module = self._modules.get(name)
            if module is not None:
                return module
            if self._parent.owns(name):
                module = self._parent.resolve_type(name)
                self._modules[name] = module
                return module
            return self._find_type(name)

    def load_attribute(self, reference: str) -> Any:
        """Resolve a ``module:attribute.path`` reference.

        Raises:
            ModuleNotFoundError: If the module cannot be found.
            AttributeError: If the attribute does not exist.
        """
        module_name, _, attribute = reference.partition(":")
        target: Any = self.resolve_type(module_name)
        for part in attribute.split(".") if attribute else ():
            target = getattr(target, part)
        return target

    def _find_type(self, name: str) -> ModuleType:
        for attempt in self._find_type_attempts:
            try:
                module = attempt(name)
            except ResourceNotFoundError as e:
                raise ModuleNotFoundError(f"No module named {e.name!r}", name=e.name) from None
            if module is not None:
                return module
        raise ModuleNotFoundError(f"No module named {name!r}", name=name)

    def _resolve_system_type(self, name: str) -> ModuleType | None:
        if not self.is_system_path(name):
            return None
        try:
            module = importlib.import_module(name)
        except ModuleNotFoundError as e:
            if e.name is not None and not _is_self_or_parent(e.name, name):
                raise
            self._logger.log(LogLevel.DEBUG, f"module, {name}, not found in the host interpreter")
            return None
        self._modules[name] = module
        return module

    def _resolve_own_type(self, name: str) -> ModuleType | None:
        module = self._load_from_search_path(name)
        if module is None and self._context.is_server_name(name):
            raise ResourceNotFoundError(name)
        return module

    def _resolve_augmented_type(self, name: str) -> ModuleType:
        for resource_name, _ in module_resources(name):
            found = self._host.find_resource(resource_name)
            if found is not None:
                break
        else:
            raise ResourceNotFoundError(name)

        message = (
            f"Server module, {name}, could not be found in the web app but was found on the host path"
        )
        if not self._add_containing_entry(message, found, resource_name):
            raise ResourceNotFoundError(name)
        module = self._load_from_search_path(name)
        if module is None:
            raise ResourceNotFoundError(name)
        return module

    def _load_from_search_path(self, name: str) -> ModuleType | None:
        parent_name, _, child = name.rpartition(".")
        parent = self.resolve_type(parent_name) if parent_name else None

        for entry in self._entries:
            for resource_name, is_package in module_resources(name):
                if entry.contains(resource_name):
                    return self._exec_module(name, entry, resource_name, is_package, parent, child)
        return None

    def _exec_module(
        self,
        name: str,
        entry: SearchPathEntry,
        resource_name: str,
        is_package: bool,
        parent: ModuleType | None,
        child: str,
    ) -> ModuleType:
        if is_extension(resource_name):
            module = self._load_extension(name, entry, resource_name)
        else:
            module = self._load_source(name, entry, resource_name, is_package)

        if parent is not None and self.owns(parent):
            setattr(parent, child, module)
        logger.debug(f"Loaded {name} from {entry.url} (generation {self.generation})")
        return module

    def _load_source(
        self, name: str, entry: SearchPathEntry, resource_name: str, is_package: bool
    ) -> ModuleType:
        origin = entry.origin(resource_name)
        spec = ModuleSpec(
            name, DomainLoader(self, entry, resource_name), origin=origin, is_package=is_package
        )
        spec.has_location = True
        if is_package:
            spec.submodule_search_locations = [origin.rpartition("/")[0]]

        module = importlib.util.module_from_spec(spec)
        module.__builtins__ = self._builtins
        self._loading.add(name)
        self._modules[name] = module
        self._local.add(name)
        if self._active:
            self._publish(name, module)
        try:
            spec.loader.exec_module(module)
        except BaseException:
            self._modules.pop(name, None)
            self._local.discard(name)
            self._withdraw(name)
            raise
        finally:
            self._loading.discard(name)
        return module

    def _load_extension(self, name: str, entry: SearchPathEntry, resource_name: str) -> ModuleType:
        if entry.is_archive:
            raise ImportError(
                f"Extension module {name} cannot be loaded from archive {entry.url}", name=name
            )
        module = load_extension(name, str(entry.path / resource_name))
        self._modules[name] = module
        self._local.add(name)
        if self._active:
            self._publish(name, module)
        return module

    # Activation

    def activate(self) -> None:
        """Publish this generation's modules to the host import system.

        Modules loaded by the domain, now or later, appear in ``sys.modules``
        and ``importlib`` finds names on the domain's own search path. Server
        names and names the host already holds are left alone.

        Raises:
            ImportError: If the domain has been closed.
        """
        with self._import_lock:
            if self._closed:
                raise ImportError(f"Import domain {self.generation} has been discarded")
            self._active = True
            for name in self._local:
                self._publish(name, self._modules[name])
        DOMAIN_FINDER.add(self)
        logger.debug(f"Activated import domain generation {self.generation}")

    def claims(self, name: str) -> bool:
        """Check whether ``importlib`` should resolve a name through this domain."""
        if self._closed or self._context.is_server_name(name):
            return False
        if self._parent.owns(name) or self.is_system_path(name):
            return False
        if name in self._local:
            return True
        return any(
            entry.contains(resource_name)
            for entry in self._entries
            for resource_name, _ in module_resources(name)
        )

    def _publish(self, name: str, module: ModuleType) -> None:
        if self._context.is_server_name(name):
            return
        current = sys.modules.get(name)
        if current is not None and current is not module and not _is_domain_module(current):
            logger.debug(f"Not publishing {name}; the host already has a module of that name")
            return
        sys.modules[name] = module
        self._published[name] = module

    def _withdraw(self, name: str) -> None:
        module = self._published.pop(name, None)
        if module is not None and sys.modules.get(name) is module:
            del sys.modules[name]

    def _import(
        self,
        name: str,
        globals: dict[str, Any] | None = None,
        locals: dict[str, Any] | None = None,
        fromlist: Sequence[str] | None = (),
        level: int = 0,
    ) -> ModuleType:
        if level > 0:
            absolute = importlib.util.resolve_name("." * level + name, _calc_package(globals))
        else:
            absolute = name
        module = self.resolve_type(absolute)

        if not fromlist:
            if level == 0:
                return self.resolve_type(name.partition(".")[0])
            if not name:
                return module
            cut = len(name) - len(name.partition(".")[0])
            return self.resolve_type(absolute[: len(absolute) - cut])

        if hasattr(module, "__path__"):
            self._handle_fromlist(module, fromlist)
        return module

    def _handle_fromlist(self, module: ModuleType, fromlist: Sequence[str]) -> None:
        for item in fromlist:
            if not isinstance(item, str):
                raise TypeError(f"Item in {module.__name__}.__all__ must be str, not {type(item).__name__}")
            if item == "*":
                names = getattr(module, "__all__", None)
                if names:
                    self._handle_fromlist(module, [n for n in names if n != "*"])
            elif not hasattr(module, item):
                submodule = f"{module.__name__}.{item}"
                try:
                    self.resolve_type(submodule)
                except ModuleNotFoundError as e:
                    if e.name != submodule:
                        raise

    def _build_class(self, func: Any, name: str, *bases: Any, **kwds: Any) -> Any:
        cls = builtins.__build_class__(func, name, *bases, **kwds)
        if isinstance(cls, type):
            self._types.add(cls)
        return cls

    def owns(self, obj: Any) -> bool:
        """Check whether a module, class or instance came from this domain."""
        if isinstance(obj, ModuleType):
            loader = getattr(obj, "__loader__", None)
            return isinstance(loader, DomainLoader) and loader.domain is self
        cls = obj if isinstance(obj, type) else type(obj)
        return cls in self._types

    # Resources

    def resolve_resource(self, name: str) -> str | None:
        """Resolve a resource name to its address, or None if absent."""
        if self._closed:
            return None
        for attempt in self._find_resource_attempts:
            address = attempt(name)
            if address is not None:
                return address
        return None

    def read_resource(self, name: str) -> bytes | None:
        """Read a resource visible to this domain, or None if absent."""
        address = self.resolve_resource(name)
        return read_address(address) if address is not None else None

    def _resolve_system_resource(self, name: str) -> str | None:
        stripped = strip_services_prefix(name)
        return self._host.find_resource(stripped) if self.is_system_path(stripped) else None

    def _resolve_own_resource(self, name: str) -> str | None:
        for entry in self._entries:
            address = entry.find(name)
            if address is not None:
                return address
        return None

    def _resolve_augmented_resource(self, name: str) -> str | None:
        found = self._host.find_resource(name)
        if found is not None:
            message = (
                f"Server resource '{name}' could not be found in the web application, "
                "but was found on the host path"
            )
            if not self._add_containing_entry(message, found, name):
                return None
        return self._resolve_own_resource(name)

    def close(self) -> None:
        """Withdraw published modules and discard everything loaded through this domain."""
        DOMAIN_FINDER.remove(self)
        with self._import_lock:
            self._closed = True
            self._active = False
            for name in list(self._published):
                self._withdraw(name)
            self._modules.clear()
            self._local.clear()
            with self._entries_lock:
                self._entries = ()
        logger.debug(f"Closed import domain generation {self.generation}")
