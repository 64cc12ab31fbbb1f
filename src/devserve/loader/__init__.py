"""Isolated, discardable import domains for application code.

- Ordered resolution chains for modules and resources
- Two-tier hierarchy: standard library beneath an isolating domain
- Search path widened from the host path on demand, with a warning
- Active generation published to sys.modules and importlib
"""

from devserve.loader.domain import (
    DOMAIN_FINDER,
    RUNTIME_DOMAIN,
    IsolatingDomain,
    RuntimeDomain,
    WebAppContext,
)
from devserve.loader.errors import ResourceNotFoundError
from devserve.loader.names import NamePattern
from devserve.loader.paths import HostPath, SearchPathEntry, classpath_entry_for_resource

__all__ = [
    "DOMAIN_FINDER",
    "HostPath",
    "IsolatingDomain",
    "NamePattern",
    "RUNTIME_DOMAIN",
    "ResourceNotFoundError",
    "RuntimeDomain",
    "SearchPathEntry",
    "WebAppContext",
    "classpath_entry_for_resource",
]
