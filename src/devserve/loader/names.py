"""Module-name patterns used to classify names as host or application names.

Pattern syntax:
- ``pkg.`` matches the package ``pkg`` and everything beneath it
- ``pkg.mod`` matches exactly that name
- a leading ``-`` excludes matching names, and exclusions win
"""

from collections.abc import Iterable


def matches_prefix(name: str, prefix: str) -> bool:
    """Check a dotted name against a single pattern (without the ``-``)."""
    if prefix.endswith("."):
        return name == prefix[:-1] or name.startswith(prefix)
    return name == prefix


class NamePattern:
    """An ordered set of inclusion and exclusion patterns over dotted names."""

    def __init__(self, patterns: Iterable[str] = ()):
        self._include: list[str] = []
        self._exclude: list[str] = []
        for pattern in patterns:
            self.add(pattern)

    def add(self, pattern: str) -> None:
        pattern = pattern.strip()
        if not pattern:
            return
        if pattern.startswith("-"):
            self._exclude.append(pattern[1:])
        else:
            self._include.append(pattern)

    @property
    def patterns(self) -> list[str]:
        return self._include + [f"-{p}" for p in self._exclude]

    def matches(self, name: str) -> bool:
        """Check whether a dotted name is covered by these patterns."""
        if any(matches_prefix(name, p) for p in self._exclude):
            return False
        return any(matches_prefix(name, p) for p in self._include)

    def __repr__(self) -> str:
        return f"NamePattern({self.patterns!r})"
