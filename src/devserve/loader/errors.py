"""Errors raised while resolving names through an import domain."""


class ResourceNotFoundError(LookupError):
    """A module or resource the context requires could not be found anywhere."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"resource, {name}, not found")
