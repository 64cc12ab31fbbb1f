"""devserve - embedded development server with isolated, reloadable application code."""

__version__ = "0.1.0"
