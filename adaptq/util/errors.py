"""Contains the errors that adaptq raises in addition to Python's base errors."""
from __future__ import annotations


class StateError(RuntimeError):
    """Indicates that an object is not in the right state to perform an operation."""
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)


class ConfigurationError(ValueError):
    """Indicates that the settings are invalid, e.g. because an unknown optimization mode was requested.

    Configuration errors are the only errors that abort a planning call. All other problems degrade the affected feature
    for the current query instead.
    """
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)


class ResourceUnavailableError(RuntimeError):
    """Indicates that an external resource cannot be used right now.

    Typical causes are a knowledge base without the required tables, a class lock that could not be acquired in time, or an
    exhausted profiling table. Callers are expected to catch this error and to continue without the resource.
    """
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
