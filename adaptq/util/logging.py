"""Print-style logging for the hooks.

The hooks run inside the host planner, which calls them many times per query. Therefore, logging is decided once when a
component is created: `make_logger` either returns a function that behaves like `print`, or a function that does nothing
at all.
"""
from __future__ import annotations

import functools
import pprint
import sys
from collections.abc import Callable
from datetime import datetime
from typing import IO

Logger = Callable[..., None]
"""Type alias for the print-like logging functions produced by `make_logger`."""


def timestamp() -> str:
    """Provides the current time as a normalized string, e.g. *24-05-17 13:42:07*."""
    return datetime.now().strftime("%y-%m-%d %H:%M:%S")


def make_logger(enabled: bool = True, *, component: str = "", file: IO[str] = sys.stderr,
                pretty: bool = False) -> Logger:
    """Creates the logging function of a component.

    Each entry starts with the current timestamp and the name of the component, e.g.
    ``24-05-17 13:42:07 [classifier] Classifying query ...``.

    Parameters
    ----------
    enabled : bool, optional
        Whether anything should be logged at all, by default *True*. Disabled loggers simply return.
    component : str, optional
        The name of the component that writes the entries
    file : IO[str], optional
        Where to write the entries, by default ``sys.stderr``
    pretty : bool, optional
        Whether complex objects should be pretty-printed using the ``pprint`` module, by default *False*. Pretty loggers
        do not add any prefix.

    Returns
    -------
    Logger
        The logging function
    """
    if not enabled:
        return _discard
    if pretty:
        return functools.partial(pprint.pprint, stream=file)

    tag = f"[{component}]" if component else ""

    def _log(*args, **kwargs) -> None:
        prefix = f"{timestamp()} {tag}" if tag else timestamp()
        print(prefix, *args, file=file, **kwargs)

    return _log


def _discard(*args, **kwargs) -> None:
    pass
