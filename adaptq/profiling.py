"""The profiling table accumulates the execution time per query class, purely for operator visibility.

The table has a fixed capacity that is determined once per process. If a new query class does not fit into the table
anymore, profiling is disabled for the remainder of the process. Profiling failures never affect the queries themselves.
"""
from __future__ import annotations

import enum
import sys
import threading
from typing import Optional

import pandas as pd

from . import util


class ProfileUpdate(enum.Enum):
    """The outcome of a profiling update."""
    Recorded = "recorded"
    """The time was added to the entry of the query class."""
    Disabled = "disabled"
    """Profiling is turned off, nothing was recorded."""
    Exhausted = "exhausted"
    """The table ran out of space during this update. Profiling is disabled from now on."""


class ProfileTable:
    """Fixed-capacity table that maps query classes to their cumulative execution time.

    The table is shared by all sessions of the process and can be updated concurrently. Use `get_instance` to obtain the
    process-wide table.

    Parameters
    ----------
    capacity : int
        The maximum number of query classes. Values <= 0 create a disabled table.
    verbose : bool, optional
        Whether updates should be logged to stderr
    """

    @staticmethod
    def get_instance(capacity: int = 0) -> ProfileTable:
        """Provides the process-wide profiling table, creating it on first access.

        The capacity is only used when the table is created. Later calls with a different capacity receive the existing
        table.
        """
        global _PROFILE_TABLE
        with _INSTANCE_LOCK:
            if _PROFILE_TABLE is None:
                _PROFILE_TABLE = ProfileTable(capacity)
            return _PROFILE_TABLE

    def __init__(self, capacity: int, *, verbose: bool = False) -> None:
        self._capacity = max(capacity, 0)
        self._enabled = capacity > 0
        self._entries: dict[int, float] = {}
        self._lock = threading.Lock()
        self._log = util.make_logger(verbose, component="profiling")
        self._report = util.make_logger(component="profiling", file=sys.stderr)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def enabled(self) -> bool:
        return self._enabled

    def update(self, query_hash: int, elapsed: float) -> ProfileUpdate:
        """Adds execution time to the entry of a query class.

        Parameters
        ----------
        query_hash : int
            The query class
        elapsed : float
            The execution time in seconds

        Returns
        -------
        ProfileUpdate
            Whether the time was recorded. If the table is full and the class is new, profiling is disabled permanently.
        """
        with self._lock:
            if not self._enabled:
                return ProfileUpdate.Disabled

            if query_hash not in self._entries and len(self._entries) >= self._capacity:
                self._enabled = False
                self._report(f"Profiling table is full ({self._capacity} entries).",
                             "Disabling profiling for this process.")
                return ProfileUpdate.Exhausted

            self._entries[query_hash] = self._entries.get(query_hash, 0.0) + elapsed
            self._log("Query class", query_hash, "now at", self._entries[query_hash], "seconds")
            return ProfileUpdate.Recorded

    def rows(self) -> list[tuple[int, float]]:
        """Provides all entries as *(query hash, cumulative time)* pairs."""
        with self._lock:
            return list(self._entries.items())

    def to_df(self) -> pd.DataFrame:
        """Provides all entries as a data frame with columns *query_hash* and *cumulative_time*."""
        return pd.DataFrame(self.rows(), columns=["query_hash", "cumulative_time"])

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __repr__(self) -> str:
        return f"ProfileTable(capacity={self._capacity}, enabled={self._enabled})"


_PROFILE_TABLE: Optional[ProfileTable] = None
_INSTANCE_LOCK = threading.Lock()
