"""The knowledge base interface and a transient in-memory implementation."""
from __future__ import annotations

import abc
import contextlib
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Optional

from .._core import QueryClass
from ..util.errors import ResourceUnavailableError
from ..util.jsonize import jsondict


@dataclass(frozen=True)
class Sample:
    """A stored sample of a feature space.

    Attributes
    ----------
    target : float
        The learned target value. Cardinalities are stored on a logarithmic scale.
    count : int
        The number of rows that the sample consists of
    """
    target: float
    count: int = 1


class KnowledgeBase(abc.ABC):
    """The persistent store of query classes, query texts and prediction samples.

    All methods that access the storage raise `ResourceUnavailableError` if the storage cannot be used right now, e.g.
    because its relations do not exist.
    """

    @abc.abstractmethod
    def is_installed(self) -> bool:
        """Checks, whether the storage has been set up completely."""
        raise NotImplementedError

    @abc.abstractmethod
    def find_class(self, query_hash: int) -> Optional[QueryClass]:
        """Loads a query class, or provides *None* if it is not stored."""
        raise NotImplementedError

    @abc.abstractmethod
    def upsert_class(self, query_class: QueryClass) -> None:
        """Stores a query class, replacing the settings of the class if it is stored already."""
        raise NotImplementedError

    @abc.abstractmethod
    def record_query_text(self, query_hash: int, text: str) -> None:
        """Stores the text of a query of the class. Only the first text of each class is kept."""
        raise NotImplementedError

    @abc.abstractmethod
    def load_sample(self, fspace_hash: int, fss: int) -> Optional[Sample]:
        """Loads the sample with the given key, or provides *None* if there is no such sample."""
        raise NotImplementedError

    @abc.abstractmethod
    def store_sample(self, fspace_hash: int, fss: int, target: float, count: int = 1) -> None:
        """Stores (or replaces) the sample with the given key."""
        raise NotImplementedError

    @abc.abstractmethod
    def class_lock(self, query_hash: int, *, timeout: float = 1.0) -> contextlib.AbstractContextManager[None]:
        """Provides an exclusive lock that is scoped to a single query class.

        The lock is shared among all sessions that use the same knowledge base. It is intended to guard the check-then-insert
        sequence of new query classes and should be released immediately afterwards.

        Raises
        ------
        ResourceUnavailableError
            If the lock could not be acquired within the timeout
        """
        raise NotImplementedError

    @abc.abstractmethod
    def relation_names(self) -> frozenset[str]:
        """Provides the names of the relations that the knowledge base itself uses."""
        raise NotImplementedError

    def describe(self) -> jsondict:
        """Provides a JSON-serializable representation of the knowledge base."""
        return {"name": type(self).__name__}

    def __repr__(self) -> str:
        return str(self)

    def __str__(self) -> str:
        return type(self).__name__


class InMemoryKnowledgeBase(KnowledgeBase):
    """Knowledge base that keeps all data in the current process.

    The in-memory knowledge base is mostly intended for tests and for hosts that run all sessions as threads of the same
    process. All operations are thread-safe.

    Parameters
    ----------
    installed : bool, optional
        Whether the knowledge base should report itself as installed. Defaults to *True*. If this is *False*, all storage
        operations raise `ResourceUnavailableError`.
    """

    def __init__(self, *, installed: bool = True) -> None:
        self.installed = installed
        self._classes: dict[int, QueryClass] = {}
        self._texts: dict[int, str] = {}
        self._samples: dict[tuple[int, int], Sample] = {}
        self._class_locks: dict[int, threading.Lock] = {}
        self._mutex = threading.RLock()

    def is_installed(self) -> bool:
        return self.installed

    def find_class(self, query_hash: int) -> Optional[QueryClass]:
        self._assert_installed()
        with self._mutex:
            return self._classes.get(query_hash)

    def upsert_class(self, query_class: QueryClass) -> None:
        self._assert_installed()
        with self._mutex:
            self._classes[query_class.query_hash] = query_class

    def record_query_text(self, query_hash: int, text: str) -> None:
        self._assert_installed()
        with self._mutex:
            self._texts.setdefault(query_hash, text)

    def query_text(self, query_hash: int) -> Optional[str]:
        with self._mutex:
            return self._texts.get(query_hash)

    def load_sample(self, fspace_hash: int, fss: int) -> Optional[Sample]:
        self._assert_installed()
        with self._mutex:
            return self._samples.get((fspace_hash, fss))

    def store_sample(self, fspace_hash: int, fss: int, target: float, count: int = 1) -> None:
        self._assert_installed()
        with self._mutex:
            self._samples[(fspace_hash, fss)] = Sample(target, count)

    @contextlib.contextmanager
    def class_lock(self, query_hash: int, *, timeout: float = 1.0) -> Iterator[None]:
        with self._mutex:
            lock = self._class_locks.setdefault(query_hash, threading.Lock())
        if not lock.acquire(timeout=timeout):
            raise ResourceUnavailableError(f"Could not acquire the lock of query class {query_hash}")
        try:
            yield
        finally:
            lock.release()

    def relation_names(self) -> frozenset[str]:
        return frozenset()

    def classes(self) -> list[QueryClass]:
        """Provides all stored query classes."""
        with self._mutex:
            return list(self._classes.values())

    def describe(self) -> jsondict:
        with self._mutex:
            return {"name": "in-memory", "classes": len(self._classes), "samples": len(self._samples)}

    def _assert_installed(self) -> None:
        if not self.installed:
            raise ResourceUnavailableError("Knowledge base is not installed")
