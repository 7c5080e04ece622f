"""Knowledge base that is stored in a Postgres database.

The knowledge base uses three relations:

- *adaptq_queries* contains the query classes and their settings
- *adaptq_query_texts* contains one query text per class, just for further analysis
- *adaptq_data* contains the samples of all feature spaces

The class lock that guards the registration of new query classes is implemented as a session-level advisory lock on
the query hash. Therefore, concurrent sessions (potentially in different processes) that register the same class are
serialized by the Postgres server.

References
----------

.. Psyopg v3: https://www.psycopg.org/psycopg3/
.. Advisory locks: https://www.postgresql.org/docs/current/explicit-locking.html#ADVISORY-LOCKS
"""
from __future__ import annotations

import contextlib
import os
import time
import warnings
from collections.abc import Iterator
from pathlib import Path
from typing import Optional

import psycopg
import psycopg.rows

from .. import util
from .._core import QueryClass
from ..util.errors import ResourceUnavailableError
from ..util.jsonize import jsondict
from ._kb import KnowledgeBase, Sample

QueriesTable = "adaptq_queries"
QueryTextsTable = "adaptq_query_texts"
DataTable = "adaptq_data"
KnowledgeBaseRelations = frozenset({QueriesTable, QueryTextsTable, DataTable})

_SchemaDefinition = [
    f"""CREATE TABLE IF NOT EXISTS {QueriesTable} (
            query_hash bigint PRIMARY KEY,
            fspace_hash bigint NOT NULL,
            learn boolean NOT NULL,
            use_prediction boolean NOT NULL,
            auto_tune boolean NOT NULL,
            collect_stat boolean NOT NULL
        )""",
    f"""CREATE TABLE IF NOT EXISTS {QueryTextsTable} (
            query_hash bigint PRIMARY KEY REFERENCES {QueriesTable} ON DELETE CASCADE,
            query_text text NOT NULL
        )""",
    f"""CREATE TABLE IF NOT EXISTS {DataTable} (
            fspace_hash bigint NOT NULL,
            fss_hash bigint NOT NULL,
            target double precision NOT NULL,
            sample_count integer NOT NULL,
            PRIMARY KEY (fspace_hash, fss_hash)
        )""",
]


class PostgresKnowledgeBase(KnowledgeBase):
    """Knowledge base on top of a psycopg connection.

    The connection runs in autocommit mode, such that each storage operation becomes visible to other sessions
    immediately. All psycopg errors are reported as `ResourceUnavailableError`.

    Parameters
    ----------
    connect_string : str
        A psycopg-compatible connect string
    application_name : str, optional
        Identifier of the connection in the server logs and process lists
    lock_poll_interval : float, optional
        How long to wait between two attempts to acquire a class lock, in seconds
    debug : bool, optional
        Whether to log all storage operations to stderr
    """

    def __init__(self, connect_string: str, *, application_name: str = "adaptq", lock_poll_interval: float = 0.01,
                 debug: bool = False) -> None:
        self.connect_string = connect_string
        self._application_name = application_name
        self._lock_poll_interval = lock_poll_interval
        self._log = util.make_logger(debug, component="knowledge base")
        self._installed = False
        self._connection: psycopg.Connection = psycopg.connect(
            connect_string,
            application_name=application_name,
            row_factory=psycopg.rows.tuple_row,
        )
        self._connection.autocommit = True

    def install(self) -> None:
        """Creates the relations of the knowledge base if they do not exist yet."""
        with self._cursor() as cursor:
            for statement in _SchemaDefinition:
                cursor.execute(statement)
        self._installed = True

    def is_installed(self) -> bool:
        if self._installed:
            return True
        try:
            with self._cursor() as cursor:
                for relation in KnowledgeBaseRelations:
                    cursor.execute("SELECT to_regclass(%s) IS NOT NULL", (relation,))
                    exists, = cursor.fetchone()
                    if not exists:
                        return False
        except ResourceUnavailableError:
            return False
        self._installed = True
        return True

    def find_class(self, query_hash: int) -> Optional[QueryClass]:
        with self._cursor() as cursor:
            cursor.execute(f"SELECT fspace_hash, learn, use_prediction, auto_tune, collect_stat FROM {QueriesTable} "
                           "WHERE query_hash = %s", (query_hash,))
            row = cursor.fetchone()
        if row is None:
            return None
        fspace_hash, learn, use_prediction, auto_tune, collect_stat = row
        return QueryClass(query_hash, fspace_hash, use_prediction=use_prediction, learn=learn, auto_tune=auto_tune,
                          collect_stat=collect_stat)

    def upsert_class(self, query_class: QueryClass) -> None:
        self._log("Storing query class", query_class)
        with self._cursor() as cursor:
            cursor.execute(f"""INSERT INTO {QueriesTable}
                                   (query_hash, fspace_hash, learn, use_prediction, auto_tune, collect_stat)
                               VALUES (%s, %s, %s, %s, %s, %s)
                               ON CONFLICT (query_hash) DO UPDATE SET
                                   fspace_hash = EXCLUDED.fspace_hash, learn = EXCLUDED.learn,
                                   use_prediction = EXCLUDED.use_prediction, auto_tune = EXCLUDED.auto_tune,
                                   collect_stat = EXCLUDED.collect_stat""",
                           (query_class.query_hash, query_class.fspace_hash, query_class.learn,
                            query_class.use_prediction, query_class.auto_tune, query_class.collect_stat))

    def record_query_text(self, query_hash: int, text: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(f"INSERT INTO {QueryTextsTable} (query_hash, query_text) VALUES (%s, %s) "
                           "ON CONFLICT (query_hash) DO NOTHING", (query_hash, text))

    def load_sample(self, fspace_hash: int, fss: int) -> Optional[Sample]:
        with self._cursor() as cursor:
            cursor.execute(f"SELECT target, sample_count FROM {DataTable} WHERE fspace_hash = %s AND fss_hash = %s",
                           (fspace_hash, fss))
            row = cursor.fetchone()
        if row is None:
            return None
        target, count = row
        return Sample(target, count)

    def store_sample(self, fspace_hash: int, fss: int, target: float, count: int = 1) -> None:
        with self._cursor() as cursor:
            cursor.execute(f"""INSERT INTO {DataTable} (fspace_hash, fss_hash, target, sample_count)
                               VALUES (%s, %s, %s, %s)
                               ON CONFLICT (fspace_hash, fss_hash) DO UPDATE SET
                                   target = EXCLUDED.target, sample_count = EXCLUDED.sample_count""",
                           (fspace_hash, fss, target, count))

    @contextlib.contextmanager
    def class_lock(self, query_hash: int, *, timeout: float = 1.0) -> Iterator[None]:
        deadline = time.monotonic() + timeout
        with self._cursor() as cursor:
            while True:
                cursor.execute("SELECT pg_try_advisory_lock(%s)", (query_hash,))
                acquired, = cursor.fetchone()
                if acquired:
                    break
                if time.monotonic() >= deadline:
                    raise ResourceUnavailableError(f"Timeout while waiting for the lock of query class {query_hash}")
                time.sleep(self._lock_poll_interval)

        self._log("Acquired class lock", query_hash)
        try:
            yield
        finally:
            with self._cursor() as cursor:
                cursor.execute("SELECT pg_advisory_unlock(%s)", (query_hash,))

    def relation_names(self) -> frozenset[str]:
        return KnowledgeBaseRelations

    def close(self) -> None:
        self._connection.close()

    def describe(self) -> jsondict:
        return {"name": "postgres", "application_name": self._application_name}

    @contextlib.contextmanager
    def _cursor(self) -> Iterator[psycopg.Cursor]:
        try:
            with self._connection.cursor() as cursor:
                yield cursor
        except psycopg.Error as e:
            raise ResourceUnavailableError(f"Knowledge base is not available: {e}") from e


def connect(*, connect_string: str = "", config_file: str | Path = "", application_name: str = "adaptq",
            install: bool = False, debug: bool = False) -> PostgresKnowledgeBase:
    """Opens a Postgres-based knowledge base.

    The first available source determines the connect string:

    1. an explicit `connect_string`
    2. the first line of `config_file`. A missing file is an error, there is no fallback to the other sources.
    3. the first line of *.psycopg_connection* in the working directory
    4. the libpq environment variables (*PGDATABASE*, *PGHOST*, ...). These are only consulted if *PGDATABASE* is set, and
       a warning is issued in that case.

    Parameters
    ----------
    connect_string : str, optional
        A psycopg-compatible connect string
    config_file : str | Path, optional
        A file whose first line is a psycopg-compatible connect string
    application_name : str, optional
        Name under which the connection shows up on the server
    install : bool, optional
        Whether missing knowledge base relations should be created. Defaults to *False*.
    debug : bool, optional
        Whether storage operations should be logged to stderr

    Returns
    -------
    PostgresKnowledgeBase
        The connected knowledge base

    Raises
    ------
    ValueError
        If no source provides a connect string, or if `config_file` does not exist
    """
    if connect_string:
        connect_string = connect_string.strip()
    elif config_file:
        connect_string = _read_connect_file(Path(config_file))
    elif _DefaultConnectFile.is_file():
        connect_string = _read_connect_file(_DefaultConnectFile)
    elif os.getenv("PGDATABASE"):
        warnings.warn("No connect string given, falling back to the PG* environment variables")
        connect_string = " ".join(f"{param} = '{os.environ[var]}'" for var, param in _LibpqEnvironment.items()
                                  if os.getenv(var))
    else:
        raise ValueError("No knowledge base connection configured. Pass a connect string or a config file, create "
                         f"{_DefaultConnectFile} in the working directory, or set the PG* environment variables.")

    knowledge_base = PostgresKnowledgeBase(connect_string, application_name=application_name, debug=debug)
    if install:
        knowledge_base.install()
    return knowledge_base


_DefaultConnectFile = Path(".psycopg_connection")

_LibpqEnvironment = {
    "PGDATABASE": "dbname",
    "PGHOST": "host",
    "PGPORT": "port",
    "PGUSER": "user",
    "PGPASSWORD": "password",
    "PGPASSFILE": "passfile",
}


def _read_connect_file(path: Path) -> str:
    if not path.is_file():
        raise ValueError(f"Connect file '{path}' does not exist (working directory is {os.getcwd()})")
    with open(path, "r") as f:
        return f.readline().strip()
