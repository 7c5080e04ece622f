"""The db package contains the knowledge base that stores query classes and prediction samples.

The `KnowledgeBase` interface describes the operations that the classifier and the cardinality hooks rely on. Two
implementations are provided: the `InMemoryKnowledgeBase` keeps all data in the current process, the
`PostgresKnowledgeBase` (see the `postgres` module) stores everything in a Postgres database.
"""

import importlib

from ._kb import KnowledgeBase, InMemoryKnowledgeBase, Sample

__all__ = ["KnowledgeBase", "InMemoryKnowledgeBase", "Sample", "postgres"]


def __getattr__(name: str):
    # psycopg is only needed for the Postgres knowledge base
    if name == "postgres":
        return importlib.import_module(f"{__name__}.postgres")
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
