"""The query abstraction layer (qal) provides access to the parse trees of the statements that are planned.

adaptq works directly on the JSON encoding of the Postgres parse tree, as produced by pglast. See the `parser` module for
details on the encoding.
"""

from . import parser
from .parser import (
    ParserError,
    StatementKind,
    RelationName,
    parse_statement,
    parse_clauses,
    parse_expressions,
    statement_kind,
    unwrap_explain,
    referenced_relations,
    is_system_relation,
    conjuncts,
    where_clause,
)

__all__ = [
    "parser",
    "ParserError",
    "StatementKind",
    "RelationName",
    "parse_statement",
    "parse_clauses",
    "parse_expressions",
    "statement_kind",
    "unwrap_explain",
    "referenced_relations",
    "is_system_relation",
    "conjuncts",
    "where_clause",
]
