"""The parser provides access to the raw Postgres parse tree of SQL statements.

Other than a full query abstraction, adaptq only needs to inspect statements: which kind of statement is planned, which
relations it touches, and which predicates are applied. Therefore, the parser operates directly on the JSON encoding
of the parse tree as produced by pglast. Each node in this encoding is a dictionary with a single key (the node type)
that maps to the node attributes, e.g. ``{"ColumnRef": {"fields": [...], "location": 7}}``. Lists of nodes are plain
lists.

The same encoding is used for predicate clauses throughout adaptq: a clause is simply the JSON node of its expression.

References
----------

.. pglast project: https://github.com/lelit/pglast
"""
from __future__ import annotations

import enum
import json
from collections.abc import Iterable, Iterator
from typing import NamedTuple, Optional

import pglast

SystemSchemas = frozenset({"pg_catalog", "information_schema", "pg_toast"})
"""Schemas that only contain catalog relations."""


class ParserError(RuntimeError):
    """An error that is raised when parsing fails."""

    def __init__(self, msg: str) -> None:
        super().__init__(msg)


class StatementKind(enum.Enum):
    """The different kinds of statements that reach the planner."""
    Select = "SelectStmt"
    Insert = "InsertStmt"
    Update = "UpdateStmt"
    Delete = "DeleteStmt"
    Utility = "Utility"

    @property
    def is_dml(self) -> bool:
        return self != StatementKind.Utility


class RelationName(NamedTuple):
    """A (possibly schema-qualified) relation that is referenced in a statement."""
    schema: Optional[str]
    name: str

    def __str__(self) -> str:
        return f"{self.schema}.{self.name}" if self.schema else self.name


def parse_statement(query: str) -> dict:
    """Parses a single SQL statement into its pglast JSON encoding.

    Parameters
    ----------
    query : str
        The statement to parse

    Returns
    -------
    dict
        The statement node, e.g. ``{"SelectStmt": {...}}``

    Raises
    ------
    ParserError
        If the text does not contain exactly one statement, or if it cannot be parsed at all
    """
    try:
        pglast_data = json.loads(pglast.parser.parse_sql_json(query))
    except pglast.parser.ParseError as e:
        raise ParserError(f"Cannot parse query '{query}': {e}") from e

    stmts = pglast_data.get("stmts", [])
    if len(stmts) != 1:
        raise ParserError("Parser can only support single-statement queries for now")
    return stmts[0]["stmt"]


def node_type(node: dict) -> str:
    """Provides the type tag of a parse tree node, e.g. *ColumnRef*."""
    if len(node) != 1:
        raise ParserError(f"Not a parse tree node: {node}")
    return next(iter(node))


def unwrap_explain(stmt: dict) -> tuple[dict, bool]:
    """Removes an *EXPLAIN* wrapper from a statement.

    Returns
    -------
    tuple[dict, bool]
        The explained statement (or the statement itself), and whether the statement was wrapped in *EXPLAIN*.
    """
    if "ExplainStmt" in stmt:
        return stmt["ExplainStmt"]["query"], True
    return stmt, False


def statement_kind(stmt: dict) -> StatementKind:
    """Determines which kind of statement is encoded by a parse tree. *EXPLAIN* wrappers are not removed."""
    match node_type(stmt):
        case "SelectStmt":
            return StatementKind.Select
        case "InsertStmt":
            return StatementKind.Insert
        case "UpdateStmt":
            return StatementKind.Update
        case "DeleteStmt":
            return StatementKind.Delete
        case _:
            return StatementKind.Utility


def walk(node: dict | list) -> Iterator[dict]:
    """Traverses all nodes of a parse tree in pre-order. This includes nodes of subqueries and CTEs."""
    if isinstance(node, list):
        for child in node:
            yield from walk(child)
        return
    if not isinstance(node, dict):
        return

    if len(node) == 1:
        tag, attributes = next(iter(node.items()))
        if isinstance(attributes, dict) and tag[:1].isupper():
            yield node
            node = attributes

    for attribute in node.values():
        if isinstance(attribute, (dict, list)):
            yield from walk(attribute)


def referenced_relations(stmt: dict) -> list[RelationName]:
    """Provides all relations that are scanned somewhere in the statement, including subqueries and CTEs.

    Notice that CTE names that are referenced in a *FROM* clause are reported as relations as well, since the parse tree
    does not distinguish them from physical relations.
    """
    relations: list[RelationName] = []
    for node in walk(stmt):
        if "RangeVar" not in node:
            continue
        rangevar = node["RangeVar"]
        relations.append(RelationName(rangevar.get("schemaname"), rangevar["relname"]))
    return relations


def is_system_relation(relation: RelationName) -> bool:
    """Checks, whether a relation belongs to the system catalogs."""
    if relation.schema:
        return relation.schema in SystemSchemas
    return relation.name.startswith("pg_")


def where_clause(stmt: dict) -> Optional[dict]:
    """Provides the *WHERE* predicate of a statement, if there is any."""
    stmt, _ = unwrap_explain(stmt)
    return stmt[node_type(stmt)].get("whereClause")


def conjuncts(predicate: Optional[dict]) -> list[dict]:
    """Splits a predicate into its top-level conjunctive clauses, i.e. *R.a = 1 AND R.b < 2* becomes two clauses."""
    if predicate is None:
        return []
    if "BoolExpr" in predicate and predicate["BoolExpr"]["boolop"] == "AND_EXPR":
        return [clause for arg in predicate["BoolExpr"]["args"] for clause in conjuncts(arg)]
    return [predicate]


def parse_clauses(predicate: str, *, tables: Iterable[str] = ("R",)) -> list[dict]:
    """Parses a textual predicate into its conjunctive clauses.

    This is mostly a utility for hosts (and tests) that need to construct clauses from text. The predicate is embedded into
    an artificial query over the given tables.
    """
    from_clause = ", ".join(tables)
    stmt = parse_statement(f"SELECT * FROM {from_clause} WHERE {predicate}")
    return conjuncts(where_clause(stmt))


def parse_expressions(expressions: str, *, tables: Iterable[str] = ("R",)) -> list[dict]:
    """Parses a comma-separated list of expressions, e.g. the contents of a *GROUP BY* clause."""
    from_clause = ", ".join(tables)
    stmt = parse_statement(f"SELECT * FROM {from_clause} GROUP BY {expressions}")
    return list(stmt["SelectStmt"]["groupClause"])


def is_column_ref(expr: dict) -> bool:
    """Checks, whether an expression is a plain column reference (and not a star expression)."""
    if "ColumnRef" not in expr:
        return False
    return not any("A_Star" in field for field in expr["ColumnRef"]["fields"])


def operator_name(expr: dict) -> Optional[str]:
    """Provides the operator of a binary/unary operator expression such as *R.a < 42*, or *None* for other expressions."""
    if "A_Expr" not in expr or expr["A_Expr"]["kind"] != "AEXPR_OP":
        return None
    name_parts = expr["A_Expr"]["name"]
    return name_parts[-1]["String"]["sval"]


def equality_arguments(expr: dict) -> Optional[tuple[dict, dict]]:
    """Provides both columns of an equality predicate between two columns, e.g. *R.a = S.b*.

    For all other expressions, including equalities between a column and a value, *None* is returned.
    """
    if operator_name(expr) != "=":
        return None
    lexpr, rexpr = expr["A_Expr"].get("lexpr"), expr["A_Expr"].get("rexpr")
    if lexpr is None or rexpr is None:
        return None
    if not is_column_ref(lexpr) or not is_column_ref(rexpr):
        return None
    return lexpr, rexpr
