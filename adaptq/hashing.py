"""Fingerprints for queries, predicate clauses and grouping expressions.

All fingerprints are computed on a canonical form of the pglast parse tree: the payload of each constant is erased,
lists of constants (such as *IN* lists) collapse into a single constant and source code locations are dropped.
Therefore, two queries that only differ in their literal values share the same fingerprint, while changing a relation,
a column, an operator or the structure of a clause produces a different one.

Fingerprints are signed 64 bit integers. They are derived from blake2b digests instead of Python's `hash`, because they
are persisted in the knowledge base and have to be stable across processes.
"""
from __future__ import annotations

import hashlib
import json
from collections.abc import Callable, Iterable
from typing import Any, Optional

import networkx as nx

from .planner import JoinType
from .qal import parser

_ErasedAttributes = frozenset({"location", "stmt_len"})
_ErasedSuffixes = ("_location", "_list_start", "_list_end")


def _is_erased(attribute: str) -> bool:
    # source positions, including the bounds of lists such as IN lists
    return attribute in _ErasedAttributes or attribute.endswith(_ErasedSuffixes)


def _digest(payload: str) -> int:
    raw = hashlib.blake2b(payload.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(raw, byteorder="little", signed=True)


def combine_hashes(*values: Any) -> int:
    """Folds a sequence of values into a single hash. The order of the values matters."""
    return _digest("(" + ",".join(str(val) for val in values) + ")")


def hash_multiset(values: Iterable[int]) -> int:
    """Computes a hash of a multiset of integers, i.e. the order of the values is irrelevant, but their number is not."""
    return _digest("[" + ",".join(str(val) for val in sorted(values)) + "]")


def _is_constant(node: Any) -> bool:
    if not isinstance(node, dict) or len(node) != 1:
        return False
    if "A_Const" in node:
        return True
    if "TypeCast" in node:
        return _is_constant(node["TypeCast"].get("arg"))
    return False


def canonicalize(node: Any, *, column_mapper: Optional[Callable[[dict], Optional[Any]]] = None) -> Any:
    """Computes the constant-erased form of a parse tree node.

    Parameters
    ----------
    node : Any
        The node to canonicalize. This can be a node dictionary, a list of nodes or any scalar attribute.
    column_mapper : Optional[Callable[[dict], Optional[Any]]], optional
        Replacement for column references. If the mapper provides a value for a *ColumnRef* node, that value is used in the
        canonical form instead of the column itself.

    Returns
    -------
    Any
        The canonical form, which can be serialized to JSON.
    """
    if isinstance(node, list):
        if node and all(_is_constant(child) for child in node):
            return [{"A_Const": None}]
        return [canonicalize(child, column_mapper=column_mapper) for child in node]
    if not isinstance(node, dict):
        return node

    if "A_Const" in node and len(node) == 1:
        return {"A_Const": None}
    if column_mapper is not None and "ColumnRef" in node and len(node) == 1:
        replacement = column_mapper(node)
        if replacement is not None:
            return replacement

    return {attribute: canonicalize(value, column_mapper=column_mapper) for attribute, value in node.items()
            if not _is_erased(attribute)}


def _fingerprint(canonical_form: Any) -> int:
    return _digest(json.dumps(canonical_form, sort_keys=True, separators=(",", ":")))


def hash_expression(expr: dict) -> int:
    """Computes the constant-erased fingerprint of an arbitrary expression, without any equivalence information."""
    return _fingerprint(canonicalize(expr))


def hash_query(parsed_query: Optional[dict], raw_text: Optional[str] = None) -> int:
    """Computes the fingerprint of a query, i.e. the hash of its query class.

    Parameters
    ----------
    parsed_query : Optional[dict]
        The pglast encoding of the statement. If this is *None*, the `raw_text` is parsed instead.
    raw_text : Optional[str], optional
        The query text. This is only used if no parse tree is available.

    Returns
    -------
    int
        The fingerprint. All queries that only differ in their constants share the same fingerprint.
    """
    if parsed_query is None:
        if raw_text is None:
            raise ValueError("Either the parsed query or the query text are required")
        parsed_query = parser.parse_statement(raw_text)
    return _fingerprint(canonicalize(parsed_query))


class EquivalenceContext:
    """Equivalence classes of columns that are connected by equality predicates.

    Within a set of clauses such as *R.a = S.b AND S.b = T.c*, all three columns are equivalent. When computing clause
    fingerprints, equivalent columns are replaced by the hash of their class and an equality between two members of the
    same class hashes to the class itself. Therefore, both *R.a = S.b* and *R.a = T.c* receive the same fingerprint in
    this context.

    Use `from_clauses` to compute the classes for a set of clauses.
    """

    @staticmethod
    def empty() -> EquivalenceContext:
        return EquivalenceContext({})

    @staticmethod
    def from_clauses(clauses: Iterable[dict]) -> EquivalenceContext:
        """Determines the equivalence classes that are induced by the column equalities among the clauses."""
        column_graph = nx.Graph()
        for clause in clauses:
            arguments = parser.equality_arguments(clause)
            if arguments is None:
                continue
            left, right = (hash_expression(arg) for arg in arguments)
            column_graph.add_edge(left, right)

        classes: dict[int, int] = {}
        for component in nx.connected_components(column_graph):
            eclass_hash = combine_hashes("eclass", hash_multiset(component))
            for column in component:
                classes[column] = eclass_hash
        return EquivalenceContext(classes)

    def __init__(self, classes: dict[int, int]) -> None:
        self._classes = classes

    def eclass_of(self, column: dict) -> Optional[int]:
        """Provides the hash of the equivalence class of a column, or *None* if the column is not part of any class."""
        return self._classes.get(hash_expression(column))

    def eclasses(self) -> set[int]:
        return set(self._classes.values())

    def map_column(self, column: dict) -> Optional[dict]:
        eclass = self.eclass_of(column)
        return {"EquivalenceClass": eclass} if eclass is not None else None

    def __len__(self) -> int:
        return len(self.eclasses())

    def __repr__(self) -> str:
        return f"EquivalenceContext({len(self)} classes)"


def hash_clause(expr: dict, equivalence_context: Optional[EquivalenceContext] = None, *,
                join_type: JoinType = JoinType.Inner) -> int:
    """Computes the constant-erased fingerprint of a predicate clause.

    Parameters
    ----------
    expr : dict
        The pglast encoding of the clause
    equivalence_context : Optional[EquivalenceContext], optional
        The equivalence classes of the clause set that the clause belongs to. Defaults to an empty context.
    join_type : JoinType, optional
        The kind of join that the clause is evaluated in. Clauses of outer, semi and anti joins filter rows differently
        from inner join clauses and therefore receive different fingerprints.

    Returns
    -------
    int
        The fingerprint
    """
    context = equivalence_context if equivalence_context is not None else EquivalenceContext.empty()

    fingerprint: Optional[int] = None
    arguments = parser.equality_arguments(expr)
    if arguments is not None:
        left, right = (context.eclass_of(arg) for arg in arguments)
        if left is not None and left == right:
            fingerprint = left
    if fingerprint is None:
        fingerprint = _fingerprint(canonicalize(expr, column_mapper=context.map_column))

    if join_type != JoinType.Inner:
        fingerprint = combine_hashes("join", join_type.value, fingerprint)
    return fingerprint


def hash_group_key(child_fss: int, grouping_exprs: Iterable[dict]) -> int:
    """Folds a list of grouping expressions into the sample key of the input relation.

    The order of the grouping expressions is irrelevant, i.e. *GROUP BY R.a, R.b* and *GROUP BY R.b, R.a* produce the same
    key.
    """
    exprs_hash = hash_multiset(hash_expression(expr) for expr in grouping_exprs)
    return combine_hashes("group", child_fss, exprs_hash)


def hash_feature_space_sample(fspace_hash: int, relation_ids: Iterable[int], clause_fingerprints: Iterable[int]) -> int:
    """Computes the key of a sample within a feature space.

    Parameters
    ----------
    fspace_hash : int
        The feature space of the current query class
    relation_ids : Iterable[int]
        The ids of all base relations that are part of the intermediate. Self-joins contribute multiple entries.
    clause_fingerprints : Iterable[int]
        The fingerprints of all clauses that are applied to the intermediate

    Returns
    -------
    int
        The key. It does not depend on the order of relations or clauses.
    """
    return combine_hashes("fss", fspace_hash, hash_multiset(relation_ids), hash_multiset(clause_fingerprints))
