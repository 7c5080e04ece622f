"""Memoization of clause selectivities for the duration of a single planning pass."""
from __future__ import annotations

from typing import Optional

from .hashing import hash_clause
from .planner import RestrictInfo, SelectivityEstimator, SpecialJoinInfo


class SelectivityCache:
    """Caches the selectivities of predicate clauses, keyed by clause fingerprint and relation scope.

    The same clause is typically estimated many times during a single planning pass, e.g. once for each join that it is
    part of. The cache makes sure that the host's selectivity estimator is only consulted once per clause.

    Since clause fingerprints erase all constant values, two different queries can contain clauses with the same
    fingerprint but with very different selectivities. Therefore, the cache must be cleared before each new top-level query
    is planned. The classifier takes care of this.

    Parameters
    ----------
    estimator : SelectivityEstimator
        The host procedure that computes selectivities on cache misses
    """

    def __init__(self, estimator: SelectivityEstimator) -> None:
        self._estimator = estimator
        self._entries: dict[tuple[int, int], float] = {}
        self._misses = 0

    @property
    def estimator(self) -> SelectivityEstimator:
        return self._estimator

    @property
    def misses(self) -> int:
        """The number of selectivities that had to be computed since the last `clear`."""
        return self._misses

    def get_or_compute(self, clause: RestrictInfo, relation_scope: int, *, fingerprint: Optional[int] = None,
                       join_context: Optional[SpecialJoinInfo] = None) -> float:
        """Provides the selectivity of a clause, computing it only if it is not cached yet.

        Parameters
        ----------
        clause : RestrictInfo
            The clause to estimate
        relation_scope : int
            The range table index of the relation that the clause is estimated for, or *0* if the clause is estimated
            without a specific relation (e.g. for joins)
        fingerprint : Optional[int], optional
            The fingerprint of the clause. If omitted, it is computed without any equivalence information.
        join_context : Optional[SpecialJoinInfo], optional
            The join that the clause belongs to. Only used on cache misses.

        Returns
        -------
        float
            The selectivity, clamped to [0, 1]
        """
        fingerprint = hash_clause(clause.clause) if fingerprint is None else fingerprint
        key = (fingerprint, relation_scope)
        cached = self._entries.get(key)
        if cached is not None:
            return cached

        selectivity = min(max(float(self._estimator.estimate(clause, join_context)), 0.0), 1.0)
        self._misses += 1
        self._entries[key] = selectivity
        return selectivity

    def clear(self) -> None:
        """Drops all cached selectivities."""
        self._entries.clear()
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __repr__(self) -> str:
        return f"SelectivityCache({len(self)} entries)"
