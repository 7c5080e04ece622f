"""Models the parts of the host query planner that the cardinality hooks interact with.

The host planner owns the actual planning process. It calls the hooks of adaptq at specific points of that process and
passes its own planning structures along. This module describes these structures (relations, paths, parameterizations,
join information) and the interfaces of the host components that adaptq delegates to:

- the `Planner`, which is wrapped by the classification hook
- the `NativeEstimator`, i.e. the host's own cardinality estimation that is used whenever no prediction is available
- the `SelectivityEstimator`, which determines the selectivity of individual predicate clauses

The structures follow the planner data model of Postgres: base relations and joins are represented by `RelOptInfo`
objects, access paths by `Path` objects and parameterized access paths additionally by `ParamPathInfo` objects.
Predicate clauses are wrapped in `RestrictInfo` objects that contain the pglast encoding of the clause.
"""
from __future__ import annotations

import abc
import enum
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from ._core import NoPrediction


class JoinType(enum.Enum):
    """The logical join types that the host planner distinguishes."""
    Inner = "inner"
    Left = "left"
    Right = "right"
    Full = "full"
    Semi = "semi"
    Anti = "anti"


class RteKind(enum.Enum):
    """The different kinds of range table entries."""
    Relation = "relation"
    Subquery = "subquery"
    Function = "function"
    Values = "values"
    CTE = "cte"
    Join = "join"


@dataclass(frozen=True)
class RangeTableEntry:
    """An entry of the planner's range table.

    Attributes
    ----------
    kind : RteKind
        What kind of relation is scanned
    relid : int
        The catalog id of the physical relation. This is only valid (i.e. non-zero) for plain relations.
    relname : str
        The name of the relation, mostly for debugging
    """
    kind: RteKind
    relid: int = 0
    relname: str = ""


@dataclass(eq=False)
class RestrictInfo:
    """A predicate clause together with the range table indexes that it references."""
    clause: dict
    relids: frozenset[int] = frozenset()


@dataclass(frozen=True)
class ClauseRecord:
    """The clauses and relations that were used to estimate the cardinality of a relation or path.

    Records are stored on the estimated relations, such that joins can compose the records of their inputs instead of
    collecting the clauses from scratch. Records are plain concatenations, the relation ids and fingerprints form
    multisets.

    Attributes
    ----------
    clauses : tuple[dict, ...]
        The pglast encodings of the clauses
    fingerprints : tuple[int, ...]
        The fingerprint of each clause
    selectivities : tuple[float, ...]
        The selectivity of each clause
    relation_ids : tuple[int, ...]
        The catalog ids of all base relations that are part of the estimated relation
    """
    clauses: tuple[dict, ...] = ()
    fingerprints: tuple[int, ...] = ()
    selectivities: tuple[float, ...] = ()
    relation_ids: tuple[int, ...] = ()

    @staticmethod
    def empty() -> ClauseRecord:
        return ClauseRecord()

    def merge(self, *others: ClauseRecord) -> ClauseRecord:
        """Concatenates this record with other records."""
        records = [self, *others]
        return ClauseRecord(
            clauses=tuple(clause for record in records for clause in record.clauses),
            fingerprints=tuple(fp for record in records for fp in record.fingerprints),
            selectivities=tuple(sel for record in records for sel in record.selectivities),
            relation_ids=tuple(relid for record in records for relid in record.relation_ids),
        )

    def __len__(self) -> int:
        return len(self.clauses)


@dataclass(eq=False)
class RelOptInfo:
    """A base relation or join relation that is being planned.

    In addition to the host planner's attributes, relations carry the prediction annotation of adaptq: the
    `predicted_cardinality` (or `NoPrediction`) and the key of the sample that the prediction was computed from. Both
    attributes are always updated together via `annotate`.

    Attributes
    ----------
    relids : frozenset[int]
        The range table indexes of all base relations that are part of this relation
    relid : int
        The range table index of a base relation, *0* for joins and upper relations
    base_restrictions : list[RestrictInfo]
        The filter clauses of a base relation
    rows : float
        The current cardinality estimate
    """
    relids: frozenset[int] = frozenset()
    relid: int = 0
    base_restrictions: list[RestrictInfo] = field(default_factory=list)
    rows: float = 0.0
    predicted_cardinality: float = NoPrediction
    fss_hash: int = 0
    cheapest_total_path: Optional[Path] = None
    record: Optional[ClauseRecord] = None

    @property
    def is_base_relation(self) -> bool:
        return self.relid > 0

    @property
    def has_prediction(self) -> bool:
        return self.predicted_cardinality >= 0

    def annotate(self, predicted: float, fss: int) -> None:
        """Stores the prediction annotation. Both parts of the annotation are always set together."""
        self.predicted_cardinality = predicted
        self.fss_hash = fss


@dataclass(eq=False)
class ParamPathInfo:
    """The parameterization of a parameterized access path, e.g. of the inner side of a nested-loop join."""
    required_outer: frozenset[int] = frozenset()
    clauses: list[RestrictInfo] = field(default_factory=list)
    rows: float = 0.0
    predicted_rows: float = NoPrediction
    fss_hash: int = 0
    record: Optional[ClauseRecord] = None

    def annotate(self, predicted: float, fss: int) -> None:
        """Stores the prediction annotation. Both parts of the annotation are always set together."""
        self.predicted_rows = predicted
        self.fss_hash = fss


@dataclass(eq=False)
class Path:
    """An access path for a relation."""
    parent: RelOptInfo
    rows: float = 0.0
    param_info: Optional[ParamPathInfo] = None

    def clause_record(self) -> Optional[ClauseRecord]:
        """Provides the clauses that were used to estimate this path, if the path has been estimated already."""
        if self.param_info is not None and self.param_info.record is not None:
            return self.param_info.record
        return self.parent.record


@dataclass(frozen=True)
class SpecialJoinInfo:
    """Describes the semantics of a join."""
    join_type: JoinType = JoinType.Inner
    min_lefthand: frozenset[int] = frozenset()
    min_righthand: frozenset[int] = frozenset()


@dataclass
class EstimationInfo:
    """Additional output of the group estimation."""
    flags: int = 0


@dataclass
class PlannerInfo:
    """The global state of a planning pass, most importantly the range table."""
    range_table: dict[int, RangeTableEntry] = field(default_factory=dict)

    def fetch(self, rt_index: int) -> RangeTableEntry:
        """Provides the range table entry with the given (1-based) index."""
        try:
            return self.range_table[rt_index]
        except KeyError:
            raise KeyError(f"No range table entry at index {rt_index}") from None

    def relation_ids(self, relids: Iterable[int]) -> list[int]:
        """Provides the catalog ids of all plain relations among the given range table indexes."""
        catalog_ids: list[int] = []
        for rt_index in sorted(relids):
            entry = self.range_table.get(rt_index)
            if entry is not None and entry.kind == RteKind.Relation and entry.relid:
                catalog_ids.append(entry.relid)
        return catalog_ids


class Planner(abc.ABC):
    """The host's planner entry point (or a previously installed planner hook)."""

    @abc.abstractmethod
    def plan(self, parsed_query: dict, raw_text: Optional[str], *args, **kwargs) -> Any:
        """Produces a plan for the given query. The plan itself is opaque to adaptq."""
        raise NotImplementedError


class NativeEstimator(abc.ABC):
    """The cardinality estimation call sites of the host planner.

    Implementations are either the host's own estimation procedures, or estimation hooks that wrap them. Each method
    has the signature of the corresponding call site in the host planner.
    """

    @abc.abstractmethod
    def set_baserel_rows_estimate(self, root: PlannerInfo, rel: RelOptInfo) -> None:
        """Estimates the cardinality of a base relation and stores it in ``rel.rows``."""
        raise NotImplementedError

    @abc.abstractmethod
    def get_parameterized_baserel_size(self, root: PlannerInfo, rel: RelOptInfo,
                                       param_clauses: Sequence[RestrictInfo]) -> float:
        """Estimates the cardinality of a base relation that is additionally filtered by parameterization clauses."""
        raise NotImplementedError

    @abc.abstractmethod
    def set_joinrel_size_estimates(self, root: PlannerInfo, rel: RelOptInfo, outer_rel: RelOptInfo,
                                   inner_rel: RelOptInfo, sjinfo: SpecialJoinInfo,
                                   restrictlist: Sequence[RestrictInfo]) -> None:
        """Estimates the cardinality of a join relation and stores it in ``rel.rows``."""
        raise NotImplementedError

    @abc.abstractmethod
    def get_parameterized_joinrel_size(self, root: PlannerInfo, rel: RelOptInfo, outer_path: Path, inner_path: Path,
                                       sjinfo: SpecialJoinInfo, restrict_clauses: Sequence[RestrictInfo]) -> float:
        """Estimates the cardinality of a parameterized join path."""
        raise NotImplementedError

    @abc.abstractmethod
    def estimate_num_groups(self, root: PlannerInfo, group_exprs: Sequence[dict], subpath: Path,
                            grouped_rel: RelOptInfo, pgset: Optional[Sequence[Any]] = None,
                            estinfo: Optional[EstimationInfo] = None) -> float:
        """Estimates the number of groups that a grouping operation produces on top of `subpath`."""
        raise NotImplementedError


class SelectivityEstimator(abc.ABC):
    """The host's procedure to estimate the selectivity of individual clauses."""

    @abc.abstractmethod
    def estimate(self, clause: RestrictInfo, join_context: Optional[SpecialJoinInfo]) -> float:
        """Determines the fraction of rows that pass the clause. `join_context` is set for join clauses."""
        raise NotImplementedError
