"""The cardinality hooks that replace the host's estimates with predictions.

The host planner estimates cardinalities at five call sites: plain base relations, parameterized base relations, joins,
parameterized joins and the number of groups of a grouping operation. `CardinalityHooks` implements all of them
according to the same protocol:

1. if the current planning policy does not use predictions, the hook delegates to the default estimator right away
2. otherwise, it gathers all clauses that apply to the intermediate together with their selectivities, as well as the
   base relations of the intermediate. Joins do not collect these from scratch, but compose the clause records of their
   inputs with the join clauses
3. the key of the intermediate within the feature space (the *fss*) is computed and the predictor is consulted
4. if the predictor provides a cardinality, it replaces the native estimate completely. If the predictor refuses, the
   default estimator is called with the original arguments. There is no blending of both estimates.

The default estimator is either an estimation hook that was installed before this one, or the host's native estimation.
"""
from __future__ import annotations

import math
import warnings
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Optional

from . import util
from ._core import NoPrediction, PlanningPolicyContext
from .classifier import Session
from .db import KnowledgeBase
from .hashing import EquivalenceContext, hash_clause, hash_feature_space_sample, hash_group_key
from .planner import (
    ClauseRecord,
    EstimationInfo,
    JoinType,
    NativeEstimator,
    ParamPathInfo,
    Path,
    PlannerInfo,
    RelOptInfo,
    RestrictInfo,
    RteKind,
    SpecialJoinInfo,
)
from .predictor import Prediction, PredictionRequest, Predictor
from .util.errors import ResourceUnavailableError


@dataclass(frozen=True)
class StagedEstimate:
    """The result of a parameterized estimation that still has to be attached to its parameterization."""
    predicted: float
    fss: int
    record: ClauseRecord


class CardinalityHooks(NativeEstimator):
    """Dispatches the cardinality estimation call sites of the host planner to the predictor.

    The hooks themselves implement the `NativeEstimator` interface, such that other estimation hooks can be chained on top
    of them.

    Parameterized estimates need special care: the host interface of these call sites only returns the row count, but the
    prediction annotation has to end up on the parameterization that the host creates afterwards. Therefore, the hooks
    stage the last parameterized estimate and the host calls `attach_param_path_info` right after creating the
    parameterization. Both calls happen in direct succession within the same planning pass and are never interleaved with
    the planning of another query.

    Parameters
    ----------
    session : Session
        The session whose current planning policy controls the hooks
    predictor : Predictor
        The source of predictions for relations and joins
    knowledge_base : KnowledgeBase
        The storage that group count samples are loaded from
    native : NativeEstimator
        The host's own estimation procedures
    previous : Optional[NativeEstimator], optional
        An estimation hook that was installed before this one. If given, it is used instead of the native estimation.
    verbose : bool, optional
        Whether all estimation decisions should be logged to stderr
    """

    def __init__(self, session: Session, predictor: Predictor, knowledge_base: KnowledgeBase, native: NativeEstimator,
                 *, previous: Optional[NativeEstimator] = None, verbose: bool = False) -> None:
        self.session = session
        self.predictor = predictor
        self.knowledge_base = knowledge_base
        self._default = previous if previous is not None else native
        self._replaces_previous = previous is not None
        self._staged: Optional[StagedEstimate] = None
        self._log = util.make_logger(verbose, component="cardinality hooks")

    @property
    def default_estimator(self) -> NativeEstimator:
        return self._default

    @property
    def policy(self) -> PlanningPolicyContext:
        return self.session.current_context

    def set_baserel_rows_estimate(self, root: PlannerInfo, rel: RelOptInfo) -> None:
        if not self.policy.use_prediction:
            rel.annotate(NoPrediction, 0)
            self._default.set_baserel_rows_estimate(root, rel)
            return

        record = self._collect_clauses(rel.base_restrictions, relation_scope=rel.relid,
                                       relation_ids=self._base_relation_ids(root, rel))
        rel.record = record
        prediction = self._predict(record)
        if prediction.is_refusal:
            rel.annotate(NoPrediction, prediction.fss)
            self._default.set_baserel_rows_estimate(root, rel)
            return

        rel.rows = prediction.rows
        rel.annotate(prediction.rows, prediction.fss)

    def get_parameterized_baserel_size(self, root: PlannerInfo, rel: RelOptInfo,
                                       param_clauses: Sequence[RestrictInfo]) -> float:
        if not self.policy.use_prediction:
            self._staged = None
            return self._default.get_parameterized_baserel_size(root, rel, param_clauses)

        record = self._collect_clauses([*param_clauses, *rel.base_restrictions], relation_scope=rel.relid,
                                       relation_ids=self._base_relation_ids(root, rel))
        prediction = self._predict(record)
        self._staged = StagedEstimate(prediction.rows, prediction.fss, record)
        if not prediction.is_refusal:
            return prediction.rows
        return self._default.get_parameterized_baserel_size(root, rel, param_clauses)

    def attach_param_path_info(self, ppi: ParamPathInfo) -> None:
        """Copies the annotation of the last parameterized estimate onto the parameterization that the host just created."""
        staged, self._staged = self._staged, None
        if staged is None or not self.policy.use_prediction:
            ppi.annotate(NoPrediction, 0)
            return
        ppi.annotate(staged.predicted, staged.fss)
        ppi.record = staged.record

    def set_joinrel_size_estimates(self, root: PlannerInfo, rel: RelOptInfo, outer_rel: RelOptInfo,
                                   inner_rel: RelOptInfo, sjinfo: SpecialJoinInfo,
                                   restrictlist: Sequence[RestrictInfo]) -> None:
        if not self.policy.use_prediction:
            rel.annotate(NoPrediction, 0)
            self._default.set_joinrel_size_estimates(root, rel, outer_rel, inner_rel, sjinfo, restrictlist)
            return

        outer_record = self._path_record(root, outer_rel.cheapest_total_path or Path(outer_rel))
        inner_record = self._path_record(root, inner_rel.cheapest_total_path or Path(inner_rel))
        record = self._collect_clauses(restrictlist, relation_scope=0, join_context=sjinfo,
                                       join_type=sjinfo.join_type, inputs=[outer_record, inner_record])
        rel.record = record
        prediction = self._predict(record)
        if prediction.is_refusal:
            rel.annotate(NoPrediction, prediction.fss)
            self._default.set_joinrel_size_estimates(root, rel, outer_rel, inner_rel, sjinfo, restrictlist)
            return

        rel.rows = prediction.rows
        rel.annotate(prediction.rows, prediction.fss)

    def get_parameterized_joinrel_size(self, root: PlannerInfo, rel: RelOptInfo, outer_path: Path, inner_path: Path,
                                       sjinfo: SpecialJoinInfo, restrict_clauses: Sequence[RestrictInfo]) -> float:
        if not self.policy.use_prediction:
            self._staged = None
            return self._default.get_parameterized_joinrel_size(root, rel, outer_path, inner_path, sjinfo,
                                                                restrict_clauses)

        record = self._collect_clauses(restrict_clauses, relation_scope=0, join_context=sjinfo,
                                       join_type=sjinfo.join_type,
                                       inputs=[self._path_record(root, outer_path), self._path_record(root, inner_path)])
        prediction = self._predict(record)
        self._staged = StagedEstimate(prediction.rows, prediction.fss, record)
        if not prediction.is_refusal:
            return prediction.rows
        return self._default.get_parameterized_joinrel_size(root, rel, outer_path, inner_path, sjinfo, restrict_clauses)

    def estimate_num_groups(self, root: PlannerInfo, group_exprs: Sequence[dict], subpath: Path,
                            grouped_rel: RelOptInfo, pgset: Optional[Sequence[Any]] = None,
                            estinfo: Optional[EstimationInfo] = None) -> float:
        if not self.policy.use_prediction:
            grouped_rel.annotate(NoPrediction, 0)
            return self._default.estimate_num_groups(root, group_exprs, subpath, grouped_rel, pgset, estinfo)
        if pgset or not group_exprs:
            # grouping sets are not supported
            return self._default.estimate_num_groups(root, group_exprs, subpath, grouped_rel, pgset, estinfo)

        if self._replaces_previous:
            warnings.warn("Replacing a previously installed estimator of the number of groups")
        if estinfo is not None:
            estinfo.flags = 0

        predicted, fss = self._predict_num_groups(root, subpath, group_exprs)
        if predicted > 0:
            grouped_rel.rows = predicted
            grouped_rel.annotate(predicted, fss)
            return predicted

        # unknown groupings, as well as inputs that cannot be predicted at all (e.g. subquery scans)
        grouped_rel.annotate(NoPrediction, fss)
        return self._default.estimate_num_groups(root, group_exprs, subpath, grouped_rel, pgset, estinfo)

    def _predict_num_groups(self, root: PlannerInfo, subpath: Path, group_exprs: Sequence[dict]) -> tuple[float, int]:
        parent = subpath.parent
        if parent.has_prediction:
            child_fss = parent.fss_hash
        else:
            child_fss = self._predict(self._path_record(root, subpath)).fss

        fss = hash_group_key(child_fss, group_exprs)
        try:
            sample = self.knowledge_base.load_sample(self.policy.fspace_hash, fss)
        except ResourceUnavailableError as e:
            self._log("Cannot load group sample", fss, "-", e)
            return NoPrediction, fss
        if sample is None:
            return NoPrediction, fss
        if sample.count != 1:
            warnings.warn(f"Expected exactly one row for group sample {fss}, but found {sample.count}")
            return NoPrediction, fss

        prediction = math.exp(sample.target)
        self._log("Predicted", prediction, "groups for sample", fss)
        return (prediction if prediction > 0 else NoPrediction), fss

    def _predict(self, record: ClauseRecord) -> Prediction:
        fspace_hash = self.policy.fspace_hash
        fss = hash_feature_space_sample(fspace_hash, record.relation_ids, record.fingerprints)
        request = PredictionRequest(clauses=record.clauses, fingerprints=record.fingerprints,
                                    selectivities=record.selectivities, relation_ids=record.relation_ids,
                                    fspace_hash=fspace_hash, fss=fss)
        prediction = self.predictor.predict(request)
        if prediction.is_refusal:
            self._log("Predictor refused sample", prediction.fss)
            return Prediction.refused(prediction.fss)
        self._log("Predicted", prediction.rows, "rows for sample", prediction.fss)
        return prediction

    def _collect_clauses(self, restrictions: Iterable[RestrictInfo], *, relation_scope: int,
                         relation_ids: Iterable[int] = (), join_context: Optional[SpecialJoinInfo] = None,
                         join_type: JoinType = JoinType.Inner,
                         inputs: Sequence[ClauseRecord] = ()) -> ClauseRecord:
        restrictions = list(restrictions)
        clauses = [restriction.clause for restriction in restrictions]
        input_clauses = [clause for record in inputs for clause in record.clauses]
        equivalences = EquivalenceContext.from_clauses([*clauses, *input_clauses])

        fingerprints: list[int] = []
        selectivities: list[float] = []
        cache = self.session.selectivity_cache
        for restriction in restrictions:
            fingerprint = hash_clause(restriction.clause, equivalences, join_type=join_type)
            fingerprints.append(fingerprint)
            selectivities.append(cache.get_or_compute(restriction, relation_scope, fingerprint=fingerprint,
                                                      join_context=join_context))

        local_record = ClauseRecord(tuple(clauses), tuple(fingerprints), tuple(selectivities), tuple(relation_ids))
        return local_record.merge(*inputs)

    def _path_record(self, root: PlannerInfo, path: Path) -> ClauseRecord:
        record = path.clause_record()
        if record is not None:
            return record

        # inputs that have not been estimated by the hooks, e.g. because their estimate came from a subquery
        rel = path.parent
        restrictions = list(rel.base_restrictions)
        if path.param_info is not None:
            restrictions.extend(path.param_info.clauses)
        relation_ids = self._base_relation_ids(root, rel) if rel.is_base_relation else root.relation_ids(rel.relids)
        return self._collect_clauses(restrictions, relation_scope=rel.relid,
                                     relation_ids=relation_ids)

    def _base_relation_ids(self, root: PlannerInfo, rel: RelOptInfo) -> list[int]:
        if not rel.is_base_relation:
            return []
        entry = root.range_table.get(rel.relid)
        if entry is None or entry.kind != RteKind.Relation or not entry.relid:
            # views and subqueries are never identified by a relation id
            return []
        return [entry.relid]
