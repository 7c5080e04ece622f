"""Tests for the cardinality hooks.

The host planner is simulated by a range table over two relations *R* (catalog id 1001) and *S* (catalog id 1002).
"""
from __future__ import annotations

import math
import unittest

from adaptq import CardinalityHooks, NoPrediction, Session
from adaptq import hashing
from adaptq.db import InMemoryKnowledgeBase
from adaptq.hashing import EquivalenceContext
from adaptq.planner import (
    ClauseRecord,
    EstimationInfo,
    JoinType,
    NativeEstimator,
    ParamPathInfo,
    Path,
    RelOptInfo,
    SpecialJoinInfo,
)
from adaptq.qal import parser
from tests import regression_suite
from tests.regression_suite import FixedNativeEstimator, ScriptedPredictor

FeatureSpace = 42
RelationR = 1001
RelationS = 1002


class DispatcherTestCase(regression_suite.PlannerTestCase):
    def setUp(self) -> None:
        self.selectivities = regression_suite.FixedSelectivityEstimator(0.5)
        self.session = Session(self.selectivities)
        self.session.push_context(regression_suite.prediction_context(FeatureSpace))
        self.knowledge_base = InMemoryKnowledgeBase()
        self.native = FixedNativeEstimator()
        self.root = regression_suite.range_table(("r", RelationR), ("s", RelationS))

    def make_hooks(self, predictor: ScriptedPredictor, *, previous: NativeEstimator | None = None) -> CardinalityHooks:
        self.predictor = predictor
        return CardinalityHooks(self.session, predictor, self.knowledge_base, self.native, previous=previous)

    def disable_predictions(self) -> None:
        self.session.pop_context()
        self.session.push_context(regression_suite.prediction_context(FeatureSpace, use_prediction=False))

    def base_rel_r(self) -> RelOptInfo:
        return RelOptInfo(relids=frozenset({1}), relid=1, base_restrictions=regression_suite.restrictions("R.a = 1"))

    def base_rel_s(self) -> RelOptInfo:
        return RelOptInfo(relids=frozenset({2}), relid=2,
                          base_restrictions=regression_suite.restrictions("S.b < 5", tables=("S",)))

    def join_rel(self) -> RelOptInfo:
        return RelOptInfo(relids=frozenset({1, 2}))

    def estimated_inputs(self, hooks: CardinalityHooks) -> tuple[RelOptInfo, RelOptInfo]:
        rel_r, rel_s = self.base_rel_r(), self.base_rel_s()
        for rel in (rel_r, rel_s):
            hooks.set_baserel_rows_estimate(self.root, rel)
            rel.cheapest_total_path = Path(rel, rows=rel.rows)
        return rel_r, rel_s


class DisabledPredictionTests(DispatcherTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.disable_predictions()
        self.hooks = self.make_hooks(ScriptedPredictor(default=7.0))

    def test_base_relation(self) -> None:
        rel = self.base_rel_r()
        self.hooks.set_baserel_rows_estimate(self.root, rel)
        self.assertNotPredicted(rel)
        self.assertEqual(rel.fss_hash, 0)
        self.assertEqual(rel.rows, self.native.base_rows)
        self.assertEqual(self.predictor.requests, [])
        self.assertEqual(self.selectivities.calls, 0)

    def test_join_relation(self) -> None:
        rel_r, rel_s = self.estimated_inputs(self.hooks)
        join = self.join_rel()
        clauses = regression_suite.restrictions("R.c = S.d", tables=("R", "S"))
        self.hooks.set_joinrel_size_estimates(self.root, join, rel_r, rel_s, SpecialJoinInfo(), clauses)
        self.assertNotPredicted(join)
        self.assertEqual(join.rows, self.native.join_rows)

    def test_parameterized_relations(self) -> None:
        rel_r, rel_s = self.estimated_inputs(self.hooks)
        param_clauses = regression_suite.restrictions("R.c = S.d", tables=("R", "S"))
        rows = self.hooks.get_parameterized_baserel_size(self.root, rel_r, param_clauses)
        self.assertEqual(rows, self.native.param_base_rows)

        ppi = ParamPathInfo(required_outer=frozenset({2}), clauses=param_clauses)
        self.hooks.attach_param_path_info(ppi)
        self.assertEqual(ppi.predicted_rows, NoPrediction)
        self.assertEqual(ppi.fss_hash, 0)

        rows = self.hooks.get_parameterized_joinrel_size(self.root, self.join_rel(), Path(rel_r), Path(rel_s),
                                                         SpecialJoinInfo(), param_clauses)
        self.assertEqual(rows, self.native.param_join_rows)
        self.assertEqual(self.predictor.requests, [])

    def test_groups(self) -> None:
        rel_r = self.base_rel_r()
        grouped_rel = RelOptInfo()
        groups = self.hooks.estimate_num_groups(self.root, parser.parse_expressions("R.a"), Path(rel_r), grouped_rel)
        self.assertEqual(groups, self.native.groups)
        self.assertNotPredicted(grouped_rel)


class BaseRelationTests(DispatcherTestCase):
    def expected_fss(self, rel: RelOptInfo) -> int:
        clauses = [restriction.clause for restriction in rel.base_restrictions]
        context = EquivalenceContext.from_clauses(clauses)
        fingerprints = [hashing.hash_clause(clause, context) for clause in clauses]
        return hashing.hash_feature_space_sample(FeatureSpace, [RelationR], fingerprints)

    def test_prediction(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=7.0))
        rel = self.base_rel_r()
        hooks.set_baserel_rows_estimate(self.root, rel)

        self.assertPredicted(rel, 7.0)
        self.assertEqual(rel.fss_hash, self.expected_fss(rel))
        self.assertEqual(self.native.calls, [])

        [request] = self.predictor.requests
        self.assertEqual(request.relation_ids, (RelationR,))
        self.assertEqual(request.selectivities, (0.5,))
        self.assertEqual(request.fspace_hash, FeatureSpace)

    def test_refusal(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=None))
        rel = self.base_rel_r()
        hooks.set_baserel_rows_estimate(self.root, rel)

        self.assertNotPredicted(rel)
        self.assertEqual(rel.rows, self.native.base_rows)
        self.assertEqual(rel.fss_hash, self.expected_fss(rel))
        self.assertEqual(self.native.calls, ["baserel"])
        self.assertIsNotNone(rel.record)

    def test_previous_estimator(self) -> None:
        previous = FixedNativeEstimator(base_rows=33.0)
        hooks = self.make_hooks(ScriptedPredictor(default=None), previous=previous)
        rel = self.base_rel_r()
        hooks.set_baserel_rows_estimate(self.root, rel)
        self.assertEqual(rel.rows, 33.0)
        self.assertEqual(self.native.calls, [])
        self.assertIs(hooks.default_estimator, previous)

    def test_selectivities_are_cached(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=7.0))
        hooks.set_baserel_rows_estimate(self.root, self.base_rel_r())
        hooks.set_baserel_rows_estimate(self.root, self.base_rel_r())
        self.assertEqual(self.selectivities.calls, 1)

    def test_selectivities_per_relation(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=7.0))
        rel_r = RelOptInfo(relids=frozenset({1}), relid=1, base_restrictions=regression_suite.restrictions("a > 5"))
        rel_s = RelOptInfo(relids=frozenset({2}), relid=2,
                           base_restrictions=regression_suite.restrictions("a > 5", tables=("S",)))

        self.selectivities.selectivity = 0.1
        hooks.set_baserel_rows_estimate(self.root, rel_r)
        self.selectivities.selectivity = 0.9
        hooks.set_baserel_rows_estimate(self.root, rel_s)

        request_r, request_s = self.predictor.requests
        self.assertEqual(request_r.fingerprints, request_s.fingerprints)
        self.assertEqual(request_r.selectivities, (0.1,))
        self.assertEqual(request_s.selectivities, (0.9,))

    def test_non_relation_entries(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=7.0))
        rel = RelOptInfo(relids=frozenset({3}), relid=3)
        hooks.set_baserel_rows_estimate(self.root, rel)
        [request] = self.predictor.requests
        self.assertEqual(request.relation_ids, ())


class JoinRelationTests(DispatcherTestCase):
    def test_prediction(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=7.0))
        rel_r, rel_s = self.estimated_inputs(hooks)
        join = self.join_rel()
        clauses = regression_suite.restrictions("R.c = S.d", tables=("R", "S"))
        hooks.set_joinrel_size_estimates(self.root, join, rel_r, rel_s, SpecialJoinInfo(), clauses)
        self.assertPredicted(join, 7.0)
        self.assertEqual(self.predictor.requests[-1].relation_ids, (RelationR, RelationS))

    def test_refusal(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=None))
        rel_r, rel_s = self.estimated_inputs(hooks)
        join = self.join_rel()
        clauses = regression_suite.restrictions("R.c = S.d", tables=("R", "S"))
        hooks.set_joinrel_size_estimates(self.root, join, rel_r, rel_s, SpecialJoinInfo(), clauses)
        self.assertNotPredicted(join)
        self.assertEqual(join.rows, self.native.join_rows)
        self.assertEqual(self.native.calls, ["baserel", "baserel", "joinrel"])

    def test_composition_matches_union(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=7.0))
        rel_r, rel_s = self.estimated_inputs(hooks)
        join = self.join_rel()
        join_clauses = regression_suite.restrictions("R.c = S.d", tables=("R", "S"))
        hooks.set_joinrel_size_estimates(self.root, join, rel_r, rel_s, SpecialJoinInfo(), join_clauses)

        join_clause = join_clauses[0].clause
        join_fingerprint = hashing.hash_clause(join_clause, EquivalenceContext.from_clauses([join_clause]))
        union = ClauseRecord((join_clause,), (join_fingerprint,), (0.5,), ()).merge(rel_r.record, rel_s.record)
        expected_fss = hashing.hash_feature_space_sample(FeatureSpace, union.relation_ids, union.fingerprints)

        self.assertEqual(join.fss_hash, expected_fss)
        self.assertEqual(sorted(join.record.fingerprints), sorted(union.fingerprints))
        self.assertEqual(sorted(join.record.relation_ids), sorted(union.relation_ids))
        self.assertEqual(len(join.record), 3)

    def test_input_order(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=7.0))
        rel_r, rel_s = self.estimated_inputs(hooks)
        clauses = regression_suite.restrictions("R.c = S.d", tables=("R", "S"))
        first_join, second_join = self.join_rel(), self.join_rel()
        hooks.set_joinrel_size_estimates(self.root, first_join, rel_r, rel_s, SpecialJoinInfo(), clauses)
        hooks.set_joinrel_size_estimates(self.root, second_join, rel_s, rel_r, SpecialJoinInfo(), clauses)
        self.assertEqual(first_join.fss_hash, second_join.fss_hash)

    def test_join_type(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=7.0))
        rel_r, rel_s = self.estimated_inputs(hooks)
        clauses = regression_suite.restrictions("R.c = S.d", tables=("R", "S"))
        inner_join, left_join = self.join_rel(), self.join_rel()
        hooks.set_joinrel_size_estimates(self.root, inner_join, rel_r, rel_s, SpecialJoinInfo(JoinType.Inner), clauses)
        hooks.set_joinrel_size_estimates(self.root, left_join, rel_r, rel_s, SpecialJoinInfo(JoinType.Left), clauses)
        self.assertNotEqual(inner_join.fss_hash, left_join.fss_hash)

    def test_unestimated_inputs(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=7.0))
        rel_r, rel_s = self.base_rel_r(), self.base_rel_s()
        join = self.join_rel()
        clauses = regression_suite.restrictions("R.c = S.d", tables=("R", "S"))
        hooks.set_joinrel_size_estimates(self.root, join, rel_r, rel_s, SpecialJoinInfo(), clauses)
        self.assertPredicted(join, 7.0)
        self.assertEqual(sorted(join.record.relation_ids), [RelationR, RelationS])
        self.assertEqual(len(join.record), 3)


class ParameterizedPathTests(DispatcherTestCase):
    def test_base_relation_prediction(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=3.0))
        rel_r, _ = self.estimated_inputs(hooks)
        param_clauses = regression_suite.restrictions("R.c = S.d", tables=("R", "S"))
        rows = hooks.get_parameterized_baserel_size(self.root, rel_r, param_clauses)
        self.assertEqual(rows, 3.0)

        ppi = ParamPathInfo(required_outer=frozenset({2}), clauses=param_clauses, rows=rows)
        hooks.attach_param_path_info(ppi)
        self.assertEqual(ppi.predicted_rows, 3.0)
        self.assertEqual(ppi.fss_hash, self.predictor.requests[-1].fss)
        self.assertEqual(len(ppi.record), 2)

        # the staged estimate is consumed by the first parameterization
        other_ppi = ParamPathInfo()
        hooks.attach_param_path_info(other_ppi)
        self.assertEqual(other_ppi.predicted_rows, NoPrediction)

    def test_base_relation_refusal(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=None))
        rel_r, _ = self.estimated_inputs(hooks)
        param_clauses = regression_suite.restrictions("R.c = S.d", tables=("R", "S"))
        rows = hooks.get_parameterized_baserel_size(self.root, rel_r, param_clauses)
        self.assertEqual(rows, self.native.param_base_rows)

        ppi = ParamPathInfo(clauses=param_clauses, rows=rows)
        hooks.attach_param_path_info(ppi)
        self.assertEqual(ppi.predicted_rows, NoPrediction)
        self.assertEqual(ppi.fss_hash, self.predictor.requests[-1].fss)

    def test_parameterized_scope(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=3.0))
        rel_r, _ = self.estimated_inputs(hooks)
        param_clauses = regression_suite.restrictions("R.c = S.d", tables=("R", "S"))
        calls = self.selectivities.calls
        hooks.get_parameterized_baserel_size(self.root, rel_r, param_clauses)
        # the base restriction is already cached for its relation
        self.assertEqual(self.selectivities.calls, calls + 1)

    def test_join_uses_parameterized_inputs(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=3.0))
        rel_r, rel_s = self.estimated_inputs(hooks)
        param_clauses = regression_suite.restrictions("R.c = S.d", tables=("R", "S"))
        hooks.get_parameterized_baserel_size(self.root, rel_r, param_clauses)
        ppi = ParamPathInfo(required_outer=frozenset({2}), clauses=param_clauses)
        hooks.attach_param_path_info(ppi)

        inner_path = Path(rel_r, param_info=ppi)
        rows = hooks.get_parameterized_joinrel_size(self.root, self.join_rel(), Path(rel_s), inner_path,
                                                    SpecialJoinInfo(), [])
        self.assertEqual(rows, 3.0)
        request = self.predictor.requests[-1]
        self.assertEqual(sorted(request.relation_ids), [RelationR, RelationS])
        self.assertEqual(len(request.clauses), 3)

        join_ppi = ParamPathInfo()
        hooks.attach_param_path_info(join_ppi)
        self.assertEqual(join_ppi.fss_hash, request.fss)

    def test_join_refusal(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=None))
        rel_r, rel_s = self.estimated_inputs(hooks)
        rows = hooks.get_parameterized_joinrel_size(self.root, self.join_rel(), Path(rel_r), Path(rel_s),
                                                    SpecialJoinInfo(), [])
        self.assertEqual(rows, self.native.param_join_rows)


class GroupEstimationTests(DispatcherTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.group_exprs = parser.parse_expressions("R.a, R.b")

    def predicted_input(self, hooks: CardinalityHooks) -> Path:
        rel_r = self.base_rel_r()
        hooks.set_baserel_rows_estimate(self.root, rel_r)
        return Path(rel_r, rows=rel_r.rows)

    def test_stored_sample(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=7.0))
        subpath = self.predicted_input(hooks)
        group_key = hashing.hash_group_key(subpath.parent.fss_hash, self.group_exprs)
        self.knowledge_base.store_sample(FeatureSpace, group_key, math.log(12.0))

        grouped_rel = RelOptInfo()
        estinfo = EstimationInfo(flags=3)
        groups = hooks.estimate_num_groups(self.root, self.group_exprs, subpath, grouped_rel, estinfo=estinfo)
        self.assertAlmostEqual(groups, 12.0)
        self.assertAlmostEqual(grouped_rel.predicted_cardinality, 12.0)
        self.assertEqual(grouped_rel.fss_hash, group_key)
        self.assertEqual(estinfo.flags, 0)
        self.assertNotIn("groups", self.native.calls)

    def test_unpredicted_input(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=None))
        subpath = self.predicted_input(hooks)
        self.assertFalse(subpath.parent.has_prediction)
        group_key = hashing.hash_group_key(subpath.parent.fss_hash, self.group_exprs)
        self.knowledge_base.store_sample(FeatureSpace, group_key, math.log(12.0))

        groups = hooks.estimate_num_groups(self.root, self.group_exprs, subpath, RelOptInfo())
        self.assertAlmostEqual(groups, 12.0)

    def test_unknown_sample(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=7.0))
        subpath = self.predicted_input(hooks)
        grouped_rel = RelOptInfo()
        groups = hooks.estimate_num_groups(self.root, self.group_exprs, subpath, grouped_rel)
        self.assertEqual(groups, self.native.groups)
        self.assertNotPredicted(grouped_rel)

    def test_unexpected_sample_size(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=7.0))
        subpath = self.predicted_input(hooks)
        group_key = hashing.hash_group_key(subpath.parent.fss_hash, self.group_exprs)
        self.knowledge_base.store_sample(FeatureSpace, group_key, math.log(12.0), count=2)

        with self.assertWarns(UserWarning):
            groups = hooks.estimate_num_groups(self.root, self.group_exprs, subpath, RelOptInfo())
        self.assertEqual(groups, self.native.groups)

    def test_grouping_sets(self) -> None:
        hooks = self.make_hooks(ScriptedPredictor(default=7.0))
        subpath = self.predicted_input(hooks)
        groups = hooks.estimate_num_groups(self.root, self.group_exprs, subpath, RelOptInfo(), pgset=[0, 1])
        self.assertEqual(groups, self.native.groups)
        groups = hooks.estimate_num_groups(self.root, [], subpath, RelOptInfo())
        self.assertEqual(groups, self.native.groups)

    def test_replacing_previous_estimator(self) -> None:
        previous = FixedNativeEstimator(groups=9.0)
        hooks = self.make_hooks(ScriptedPredictor(default=7.0), previous=previous)
        subpath = self.predicted_input(hooks)
        with self.assertWarns(UserWarning):
            groups = hooks.estimate_num_groups(self.root, self.group_exprs, subpath, RelOptInfo())
        self.assertEqual(groups, 9.0)


if __name__ == "__main__":
    unittest.main()
