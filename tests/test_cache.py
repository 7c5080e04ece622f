from __future__ import annotations

import unittest

from adaptq import hashing
from adaptq.cache import SelectivityCache
from tests import regression_suite


class SelectivityCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.estimator = regression_suite.FixedSelectivityEstimator(0.25)
        self.cache = SelectivityCache(self.estimator)
        self.clause = regression_suite.restrictions("R.a = 1")[0]

    def test_memoization(self) -> None:
        first = self.cache.get_or_compute(self.clause, 1)
        second = self.cache.get_or_compute(self.clause, 1)
        self.assertEqual(first, 0.25)
        self.assertEqual(second, 0.25)
        self.assertEqual(self.estimator.calls, 1)
        self.assertEqual(self.cache.misses, 1)

    def test_constants_share_entries(self) -> None:
        other_clause = regression_suite.restrictions("R.a = 2")[0]
        self.cache.get_or_compute(self.clause, 0)
        self.cache.get_or_compute(other_clause, 0)
        self.assertEqual(self.estimator.calls, 1)

    def test_relation_scope(self) -> None:
        self.cache.get_or_compute(self.clause, 0)
        self.cache.get_or_compute(self.clause, 1)
        self.assertEqual(self.estimator.calls, 2)
        self.assertEqual(len(self.cache), 2)
        self.assertIn((hashing.hash_clause(self.clause.clause), 1), self.cache)

    def test_explicit_fingerprint(self) -> None:
        self.cache.get_or_compute(self.clause, 0, fingerprint=17)
        self.assertIn((17, 0), self.cache)

    def test_clamping(self) -> None:
        self.estimator.selectivity = 1.5
        self.assertEqual(self.cache.get_or_compute(self.clause, 0), 1.0)
        self.estimator.selectivity = -0.5
        self.assertEqual(self.cache.get_or_compute(self.clause, 1), 0.0)

    def test_clear(self) -> None:
        self.cache.get_or_compute(self.clause, 0)
        self.cache.clear()
        self.assertEqual(len(self.cache), 0)
        self.assertEqual(self.cache.misses, 0)
        self.cache.get_or_compute(self.clause, 0)
        self.assertEqual(self.estimator.calls, 2)


if __name__ == "__main__":
    unittest.main()
