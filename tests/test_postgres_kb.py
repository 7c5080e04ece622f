from __future__ import annotations

import unittest

from adaptq import QueryClass
from adaptq.db import Sample, postgres
from adaptq.util.errors import ResourceUnavailableError
from tests import regression_suite

pg_connect_dir = "."

# hashes are far away from anything that the classifier would produce in practice
TestQueryHash = -987654321
TestFeatureSpace = -123456789


@regression_suite.skip_if_no_db(f"{pg_connect_dir}/.psycopg_connection")
class PostgresKnowledgeBaseTests(unittest.TestCase):
    def setUp(self) -> None:
        self.knowledge_base = postgres.connect(config_file=f"{pg_connect_dir}/.psycopg_connection", install=True)

    def tearDown(self) -> None:
        with self.knowledge_base._cursor() as cursor:
            cursor.execute(f"DELETE FROM {postgres.QueriesTable} WHERE query_hash = %s", (TestQueryHash,))
            cursor.execute(f"DELETE FROM {postgres.DataTable} WHERE fspace_hash = %s", (TestFeatureSpace,))
        self.knowledge_base.close()

    def test_installation(self) -> None:
        self.assertTrue(self.knowledge_base.is_installed())
        self.assertEqual(self.knowledge_base.relation_names(), postgres.KnowledgeBaseRelations)

    def test_classes(self) -> None:
        query_class = QueryClass(TestQueryHash, TestQueryHash, use_prediction=False, learn=True, auto_tune=True,
                                 collect_stat=True)
        self.assertIsNone(self.knowledge_base.find_class(TestQueryHash))
        self.knowledge_base.upsert_class(query_class)
        self.knowledge_base.record_query_text(TestQueryHash, "SELECT * FROM t WHERE a = 1")
        self.assertEqual(self.knowledge_base.find_class(TestQueryHash), query_class)

        updated_class = QueryClass(TestQueryHash, 0, use_prediction=True, learn=True, auto_tune=False,
                                   collect_stat=False)
        self.knowledge_base.upsert_class(updated_class)
        self.assertEqual(self.knowledge_base.find_class(TestQueryHash), updated_class)

    def test_samples(self) -> None:
        self.assertIsNone(self.knowledge_base.load_sample(TestFeatureSpace, 7))
        self.knowledge_base.store_sample(TestFeatureSpace, 7, 2.5)
        self.assertEqual(self.knowledge_base.load_sample(TestFeatureSpace, 7), Sample(2.5, 1))

    def test_class_lock(self) -> None:
        competitor = postgres.connect(config_file=f"{pg_connect_dir}/.psycopg_connection")
        try:
            with self.knowledge_base.class_lock(TestQueryHash):
                with self.assertRaises(ResourceUnavailableError):
                    with competitor.class_lock(TestQueryHash, timeout=0.05):
                        pass
            with competitor.class_lock(TestQueryHash, timeout=0.05):
                pass
        finally:
            competitor.close()


if __name__ == "__main__":
    unittest.main()
