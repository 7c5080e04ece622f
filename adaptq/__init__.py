"""adaptq - Adaptive query optimization hooks for a cost-based query planner.

adaptq sits between the host planner and its cardinality estimation. Before a query is planned, the query is assigned to
a *query class*: all queries that only differ in their constants belong to the same class. The class determines the
machine learning policy of the planning call, i.e. whether learned cardinalities should be used, whether execution
feedback should be stored and whether statistics should be collected. How the policy of new and known classes is
derived is controlled by a global optimization mode.

While the host planner runs, its cardinality estimation call sites are routed through adaptq's hooks. Whenever the
policy permits it, the hooks ask a predictor for the cardinality of the current intermediate and use the predicted value
instead of the native estimate. If the predictor does not know the intermediate, the native estimate is used unchanged.

On a high level, adaptq is structured as follows:

- the `classifier` module contains the query classification, the session state and the planner hook
- the `dispatcher` module contains the cardinality hooks
- the `modes` module translates the optimization mode into the policy of a query class
- the `hashing` module computes the fingerprints of queries, clauses and intermediates
- the `cache` module memoizes clause selectivities during a planning pass
- the `predictor` module contains the predictor interface
- the `profiling` module accumulates execution times per query class
- the `planner` module describes the host planner structures and interfaces that adaptq interacts with
- the `db` package contains the knowledge base, the `qal` package the access to the parse trees and the `util` package
  general utilities

A typical setup looks like this:

>>> settings = adaptq.AqoSettings(mode="intelligent")
>>> kb = adaptq.db.InMemoryKnowledgeBase()
>>> session = adaptq.Session(host_selectivity_estimator)
>>> classifier = adaptq.Classifier(settings, kb, session)
>>> planner = adaptq.AqoPlanner(classifier, host_planner)
>>> hooks = adaptq.CardinalityHooks(session, adaptq.StoredSamplePredictor(kb), kb, host_estimator)
"""

from . import db, qal, util
from ._core import AqoMode, NoPrediction, PlanningPolicyContext, QueryClass, SharedFeatureSpace
from .cache import SelectivityCache
from .classifier import AqoPlanner, Classifier, HostStatus, Session
from .config import AqoSettings
from .dispatcher import CardinalityHooks
from .hashing import hash_clause, hash_query
from .predictor import Prediction, PredictionRequest, Predictor, StoredSamplePredictor
from .profiling import ProfileTable, ProfileUpdate

__version__ = "0.3.0"

__all__ = [
    "db",
    "qal",
    "util",
    "AqoMode",
    "NoPrediction",
    "PlanningPolicyContext",
    "QueryClass",
    "SharedFeatureSpace",
    "SelectivityCache",
    "AqoPlanner",
    "Classifier",
    "HostStatus",
    "Session",
    "AqoSettings",
    "CardinalityHooks",
    "hash_clause",
    "hash_query",
    "Prediction",
    "PredictionRequest",
    "Predictor",
    "StoredSamplePredictor",
    "ProfileTable",
    "ProfileUpdate",
]
