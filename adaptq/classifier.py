"""Classification of incoming queries into query classes and the planner hook that drives it.

Each query that reaches the planner is classified exactly once, before planning starts. The classifier computes the
constant-erased fingerprint of the query (its *query hash*), looks up the corresponding query class in the knowledge base
and resolves the machine learning policy for the current planning call according to the global optimization mode. The
result is a `PlanningPolicyContext` that all cardinality hooks of the same planning pass consult.

The classification proceeds as follows:

1. queries that must never be touched are rejected right away: if the knowledge base is not installed, the statement is
   not a *SELECT*/*INSERT*/*UPDATE*/*DELETE*, planning happens in a parallel worker, the query touches a system catalog or
   the knowledge base itself, the server is in recovery, the connection belongs to a connection proxy, or the mode is
   *disabled* and neither statistics collection nor profiling are forced
2. the query hash is computed. Deactivated classes and classes that are currently being planned in this session (i.e.
   reentrant planning of auxiliary queries) are rejected
3. the class is marked as active for the duration of the planning call
4. in *disabled* mode, the knowledge base is not consulted at all
5. the class is loaded from the knowledge base and the policy tables of the `modes` module are applied
6. stored classes that do not need any machinery are deactivated for the remainder of the session
7. new classes are registered in the knowledge base under an exclusive class lock
8. forced statistics collection overrides the policy
9. the planning start time is recorded

Configuration errors (an unknown mode) abort the classification. All problems with the knowledge base only disable the
machinery for the current query.
"""
from __future__ import annotations

import contextlib
import time
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Optional

from . import modes, util
from ._core import AqoMode, PlanningPolicyContext, QueryClass
from .cache import SelectivityCache
from .config import AqoSettings
from .db import KnowledgeBase
from .hashing import hash_query
from .planner import Planner, SelectivityEstimator
from .profiling import ProfileTable, ProfileUpdate
from .qal import parser
from .util.errors import ResourceUnavailableError, StateError


@dataclass
class HostStatus:
    """The state of the host session that influences whether queries may be classified.

    Attributes
    ----------
    creating_extension : bool
        Whether the session is currently installing the extension
    parallel_worker : bool
        Whether planning happens inside a parallel worker
    recovery_in_progress : bool
        Whether the server is replaying its write-ahead log
    application_name : str
        The application name of the client connection
    """
    creating_extension: bool = False
    parallel_worker: bool = False
    recovery_in_progress: bool = False
    application_name: str = ""


class Session:
    """The state that is shared by all planning calls of a single database session.

    Parameters
    ----------
    selectivity_estimator : SelectivityEstimator
        The host's selectivity estimation. It is wrapped by the session's selectivity cache.
    host : Optional[HostStatus], optional
        The current host state. Can be updated by the host at any time.
    """

    def __init__(self, selectivity_estimator: SelectivityEstimator, *, host: Optional[HostStatus] = None) -> None:
        self.host = host if host is not None else HostStatus()
        self.active_classes: set[int] = set()
        self.deactivated: set[int] = set()
        self.selectivity_cache = SelectivityCache(selectivity_estimator)
        self.extension_confirmed = False
        self._contexts: list[PlanningPolicyContext] = []

    @property
    def current_context(self) -> PlanningPolicyContext:
        """The policy of the planning call that is currently running. Outside of planning calls, this is disabled."""
        return self._contexts[-1] if self._contexts else PlanningPolicyContext.disabled()

    def push_context(self, context: PlanningPolicyContext) -> None:
        self._contexts.append(context)

    def pop_context(self) -> PlanningPolicyContext:
        if not self._contexts:
            raise StateError("No planning call is in progress")
        return self._contexts.pop()

    def __repr__(self) -> str:
        return (f"Session(active={len(self.active_classes)}, deactivated={len(self.deactivated)}, "
                f"planning_depth={len(self._contexts)})")


class Classifier:
    """Assigns queries to their query classes and resolves the policy for each planning call.

    Parameters
    ----------
    settings : AqoSettings
        The global settings. They are read on each classification, so changes take effect for the next query.
    knowledge_base : KnowledgeBase
        The storage of the query classes
    session : Session
        The state of the current session
    """

    def __init__(self, settings: AqoSettings, knowledge_base: KnowledgeBase, session: Session) -> None:
        self.settings = settings
        self.knowledge_base = knowledge_base
        self.session = session
        self._log = util.make_logger(settings.debug, component="classifier")

    def classify(self, parsed_query: Optional[dict], raw_text: Optional[str]) -> PlanningPolicyContext:
        """Determines the policy for a new planning call.

        If the query is assigned to a query class, that class is marked as active in the session. It stays active until
        `release` is called. Use `planning` to take care of this automatically.

        Parameters
        ----------
        parsed_query : Optional[dict]
            The pglast encoding of the statement. If this is *None*, the `raw_text` is parsed.
        raw_text : Optional[str]
            The query text. It is stored along with new query classes if available.

        Returns
        -------
        PlanningPolicyContext
            The policy

        Raises
        ------
        ConfigurationError
            If the optimization mode is unknown
        """
        context, _ = self._classify(parsed_query, raw_text)
        return context

    def release(self, query_hash: int) -> None:
        """Marks a query class as no longer being planned."""
        self.session.active_classes.discard(query_hash)

    @contextlib.contextmanager
    def planning(self, parsed_query: Optional[dict], raw_text: Optional[str]) -> Iterator[PlanningPolicyContext]:
        """Classifies a query and makes its policy the current policy of the session while the block is executed.

        When the block is left, the policy is removed from the session, the query class is released (if this call activated
        it) and the planning time is recorded.
        """
        context, entered = self._classify(parsed_query, raw_text)
        self.session.push_context(context)
        try:
            yield context
        finally:
            self.session.pop_context()
            if entered:
                self.release(context.query_hash)
            if context.planning_start_time is not None:
                context.planning_time = time.perf_counter() - context.planning_start_time

    def _classify(self, parsed_query: Optional[dict], raw_text: Optional[str]) -> tuple[PlanningPolicyContext, bool]:
        mode = self.settings.resolved_mode()
        force_collect = self.settings.force_collect_stat

        if parsed_query is None:
            parsed_query = parser.parse_statement(raw_text)
        stmt, explain_only = parser.unwrap_explain(parsed_query)
        skip_reason = self._skip_reason(stmt, mode)
        if skip_reason:
            self._log("Ignoring query:", skip_reason)
            return PlanningPolicyContext.disabled(), False

        self.session.selectivity_cache.clear()
        query_hash = hash_query(stmt, raw_text)
        if query_hash in self.session.deactivated:
            self._log("Query class", query_hash, "is deactivated")
            return PlanningPolicyContext.disabled(query_hash), False
        if query_hash in self.session.active_classes:
            self._log("Query class", query_hash, "is already being planned")
            return PlanningPolicyContext.disabled(query_hash), False

        self._log("Classifying query", repr(raw_text) if raw_text else "<no text>", "as class", query_hash)
        self.session.active_classes.add(query_hash)
        context = PlanningPolicyContext(query_hash=query_hash, fspace_hash=query_hash, explain_only=explain_only)

        stored: Optional[QueryClass] = None
        if mode == AqoMode.Disabled:
            context.disable()
        else:
            try:
                stored = self.knowledge_base.find_class(query_hash)
            except ResourceUnavailableError as e:
                self._log("Cannot load query class", query_hash, "-", e)
                context.disable()
                return context, True
            self._apply_policy(context, mode, stored)

            if stored is None and (context.is_new_class or force_collect):
                if not self._register_class(context, raw_text):
                    context.disable()
                    return context, True

        if force_collect:
            context.collect_stat = True
            context.fspace_hash = query_hash

        self._log("Resolved policy", util.to_json(context))
        if not context.is_disabled or self.settings.profiling_enabled:
            context.planning_start_time = time.perf_counter()
        return context, True

    def _apply_policy(self, context: PlanningPolicyContext, mode: AqoMode, stored: Optional[QueryClass]) -> None:
        if stored is None:
            flags = modes.new_class_policy(mode, context.query_hash)
            context.is_new_class = flags.persist
        else:
            if modes.should_deactivate(stored, force_collect_stat=self.settings.force_collect_stat):
                self._log("Deactivating query class", context.query_hash)
                self.session.deactivated.add(context.query_hash)
            flags = modes.existing_class_policy(mode, stored)

        context.learn = flags.learn
        context.use_prediction = flags.use_prediction
        context.fspace_hash = flags.fspace_hash
        context.auto_tune = flags.auto_tune
        context.collect_stat = flags.collect_stat

    def _register_class(self, context: PlanningPolicyContext, raw_text: Optional[str]) -> bool:
        query_hash = context.query_hash
        try:
            with self.knowledge_base.class_lock(query_hash, timeout=self.settings.lock_timeout):
                # another session might have registered the class while we were waiting for the lock
                if self.knowledge_base.find_class(query_hash) is None:
                    self.knowledge_base.upsert_class(context.as_query_class())
                    self._log("Registered query class", query_hash)
                if raw_text is not None:
                    self.knowledge_base.record_query_text(query_hash, raw_text)
        except ResourceUnavailableError as e:
            self._log("Cannot register query class", query_hash, "-", e)
            return False
        return True

    def _skip_reason(self, stmt: dict, mode: AqoMode) -> str:
        host = self.session.host
        if not self._extension_installed():
            return "knowledge base is not installed"
        if not parser.statement_kind(stmt).is_dml:
            return "not a DML statement"
        if host.parallel_worker:
            return "planning in parallel worker"
        if (mode == AqoMode.Disabled and not self.settings.force_collect_stat
                and not self.settings.profiling_enabled):
            return "disabled mode"
        if any(pattern in host.application_name for pattern in self.settings.proxy_application_patterns):
            return "connection proxy"
        if self._uses_system_relation(stmt):
            return "query uses system relations"
        if host.recovery_in_progress:
            return "recovery in progress"
        return ""

    def _extension_installed(self) -> bool:
        if self.session.host.creating_extension:
            return False
        if self.session.extension_confirmed:
            return True
        try:
            self.session.extension_confirmed = self.knowledge_base.is_installed()
        except ResourceUnavailableError:
            self.session.extension_confirmed = False
        return self.session.extension_confirmed

    def _uses_system_relation(self, stmt: dict) -> bool:
        own_relations = self.knowledge_base.relation_names()
        for relation in parser.referenced_relations(stmt):
            if parser.is_system_relation(relation) or relation.name in own_relations:
                return True
        return False


class AqoPlanner(Planner):
    """The planner hook: classifies each query and then runs the actual planner.

    The actual planner is either a previously installed planner hook, or the host's standard planner. The delegate is
    resolved once when the hook is created.

    Parameters
    ----------
    classifier : Classifier
        The classifier of the current session
    standard_planner : Planner
        The host's own planner
    previous : Optional[Planner], optional
        A planner hook that was installed before this one. If given, it is called instead of the standard planner.
    profile_table : Optional[ProfileTable], optional
        The profiling table that execution times are reported to
    """

    def __init__(self, classifier: Classifier, standard_planner: Planner, *, previous: Optional[Planner] = None,
                 profile_table: Optional[ProfileTable] = None) -> None:
        self.classifier = classifier
        self._delegate = previous if previous is not None else standard_planner
        self.profile_table = profile_table
        self.last_context: Optional[PlanningPolicyContext] = None

    @property
    def session(self) -> Session:
        return self.classifier.session

    def plan(self, parsed_query: Optional[dict], raw_text: Optional[str], *args, **kwargs) -> Any:
        with self.classifier.planning(parsed_query, raw_text) as context:
            self.last_context = context
            return self._delegate.plan(parsed_query, raw_text, *args, **kwargs)

    def finish_execution(self, context: PlanningPolicyContext, total_time: float) -> ProfileUpdate:
        """Reports the total time of a query (planning and execution) to the profiling table.

        Only the execution part is recorded. Profiling problems are never reported as errors.
        """
        if self.profile_table is None or context.planning_start_time is None:
            return ProfileUpdate.Disabled
        elapsed = total_time - max(context.planning_time, 0.0)
        return self.profile_table.update(context.query_hash, elapsed)
