"""Fundamental types that are shared by all parts of adaptq."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from .util.errors import ConfigurationError
from .util.jsonize import jsondict

NoPrediction: float = -1.0
"""Sentinel cardinality that indicates that no prediction is available (yet), or that the predictor refused to predict."""

SharedFeatureSpace: int = 0
"""The feature space that is shared by all query classes that are registered in *forced* mode."""


class AqoMode(enum.Enum):
    """The global optimization modes.

    The mode determines how new query classes are handled and how the settings of known classes are adjusted. See the
    `modes` module for the precise policy tables.
    """
    Disabled = "disabled"
    Intelligent = "intelligent"
    Forced = "forced"
    Controlled = "controlled"
    Learn = "learn"
    Frozen = "frozen"

    @staticmethod
    def parse(value: str | AqoMode) -> AqoMode:
        """Resolves a mode from its textual name (case-insensitive).

        Raises
        ------
        ConfigurationError
            If the value does not name a known mode
        """
        if isinstance(value, AqoMode):
            return value
        if not isinstance(value, str):
            raise ConfigurationError(f"Unrecognized optimization mode: {value!r}")
        normalized = value.strip().lower()
        for mode in AqoMode:
            if mode.value == normalized:
                return mode
        raise ConfigurationError(f"Unrecognized optimization mode: {value!r}")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class QueryClass:
    """The persistent policy record of all queries that share the same constant-erased fingerprint.

    Attributes
    ----------
    query_hash : int
        The fingerprint of the queries that belong to the class
    fspace_hash : int
        The feature space whose samples are used for the class. This is either the query hash itself (private feature
        space), or the `SharedFeatureSpace`.
    use_prediction : bool
        Whether predicted cardinalities replace the native estimates
    learn : bool
        Whether execution feedback of the class should be stored in the knowledge base
    auto_tune : bool
        Whether the self-tuning process may adjust the flags of the class
    collect_stat : bool
        Whether execution statistics of the class should be collected
    """
    query_hash: int
    fspace_hash: int
    use_prediction: bool
    learn: bool
    auto_tune: bool
    collect_stat: bool

    def __json__(self) -> jsondict:
        return {"query_hash": self.query_hash, "fspace_hash": self.fspace_hash, "use_prediction": self.use_prediction,
                "learn": self.learn, "auto_tune": self.auto_tune, "collect_stat": self.collect_stat}


@dataclass
class PlanningPolicyContext:
    """The machine learning policy that applies to a single planning call.

    The context is created by the classifier when planning starts and is read by all cardinality hooks that fire during the
    same planning pass. Once `use_prediction` is *False*, all hooks fall back to the default estimator.

    A context is *disabled* if none of its flags is set. Disabled contexts do not record timing information.
    """
    query_hash: int = 0
    fspace_hash: int = 0
    use_prediction: bool = False
    learn: bool = False
    auto_tune: bool = False
    collect_stat: bool = False
    is_new_class: bool = False
    explain_only: bool = False
    planning_start_time: Optional[float] = None
    planning_time: float = -1.0

    @staticmethod
    def disabled(query_hash: int = 0) -> PlanningPolicyContext:
        """Creates a context that turns off all learning and prediction machinery for the current query."""
        return PlanningPolicyContext(query_hash=query_hash, fspace_hash=query_hash)

    @property
    def is_disabled(self) -> bool:
        # an EXPLAIN alone does not involve any learning or prediction
        return not (self.use_prediction or self.learn or self.auto_tune or self.collect_stat or self.is_new_class)

    def disable(self) -> None:
        """Turns off all flags of this context, keeping only the query hash."""
        self.use_prediction = False
        self.learn = False
        self.auto_tune = False
        self.collect_stat = False
        self.is_new_class = False
        self.explain_only = False
        self.planning_start_time = None
        self.planning_time = -1.0

    def as_query_class(self) -> QueryClass:
        """Provides the persistent part of this context."""
        return QueryClass(self.query_hash, self.fspace_hash, self.use_prediction, self.learn, self.auto_tune,
                          self.collect_stat)

    def __json__(self) -> jsondict:
        return {"query_hash": self.query_hash, "fspace_hash": self.fspace_hash, "use_prediction": self.use_prediction,
                "learn": self.learn, "auto_tune": self.auto_tune, "collect_stat": self.collect_stat,
                "is_new_class": self.is_new_class, "explain_only": self.explain_only,
                "planning_time": self.planning_time}
