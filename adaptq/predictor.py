"""The predictor computes cardinalities for intermediates based on the knowledge base."""
from __future__ import annotations

import abc
import math
from dataclasses import dataclass

from ._core import NoPrediction
from .db import KnowledgeBase
from .util.errors import ResourceUnavailableError
from .util.jsonize import jsondict


@dataclass(frozen=True)
class PredictionRequest:
    """All information about an intermediate that the predictor can base its prediction on.

    Attributes
    ----------
    clauses : tuple[dict, ...]
        The pglast encodings of all clauses that are applied to the intermediate
    fingerprints : tuple[int, ...]
        The fingerprint of each clause
    selectivities : tuple[float, ...]
        The selectivity of each clause, as estimated by the host
    relation_ids : tuple[int, ...]
        The catalog ids of the base relations of the intermediate
    fspace_hash : int
        The feature space of the current query class
    fss : int
        The key of the sample that describes the intermediate
    """
    clauses: tuple[dict, ...]
    fingerprints: tuple[int, ...]
    selectivities: tuple[float, ...]
    relation_ids: tuple[int, ...]
    fspace_hash: int
    fss: int


@dataclass(frozen=True)
class Prediction:
    """The result of a prediction: either a non-negative number of rows, or the `NoPrediction` refusal."""
    rows: float
    fss: int

    @staticmethod
    def refused(fss: int) -> Prediction:
        return Prediction(NoPrediction, fss)

    @property
    def is_refusal(self) -> bool:
        return self.rows < 0


class Predictor(abc.ABC):
    """The predictor provides cardinalities for intermediates, or refuses to do so."""

    @abc.abstractmethod
    def predict(self, request: PredictionRequest) -> Prediction:
        """Computes the cardinality of an intermediate.

        Parameters
        ----------
        request : PredictionRequest
            The intermediate

        Returns
        -------
        Prediction
            The predicted cardinality together with the sample key it belongs to. A refusal is not an error, but an
            expected outcome whenever the predictor does not know the intermediate.
        """
        raise NotImplementedError

    def describe(self) -> jsondict:
        """Provides a JSON-serializable representation of the predictor."""
        return {"name": type(self).__name__}

    def __repr__(self) -> str:
        return str(self)

    def __str__(self) -> str:
        return type(self).__name__


class StoredSamplePredictor(Predictor):
    """Predictor that answers with the sample that is stored under the exact key of the intermediate.

    Targets are stored on a logarithmic scale, hence the prediction is the natural exponentiation of the stored target. If
    no sample is stored, or if the knowledge base is not available, the predictor refuses.

    Parameters
    ----------
    knowledge_base : KnowledgeBase
        The storage of the samples
    """

    def __init__(self, knowledge_base: KnowledgeBase) -> None:
        self._knowledge_base = knowledge_base

    def predict(self, request: PredictionRequest) -> Prediction:
        try:
            sample = self._knowledge_base.load_sample(request.fspace_hash, request.fss)
        except ResourceUnavailableError:
            return Prediction.refused(request.fss)
        if sample is None or sample.count <= 0:
            return Prediction.refused(request.fss)
        return Prediction(max(math.exp(sample.target), 1.0), request.fss)

    def describe(self) -> jsondict:
        return {"name": "stored-sample", "knowledge_base": self._knowledge_base.describe()}
