"""The policy tables that translate the global optimization mode into the flags of a query class.

There are two tables: one for query classes that have never been seen before, and one for classes that are already
stored in the knowledge base. Both are pure functions of the mode and the class information.

New classes:

=========== ===== ===== ========== ========= ============ =======
Mode        learn use   fspace     auto_tune collect_stat persist
=========== ===== ===== ========== ========= ============ =======
intelligent yes   no    query hash yes       yes          yes
forced      yes   yes   0 (shared) no        no           no
controlled  no    no    (n/a)      no        no           no
frozen      no    no    (n/a)      no        no           no
learn       yes   yes   query hash no        yes          yes
disabled    no    no    (n/a)      no        no           no
=========== ===== ===== ========== ========= ============ =======

Whenever the feature space is not applicable, the query hash is used to keep the invariant that a feature space is either
private or shared.

Known classes start with their stored flags. *frozen* mode turns off learning, tuning and statistics collection, *learn*
mode forces statistics collection and a private feature space. All other modes use the stored flags verbatim.
"""
from __future__ import annotations

from dataclasses import dataclass

from ._core import AqoMode, QueryClass, SharedFeatureSpace
from .util.errors import ConfigurationError


@dataclass(frozen=True)
class PolicyFlags:
    """The resolved flags of a query class under a specific mode.

    Attributes
    ----------
    learn : bool
        Whether execution feedback should be learned
    use_prediction : bool
        Whether predictions should replace native estimates
    fspace_hash : int
        The feature space to use
    auto_tune : bool
        Whether self-tuning is allowed
    collect_stat : bool
        Whether execution statistics should be collected
    persist : bool
        Whether a new class should be stored in the knowledge base. This is always *False* for known classes.
    """
    learn: bool
    use_prediction: bool
    fspace_hash: int
    auto_tune: bool
    collect_stat: bool
    persist: bool = False


_PrivateSpace = object()

# mode -> (learn, use, fspace, auto_tune, collect_stat, persist)
_NewClassTable = {
    AqoMode.Intelligent: (True, False, _PrivateSpace, True, True, True),
    AqoMode.Forced: (True, True, SharedFeatureSpace, False, False, False),
    AqoMode.Controlled: (False, False, _PrivateSpace, False, False, False),
    AqoMode.Frozen: (False, False, _PrivateSpace, False, False, False),
    AqoMode.Learn: (True, True, _PrivateSpace, False, True, True),
    AqoMode.Disabled: (False, False, _PrivateSpace, False, False, False),
}


def new_class_policy(mode: AqoMode, query_hash: int) -> PolicyFlags:
    """Determines the flags of a query class that is not stored in the knowledge base.

    Raises
    ------
    ConfigurationError
        If the mode is unknown
    """
    try:
        learn, use, fspace, auto_tune, collect_stat, persist = _NewClassTable[mode]
    except KeyError:
        raise ConfigurationError(f"Unrecognized optimization mode: {mode!r}") from None
    fspace_hash = query_hash if fspace is _PrivateSpace else fspace
    return PolicyFlags(learn=learn, use_prediction=use, fspace_hash=fspace_hash, auto_tune=auto_tune,
                       collect_stat=collect_stat, persist=persist)


def existing_class_policy(mode: AqoMode, stored: QueryClass) -> PolicyFlags:
    """Determines the flags of a query class that has been loaded from the knowledge base.

    Raises
    ------
    ConfigurationError
        If the mode is unknown
    """
    flags = PolicyFlags(learn=stored.learn, use_prediction=stored.use_prediction, fspace_hash=stored.fspace_hash,
                        auto_tune=stored.auto_tune, collect_stat=stored.collect_stat)
    match mode:
        case AqoMode.Frozen:
            return PolicyFlags(learn=False, use_prediction=flags.use_prediction, fspace_hash=flags.fspace_hash,
                               auto_tune=False, collect_stat=False)
        case AqoMode.Learn:
            return PolicyFlags(learn=flags.learn, use_prediction=flags.use_prediction, fspace_hash=stored.query_hash,
                               auto_tune=flags.auto_tune, collect_stat=True)
        case AqoMode.Intelligent | AqoMode.Forced | AqoMode.Controlled | AqoMode.Disabled:
            return flags
        case _:
            raise ConfigurationError(f"Unrecognized optimization mode: {mode!r}")


def should_deactivate(stored: QueryClass, *, force_collect_stat: bool) -> bool:
    """Checks, whether a stored class does not need any learning or prediction machinery at all.

    Such classes are deactivated for the rest of the session: future queries of the class skip the knowledge base
    entirely. The check uses the flags as they are stored, before any mode-specific adjustments.
    """
    return not (stored.learn or stored.use_prediction or stored.auto_tune or force_collect_stat)
