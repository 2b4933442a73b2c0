"""Tap layer — contracts, ordering, dispatch and aggregation."""

from taphost.taps.aggregation import (
    AccessResult,
    AggregatedResult,
    Contribution,
    MergeConflict,
    StepFailure,
    merge_additive,
)
from taphost.taps.contracts import (
    BUILTIN_CONTRACTS,
    Aggregation,
    ContractBook,
    PayloadMode,
    TapContract,
)
from taphost.taps.dispatcher import TapDispatcher
from taphost.taps.registry import TapRegistration, TapRegistry

__all__ = [
    "BUILTIN_CONTRACTS",
    "AccessResult",
    "AggregatedResult",
    "Aggregation",
    "ContractBook",
    "Contribution",
    "MergeConflict",
    "PayloadMode",
    "StepFailure",
    "TapContract",
    "TapDispatcher",
    "TapRegistration",
    "TapRegistry",
    "merge_additive",
]
