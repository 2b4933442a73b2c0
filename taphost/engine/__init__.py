"""Execution engine — compile once, run each call in a fresh sandbox."""

from taphost.engine.clock import EpochClock
from taphost.engine.pool import InstancePool
from taphost.engine.runtime import (
    TAP_SIGNATURE,
    CallResult,
    CompiledModule,
    ExecutionContext,
    SandboxEngine,
)
from taphost.engine.traps import TrapKind

__all__ = [
    "TAP_SIGNATURE",
    "CallResult",
    "CompiledModule",
    "EpochClock",
    "ExecutionContext",
    "InstancePool",
    "SandboxEngine",
    "TrapKind",
]
