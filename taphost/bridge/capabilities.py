"""Capability bridge — Capability names and permission checks.

Plugins declare the capabilities they need in their manifest.  Baseline
capabilities (logging, request context, identity, randomness, payload
handles) are granted to every plugin; the rest must be declared.
"""

from __future__ import annotations

from enum import Enum

from taphost.bridge.abi import HostError
from taphost.bridge.state import CallState
from taphost.exceptions import CapabilityDeniedError


class Capability(str, Enum):
    DB_READ = "db_read"
    DB_WRITE = "db_write"
    DB_RAW_READ = "db_raw_read"
    CACHE = "cache"
    # Baseline — always granted.
    LOGGING = "logging"
    REQUEST_CONTEXT = "request_context"
    USER = "user"
    RANDOM = "random"
    PAYLOAD = "payload"


BASELINE: frozenset[str] = frozenset(
    {
        Capability.LOGGING.value,
        Capability.REQUEST_CONTEXT.value,
        Capability.USER.value,
        Capability.RANDOM.value,
        Capability.PAYLOAD.value,
    }
)


def effective(declared: list[str] | frozenset[str]) -> frozenset[str]:
    """Declared capabilities plus the baseline set."""
    return frozenset(declared) | BASELINE


def require(state: CallState, capability: Capability, function: str) -> None:
    """Raise :class:`CapabilityDeniedError` when *state* lacks *capability*."""
    if capability.value not in state.capabilities:
        raise CapabilityDeniedError(
            plugin=state.plugin,
            function=function,
            reason=f"capability '{capability.value}' not declared",
            code=int(HostError.CAPABILITY_DENIED),
        )
