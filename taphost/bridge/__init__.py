"""Capability bridge — the validated host surface plugins may import."""

from taphost.bridge.abi import HostError
from taphost.bridge.bridge import CapabilityBridge, HostFunction
from taphost.bridge.cache import NamespacedCache
from taphost.bridge.capabilities import BASELINE, Capability
from taphost.bridge.db import QueryService
from taphost.bridge.state import CallState, RequestState, UserContext

__all__ = [
    "BASELINE",
    "CallState",
    "Capability",
    "CapabilityBridge",
    "HostError",
    "HostFunction",
    "NamespacedCache",
    "QueryService",
    "RequestState",
    "UserContext",
]
