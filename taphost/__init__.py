"""taphost — Sandboxed WebAssembly plugin host.

Loads untrusted plugins compiled to WebAssembly, runs every call in a fresh
memory- and CPU-limited sandbox, and combines the contributions of all
plugins implementing a named extension point ("tap").

Architecture layers (bottom to top):
    1. Engine   — wasmtime compile-once, per-call instances, epoch deadlines
    2. Bridge   — validated host functions: queries, cache, request context,
                  logging, identity, randomness
    3. Plugins  — manifests, dependency graph, copy-on-write registry,
                  migrations, enable/disable
    4. Taps     — contracts, weight ordering, dispatch and aggregation
    5. Host/CLI — ``PluginHost`` wiring and the ``taphost`` command
"""

__version__ = "0.1.0"

from taphost.host import PluginHost
from taphost.taps.aggregation import AccessResult, AggregatedResult

__all__ = [
    "__version__",
    "AccessResult",
    "AggregatedResult",
    "PluginHost",
]
