"""taphost — Exception hierarchy.

All exceptions raised by the plugin host inherit from TapHostError so that
callers can catch the full family with a single except clause when needed.

Every class carries a stable ``kind`` string.  ``public_dict()`` returns the
kind plus a whitelisted subset of the context: it is the only representation
that may leave the process (CLI output, HTTP responses built by callers).
Messages and the full context can contain paths, query text or tracebacks
and are for logs only.

Hierarchy:
    TapHostError
    ├── EngineError
    │   ├── InvalidModuleError
    │   ├── MissingImportError
    │   ├── MissingExportError
    │   ├── TrapError
    │   └── PoolExhaustedError
    ├── BridgeError
    │   └── CapabilityDeniedError
    ├── PluginError
    │   ├── ManifestError
    │   ├── PluginNotFoundError
    │   ├── DependencyCycleError
    │   ├── MissingDependencyError
    │   ├── PluginInUseError
    │   └── MigrationError
    └── DispatchError
        └── HardFailureError
"""

from __future__ import annotations

from typing import Any, ClassVar


class TapHostError(Exception):
    """Base exception for all taphost errors."""

    kind: ClassVar[str] = "internal"
    public_keys: ClassVar[tuple[str, ...]] = ()

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}

    def public_dict(self) -> dict[str, Any]:
        """Return ``{"kind": ..., <safe context>}`` for user-visible output."""
        data: dict[str, Any] = {"kind": self.kind}
        for key in self.public_keys:
            if key in self.context and self.context[key] is not None:
                data[key] = self.context[key]
        return data

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context})"


# ---------------------------------------------------------------------------
# Execution engine
# ---------------------------------------------------------------------------


class EngineError(TapHostError):
    """Base for sandbox engine errors."""


class InvalidModuleError(EngineError):
    """The bytecode is malformed or failed validation.  Fatal at load."""

    kind = "invalid_module"
    public_keys = ("plugin",)

    def __init__(self, plugin: str, reason: str) -> None:
        super().__init__(
            f"Plugin '{plugin}' has invalid bytecode: {reason}",
            context={"plugin": plugin, "reason": reason},
        )
        self.plugin = plugin
        self.reason = reason


class MissingImportError(EngineError):
    """The module imports a host function this host does not provide."""

    kind = "missing_import"
    public_keys = ("plugin", "import_module", "import_name")

    def __init__(self, plugin: str, import_module: str, import_name: str, reason: str = "") -> None:
        detail = f" ({reason})" if reason else ""
        super().__init__(
            f"Plugin '{plugin}' imports '{import_module}.{import_name}' "
            f"which the host does not provide{detail}",
            context={
                "plugin": plugin,
                "import_module": import_module,
                "import_name": import_name,
                "reason": reason,
            },
        )
        self.plugin = plugin
        self.import_module = import_module
        self.import_name = import_name


class MissingExportError(EngineError):
    """A declared tap has no matching entry point (or the wrong signature)."""

    kind = "missing_export"
    public_keys = ("plugin", "entry_point")

    def __init__(self, plugin: str, entry_point: str, reason: str = "not exported") -> None:
        super().__init__(
            f"Plugin '{plugin}' entry point '{entry_point}': {reason}",
            context={"plugin": plugin, "entry_point": entry_point, "reason": reason},
        )
        self.plugin = plugin
        self.entry_point = entry_point
        self.reason = reason


class TrapError(EngineError):
    """Guest execution aborted: CPU deadline, memory fault, explicit failure."""

    kind = "trap"
    public_keys = ("plugin", "entry_point", "trap")

    def __init__(
        self,
        plugin: str,
        trap: str,
        detail: str = "",
        entry_point: str | None = None,
        code: int | None = None,
    ) -> None:
        where = f"'{plugin}.{entry_point}'" if entry_point else f"'{plugin}'"
        super().__init__(
            f"Plugin {where} trapped ({trap}): {detail}" if detail else f"Plugin {where} trapped ({trap})",
            context={
                "plugin": plugin,
                "entry_point": entry_point,
                "trap": trap,
                "detail": detail,
                "code": code,
            },
        )
        self.plugin = plugin
        self.entry_point = entry_point
        self.trap = trap
        self.code = code


class PoolExhaustedError(EngineError):
    """No execution slot became free within the instantiate timeout."""

    kind = "pool_exhausted"
    public_keys = ("plugin",)

    def __init__(self, plugin: str, max_instances: int, timeout: float) -> None:
        super().__init__(
            f"No free execution slot for '{plugin}' "
            f"({max_instances} live instances, waited {timeout}s)",
            context={"plugin": plugin, "max_instances": max_instances, "timeout": timeout},
        )
        self.plugin = plugin


# ---------------------------------------------------------------------------
# Capability bridge
# ---------------------------------------------------------------------------


class BridgeError(TapHostError):
    """Base for capability bridge errors."""


class CapabilityDeniedError(BridgeError):
    """A capability call was rejected by validation or permission checks.

    Never aborts the calling context: the bridge converts it into the
    negative host error code carried in ``code``.
    """

    kind = "capability_denied"
    public_keys = ("plugin", "function")

    def __init__(self, plugin: str, function: str, reason: str, code: int) -> None:
        super().__init__(
            f"Plugin '{plugin}' call '{function}' denied: {reason}",
            context={"plugin": plugin, "function": function, "reason": reason, "code": code},
        )
        self.plugin = plugin
        self.function = function
        self.reason = reason
        self.code = code


# ---------------------------------------------------------------------------
# Plugins and registries
# ---------------------------------------------------------------------------


class PluginError(TapHostError):
    """Base for plugin discovery, registry and administration errors."""

    kind = "plugin_error"
    public_keys = ("plugin",)


class ManifestError(PluginError):
    kind = "invalid_manifest"
    public_keys = ("plugin",)

    def __init__(self, plugin: str, reason: str) -> None:
        super().__init__(
            f"Plugin '{plugin}' manifest is invalid: {reason}",
            context={"plugin": plugin, "reason": reason},
        )
        self.plugin = plugin
        self.reason = reason


class PluginNotFoundError(PluginError):
    kind = "plugin_not_found"
    public_keys = ("plugin",)

    def __init__(self, plugin: str) -> None:
        super().__init__(f"Plugin '{plugin}' is not installed", context={"plugin": plugin})
        self.plugin = plugin


class DependencyCycleError(PluginError):
    """Manifests declare a circular dependency.  Fatal at registry build."""

    kind = "dependency_cycle"
    public_keys = ("cycle",)

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            f"Circular plugin dependency: {' -> '.join(cycle)}",
            context={"cycle": cycle},
        )
        self.cycle = cycle


class MissingDependencyError(PluginError):
    kind = "missing_dependency"
    public_keys = ("plugin", "dependency")

    def __init__(self, plugin: str, dependency: str, reason: str = "not installed") -> None:
        super().__init__(
            f"Plugin '{plugin}' depends on '{dependency}' which is {reason}",
            context={"plugin": plugin, "dependency": dependency, "reason": reason},
        )
        self.plugin = plugin
        self.dependency = dependency


class PluginInUseError(PluginError):
    """Disabling would leave enabled plugins with a missing dependency."""

    kind = "plugin_in_use"
    public_keys = ("plugin", "dependents")

    def __init__(self, plugin: str, dependents: list[str]) -> None:
        super().__init__(
            f"Plugin '{plugin}' is required by enabled plugins: {', '.join(dependents)}",
            context={"plugin": plugin, "dependents": dependents},
        )
        self.plugin = plugin
        self.dependents = dependents


class MigrationError(PluginError):
    kind = "migration_failed"
    public_keys = ("plugin", "migration")

    def __init__(self, plugin: str, migration: str, reason: str) -> None:
        super().__init__(
            f"Migration '{migration}' of plugin '{plugin}' failed: {reason}",
            context={"plugin": plugin, "migration": migration, "reason": reason},
        )
        self.plugin = plugin
        self.migration = migration


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class DispatchError(TapHostError):
    """Base for dispatch errors."""


class HardFailureError(DispatchError):
    """A step of a mandatory tap failed; the whole dispatch is aborted."""

    kind = "hard_failure"
    public_keys = ("tap", "plugin", "failure")

    def __init__(self, tap: str, plugin: str, failure: str, cause: Exception | None = None) -> None:
        super().__init__(
            f"Mandatory tap '{tap}' failed in plugin '{plugin}' ({failure})",
            context={"tap": tap, "plugin": plugin, "failure": failure},
        )
        self.tap = tap
        self.plugin = plugin
        self.failure = failure
        self.cause = cause
