"""Plugin layer — Administration.

Enable and disable plugins by name:

- ``enable`` checks dependencies (optionally enabling them first), applies
  the not-yet-applied migrations in one transaction, runs ``tap_install`` on
  the first enable and ``tap_enable`` every time, persists the status and
  publishes a new registry snapshot.
- ``disable`` refuses while enabled plugins depend on the target, runs
  ``tap_disable`` if the plugin was enabled, persists the status and
  publishes a new snapshot.  Disabling a plugin that was never installed
  succeeds and changes nothing but the status row.

Administrative actions are serialised; dispatches running concurrently keep
the snapshot they started with.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from taphost.exceptions import MissingDependencyError, PluginError, PluginInUseError
from taphost.logging import get_logger
from taphost.plugins.migration import MigrationRunner
from taphost.plugins.registry import Plugin, PluginRegistry
from taphost.plugins.status import StatusStore

log = get_logger(__name__)

LifecycleInvoker = Callable[[Plugin, str, Any], Awaitable[object]]

TAP_INSTALL = "tap_install"
TAP_ENABLE = "tap_enable"
TAP_DISABLE = "tap_disable"


class PluginAdmin:
    def __init__(
        self,
        registry: PluginRegistry,
        store: StatusStore,
        invoke: LifecycleInvoker | None = None,
        forced_disabled: list[str] | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._runner = MigrationRunner(store)
        self._invoke = invoke
        self._forced_disabled = set(forced_disabled or [])
        self._lock = asyncio.Lock()

    @property
    def migrations(self) -> MigrationRunner:
        return self._runner

    def set_invoker(self, invoke: LifecycleInvoker) -> None:
        self._invoke = invoke

    # ------------------------------------------------------------------
    # Enable
    # ------------------------------------------------------------------

    async def enable(self, name: str, cascade: bool = False) -> list[str]:
        """Enable *name*; returns the plugins actually enabled, in order."""
        async with self._lock:
            snapshot = self._registry.snapshot
            plugin = snapshot.get(name)
            if plugin.enabled:
                return []
            if name in self._forced_disabled:
                raise PluginError(
                    f"Plugin '{name}' is disabled by configuration",
                    context={"plugin": name},
                )

            missing = sorted(
                dep for dep in snapshot.graph.all_dependencies(name) if not snapshot.is_enabled(dep)
            )
            if missing and not cascade:
                raise MissingDependencyError(name, missing[0], "not enabled")
            for dep in missing:
                if dep in self._forced_disabled:
                    raise MissingDependencyError(name, dep, "disabled by configuration")

            targets = snapshot.graph.install_order([*missing, name])
            for target in targets:
                await self._enable_one(self._registry.snapshot.get(target))
            return targets

    async def _enable_one(self, plugin: Plugin) -> None:
        record = await asyncio.to_thread(self._store.get, plugin.name)
        first_install = record is None or not record.installed

        ran = await asyncio.to_thread(self._migrate, plugin)

        if first_install and plugin.manifest.implements(TAP_INSTALL):
            await self._lifecycle(plugin, TAP_INSTALL)
        if plugin.manifest.implements(TAP_ENABLE):
            await self._lifecycle(plugin, TAP_ENABLE)

        await asyncio.to_thread(self._persist, plugin, True)
        self._registry.update(lambda s: s.with_enabled({plugin.name: True}))
        log.info(
            "plugin_enabled",
            plugin=plugin.name,
            migrations=len(ran),
            first_install=first_install,
        )

    def _migrate(self, plugin: Plugin) -> list[str]:
        with self._store.engine.begin() as conn:
            return self._runner.apply(conn, plugin, self._registry.snapshot)

    def _persist(self, plugin: Plugin, enabled: bool) -> None:
        with self._store.engine.begin() as conn:
            self._store.set_status(
                conn,
                plugin.name,
                enabled=enabled,
                version=plugin.manifest.version,
                mark_installed=enabled,
            )

    # ------------------------------------------------------------------
    # Disable
    # ------------------------------------------------------------------

    async def disable(self, name: str) -> bool:
        """Disable *name*; returns whether it was enabled before."""
        async with self._lock:
            snapshot = self._registry.snapshot
            plugin = snapshot.get(name)
            dependents = sorted(d for d in snapshot.graph.all_dependents(name) if snapshot.is_enabled(d))
            if dependents:
                raise PluginInUseError(name, dependents)

            was_enabled = plugin.enabled
            if was_enabled and plugin.manifest.implements(TAP_DISABLE):
                await self._lifecycle(plugin, TAP_DISABLE)

            await asyncio.to_thread(self._persist, plugin, False)
            if was_enabled:
                self._registry.update(lambda s: s.with_enabled({name: False}))
            log.info("plugin_disabled", plugin=name, was_enabled=was_enabled)
            return was_enabled

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def sync(self) -> list[str]:
        """Apply persisted status (or ``default_enabled``) to the registry.

        Plugins already enabled in storage get their pending migrations
        applied and are flagged enabled without lifecycle taps.  Plugins
        seen for the first time go through :meth:`enable` when their
        manifest says ``default_enabled``.
        """
        await asyncio.to_thread(self._store.ensure_schema)
        records = await asyncio.to_thread(self._store.all)
        snapshot = self._registry.snapshot
        enabled: list[str] = []
        for name in snapshot.graph.install_order():
            plugin = self._registry.snapshot.get(name)
            if plugin.enabled or name in self._forced_disabled:
                continue
            deps_ready = all(
                self._registry.snapshot.is_enabled(dep) for dep in snapshot.graph.all_dependencies(name)
            )
            record = records.get(name)
            if record is not None and record.enabled:
                if not deps_ready:
                    log.warning("plugin_dependency_not_enabled", plugin=name)
                    continue
                await asyncio.to_thread(self._migrate, plugin)
                self._registry.update(lambda s, n=name: s.with_enabled({n: True}))
                enabled.append(name)
            elif record is None and plugin.manifest.default_enabled:
                if not deps_ready:
                    log.warning("plugin_dependency_not_enabled", plugin=name)
                    continue
                enabled.extend(await self.enable(name))
        log.info("plugin_status_synced", enabled=len(enabled))
        return enabled

    async def _lifecycle(self, plugin: Plugin, tap: str) -> None:
        if self._invoke is None:
            log.debug("lifecycle_tap_skipped", plugin=plugin.name, tap=tap)
            return
        await self._invoke(plugin, tap, {"plugin": plugin.name, "version": plugin.manifest.version})
