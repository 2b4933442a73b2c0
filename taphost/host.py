"""taphost — Plugin host.

``PluginHost`` is the single object an embedding server owns.  It wires the
database engine, the capability bridge, the sandbox engine, the plugin and
tap registries, the dispatcher and the administration layer together, so
tests can build one with custom settings and nothing else.

Usage::

    host = PluginHost(Settings.load())
    await host.start()
    result = await host.dispatch("tap_item_access", {"item": 7, "op": "view"})
    if result.access.allows():
        ...
    await host.enable("blog", cascade=True)
    host.close()
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

from taphost.bridge.bridge import CapabilityBridge
from taphost.bridge.db import QueryService
from taphost.bridge.state import RequestState
from taphost.config import DatabaseConfig, Settings, get_settings
from taphost.engine.runtime import SandboxEngine
from taphost.logging import get_logger
from taphost.plugins.admin import PluginAdmin
from taphost.plugins.registry import Plugin, PluginRegistry, RegistrySnapshot
from taphost.plugins.status import StatusStore
from taphost.taps.aggregation import AggregatedResult
from taphost.taps.contracts import ContractBook
from taphost.taps.dispatcher import TapDispatcher
from taphost.taps.registry import TapRegistry

log = get_logger(__name__)


def create_db_engine(config: DatabaseConfig) -> sa.Engine:
    """Build the SQLAlchemy engine shared by status tracking and the bridge."""
    url = sa.make_url(config.url)
    kwargs: dict[str, Any] = {"echo": config.echo}
    if url.get_backend_name() == "sqlite":
        # Steps run in worker threads.
        kwargs["connect_args"] = {"check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    else:
        kwargs["pool_size"] = config.pool_size
        kwargs["max_overflow"] = config.max_overflow
        kwargs["pool_pre_ping"] = True
    return sa.create_engine(url, **kwargs)


class PluginHost:
    def __init__(self, settings: Settings | None = None, db_engine: sa.Engine | None = None) -> None:
        self.settings = settings or get_settings()
        self.db = db_engine if db_engine is not None else create_db_engine(self.settings.database)

        self.status = StatusStore(self.db)
        self.queries = QueryService(self.db, self.settings.bridge)
        self.bridge = CapabilityBridge(self.settings.bridge, queries=self.queries)
        self.engine = SandboxEngine(self.settings.engine, self.bridge)
        self.contracts = ContractBook.from_config(self.settings.taps)

        known = self.contracts if self.settings.plugins.strict_taps else None
        self.registry = PluginRegistry(self.engine, known_taps=known)
        self._taps = TapRegistry.build(self.registry.snapshot)
        self.registry.subscribe(self._on_publish)

        self.dispatcher = TapDispatcher(self.engine, self.contracts, lambda: self._taps)
        self.admin = PluginAdmin(
            self.registry,
            self.status,
            invoke=self._invoke_lifecycle,
            forced_disabled=self.settings.plugins.disabled,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, directory: Path | None = None) -> RegistrySnapshot:
        """Discover plugins, then apply persisted status."""
        self.status.ensure_schema()
        self.engine.start()
        self.registry.build(directory or self.settings.plugins.directory)
        await self.admin.sync()
        snapshot = self.registry.snapshot
        log.info(
            "plugin_host_started",
            plugins=len(snapshot),
            enabled=len(snapshot.enabled()),
            taps=len(self._taps.taps()),
        )
        return snapshot

    def close(self) -> None:
        self.engine.close()
        self.db.dispose()
        log.info("plugin_host_stopped")

    async def __aenter__(self) -> "PluginHost":
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self.registry.snapshot

    @property
    def taps(self) -> TapRegistry:
        return self._taps

    async def dispatch(self, tap: str, args: Any = None, state: RequestState | None = None) -> AggregatedResult:
        return await self.dispatcher.dispatch(tap, args, state)

    async def enable(self, name: str, cascade: bool = False) -> list[str]:
        return await self.admin.enable(name, cascade=cascade)

    async def disable(self, name: str) -> bool:
        return await self.admin.disable(name)

    def install_order(self) -> list[str]:
        return self.registry.snapshot.graph.install_order()

    def status_report(self) -> dict[str, object]:
        snapshot = self.registry.snapshot
        return {
            "registry_version": snapshot.version,
            "plugins": len(snapshot),
            "enabled": [p.name for p in snapshot.enabled()],
            "taps": self._taps.taps(),
            "engine": self.engine.status(),
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _on_publish(self, snapshot: RegistrySnapshot) -> None:
        self._taps = TapRegistry.build(snapshot)
        self.queries.invalidate_schema()
        log.debug("tap_registry_rebuilt", version=snapshot.version, taps=len(self._taps.taps()))

    async def _invoke_lifecycle(self, plugin: Plugin, tap: str, args: Any) -> object:
        return await self.dispatcher.invoke_single(plugin, tap, args)
