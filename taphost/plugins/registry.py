"""Plugin layer — Plugin registry.

The registry is the single point of truth for discovered plugins.
It handles:
  - discovery of ``<directory>/<name>/{name}.info.toml`` + ``{name}.wasm``,
    in sorted directory order (the discovery index breaks weight ties)
  - manifest validation, including the known-tap check
  - compiling each plugin exactly once through the sandbox engine
  - dependency validation (cycles and missing dependencies are fatal)
  - copy-on-write snapshots: administrative changes build a new
    :class:`RegistrySnapshot` and publish it atomically; readers keep the
    snapshot they started with

A failed build (invalid bytecode, bad manifest, dependency cycle) raises
before anything is published, so there is never a partially-built registry.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Callable, Container, Iterable, Mapping

from taphost.bridge.capabilities import effective
from taphost.exceptions import ManifestError, PluginNotFoundError
from taphost.logging import get_logger
from taphost.plugins.dependency import DependencyGraph
from taphost.plugins.manifest import MANIFEST_SUFFIX, PluginManifest, load_manifest

if TYPE_CHECKING:
    from taphost.engine.runtime import CompiledModule, SandboxEngine

log = get_logger(__name__)


@dataclass(frozen=True)
class Plugin:
    """A discovered, compiled plugin.  Only ``enabled`` ever changes, by replacement."""

    name: str
    manifest: PluginManifest
    compiled: "CompiledModule"
    directory: Path
    index: int
    enabled: bool = False

    @property
    def capabilities(self) -> frozenset[str]:
        return effective([c.value for c in self.manifest.capabilities])

    def summary(self) -> dict[str, object]:
        return {
            "name": self.name,
            "version": self.manifest.version,
            "description": self.manifest.description,
            "enabled": self.enabled,
            "weight": self.manifest.taps.weight,
            "taps": list(self.manifest.taps.implements),
            "dependencies": list(self.manifest.dependencies),
            "capabilities": sorted(self.capabilities),
            "digest": self.compiled.digest,
        }


class RegistrySnapshot:
    """Immutable view of every plugin at one registry version."""

    def __init__(self, plugins: Mapping[str, Plugin], graph: DependencyGraph, version: int = 1) -> None:
        self._plugins = MappingProxyType(dict(plugins))
        self._graph = graph
        self.version = version

    @property
    def plugins(self) -> Mapping[str, Plugin]:
        return self._plugins

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    def get(self, name: str) -> Plugin:
        try:
            return self._plugins[name]
        except KeyError:
            raise PluginNotFoundError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._plugins

    def __len__(self) -> int:
        return len(self._plugins)

    def all(self) -> list[Plugin]:
        """Plugins in discovery order."""
        return sorted(self._plugins.values(), key=lambda p: p.index)

    def enabled(self) -> list[Plugin]:
        return [p for p in self.all() if p.enabled]

    def is_enabled(self, name: str) -> bool:
        plugin = self._plugins.get(name)
        return plugin is not None and plugin.enabled

    def with_enabled(self, changes: Mapping[str, bool]) -> "RegistrySnapshot":
        """Return the next snapshot with the enabled flags in *changes* applied."""
        plugins = dict(self._plugins)
        for name, enabled in changes.items():
            plugins[name] = replace(self.get(name), enabled=enabled)
        return RegistrySnapshot(plugins, self._graph, self.version + 1)


def discover(directory: Path) -> list[tuple[PluginManifest, Path]]:
    """Return ``(manifest, plugin_dir)`` pairs in sorted directory order."""
    if not directory.is_dir():
        log.warning("plugin_directory_missing", directory=str(directory))
        return []
    found: list[tuple[PluginManifest, Path]] = []
    for sub in sorted(p for p in directory.iterdir() if p.is_dir()):
        manifests = sorted(sub.glob(f"*{MANIFEST_SUFFIX}"))
        if len(manifests) != 1:
            raise ManifestError(
                sub.name,
                f"expected exactly one {MANIFEST_SUFFIX} file, found {len(manifests)}",
            )
        manifest = load_manifest(manifests[0])
        found.append((manifest, sub))
    return found


class PluginRegistry:
    """Runtime registry of plugins, published as copy-on-write snapshots.

    Usage::

        registry = PluginRegistry(engine, known_taps=contracts)
        snapshot = registry.build(Path("plugins"))
        registry.update(lambda s: s.with_enabled({"blog": True}))
    """

    def __init__(
        self,
        engine: "SandboxEngine",
        known_taps: Container[str] | None = None,
    ) -> None:
        self._engine = engine
        self._known_taps = known_taps
        self._lock = threading.RLock()
        self._snapshot = RegistrySnapshot({}, DependencyGraph({}), version=0)
        self._subscribers: list[Callable[[RegistrySnapshot], None]] = []

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    @property
    def lock(self) -> threading.RLock:
        """Serialises administrative actions.  Readers never take it."""
        return self._lock

    def subscribe(self, callback: Callable[[RegistrySnapshot], None]) -> None:
        self._subscribers.append(callback)

    def build(self, directory: Path) -> RegistrySnapshot:
        """Discover, validate and compile every plugin under *directory*."""
        discovered = discover(directory)
        return self.build_from(
            (manifest, path, (path / f"{manifest.name}.wasm")) for manifest, path in discovered
        )

    def build_from(self, entries: Iterable[tuple[PluginManifest, Path, Path | bytes]]) -> RegistrySnapshot:
        plugins: dict[str, Plugin] = {}
        for index, (manifest, directory, source) in enumerate(entries):
            if manifest.name in plugins:
                raise ManifestError(manifest.name, "duplicate plugin name")
            self._check_taps(manifest)
            wasm = self._read_wasm(manifest.name, source)
            compiled = self._engine.load(manifest.name, wasm)
            plugins[manifest.name] = Plugin(
                name=manifest.name,
                manifest=manifest,
                compiled=compiled,
                directory=directory,
                index=index,
            )
            log.info(
                "plugin_discovered",
                plugin=manifest.name,
                version=manifest.version,
                taps=len(manifest.taps.implements),
            )

        graph = DependencyGraph({name: p.manifest for name, p in plugins.items()})
        with self._lock:
            snapshot = RegistrySnapshot(plugins, graph, self._snapshot.version + 1)
            self._publish(snapshot)
        log.info("plugin_registry_built", plugins=len(plugins), version=snapshot.version)
        return snapshot

    def update(self, change: Callable[[RegistrySnapshot], RegistrySnapshot]) -> RegistrySnapshot:
        """Apply *change* to the current snapshot and publish the result."""
        with self._lock:
            snapshot = change(self._snapshot)
            self._publish(snapshot)
            return snapshot

    def _publish(self, snapshot: RegistrySnapshot) -> None:
        self._snapshot = snapshot
        for callback in self._subscribers:
            callback(snapshot)

    def _check_taps(self, manifest: PluginManifest) -> None:
        if self._known_taps is None:
            return
        for tap in manifest.taps.implements:
            if tap not in self._known_taps:
                raise ManifestError(manifest.name, f"unknown tap '{tap}'")

    @staticmethod
    def _read_wasm(name: str, source: Path | bytes) -> bytes:
        if isinstance(source, (bytes, bytearray)):
            return bytes(source)
        try:
            return source.read_bytes()
        except OSError:
            raise ManifestError(name, f"missing bytecode file {source.name}") from None
