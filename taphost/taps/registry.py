"""Tap layer — Tap registry.

Maps every tap name to the ordered list of enabled plugins implementing it.
Built from one :class:`RegistrySnapshot` and never mutated: the host builds
a new one whenever the plugin registry publishes.  Ordering is ascending
weight, ties broken by discovery index, so it is deterministic and
independent of the order plugins were enabled in.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from taphost.plugins.registry import Plugin, RegistrySnapshot


@dataclass(frozen=True)
class TapRegistration:
    tap: str
    plugin: Plugin
    weight: int
    index: int

    @property
    def entry_point(self) -> str:
        return self.tap


class TapRegistry:
    def __init__(self, snapshot: RegistrySnapshot, table: Mapping[str, tuple[TapRegistration, ...]]) -> None:
        self._snapshot = snapshot
        self._table = MappingProxyType(dict(table))

    @classmethod
    def build(cls, snapshot: RegistrySnapshot) -> "TapRegistry":
        table: dict[str, list[TapRegistration]] = {}
        for plugin in snapshot.enabled():
            for tap in plugin.manifest.taps.implements:
                table.setdefault(tap, []).append(
                    TapRegistration(
                        tap=tap,
                        plugin=plugin,
                        weight=plugin.manifest.weight_for(tap),
                        index=plugin.index,
                    )
                )
        return cls(
            snapshot,
            {tap: tuple(sorted(regs, key=lambda r: (r.weight, r.index))) for tap, regs in table.items()},
        )

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def registrations(self, tap: str) -> tuple[TapRegistration, ...]:
        """Implementers of *tap* in execution order.  Empty for unknown taps."""
        return self._table.get(tap, ())

    def implementers(self, tap: str) -> list[str]:
        return [r.plugin.name for r in self.registrations(tap)]

    def taps(self) -> list[str]:
        return sorted(self._table)

    def __contains__(self, tap: object) -> bool:
        return tap in self._table
