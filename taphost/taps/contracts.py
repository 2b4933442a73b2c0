"""Tap layer — Tap contracts.

A contract tells the dispatcher how to combine the contributions of every
implementing plugin (aggregation class), whether any failing step aborts the
dispatch (mandatory), and how the arguments reach the plugin (payload mode).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Iterator, Mapping

from taphost.config import TapsConfig


class Aggregation(str, Enum):
    ACCUMULATE = "accumulate"
    DOMINANCE = "dominance"
    TRANSFORM = "transform"


class PayloadMode(str, Enum):
    SERIALIZED = "serialized"
    HANDLE = "handle"


@dataclass(frozen=True)
class TapContract:
    name: str
    aggregation: Aggregation = Aggregation.ACCUMULATE
    mandatory: bool = False
    payload_mode: PayloadMode = PayloadMode.SERIALIZED


_A = Aggregation.ACCUMULATE
_D = Aggregation.DOMINANCE
_T = Aggregation.TRANSFORM

BUILTIN_CONTRACTS: Mapping[str, TapContract] = MappingProxyType(
    {
        c.name: c
        for c in (
            # Lifecycle
            TapContract("tap_install", _A, mandatory=True),
            TapContract("tap_enable", _A),
            TapContract("tap_disable", _A),
            TapContract("tap_uninstall", _A),
            # Items
            TapContract("tap_item_info", _A),
            TapContract("tap_item_view", _T),
            TapContract("tap_item_view_alter", _T),
            TapContract("tap_item_insert", _A),
            TapContract("tap_item_update", _A),
            TapContract("tap_item_delete", _A),
            TapContract("tap_item_access", _D),
            TapContract("tap_item_update_index", _A),
            TapContract("tap_preprocess_item", _T),
            # Categories
            TapContract("tap_categories_term_insert", _A),
            TapContract("tap_categories_term_update", _A),
            TapContract("tap_categories_term_delete", _A),
            # Forms
            TapContract("tap_form_alter", _T),
            TapContract("tap_form_validate", _A, mandatory=True),
            TapContract("tap_form_submit", _A),
            # Registration-style
            TapContract("tap_menu", _A),
            TapContract("tap_perm", _A),
            TapContract("tap_theme", _T),
            TapContract("tap_cron", _A),
            TapContract("tap_queue_info", _A),
            TapContract("tap_queue_worker", _A),
            TapContract("tap_user_login", _A),
        )
    }
)


class ContractBook:
    """Built-in contracts merged with configured overrides.

    Usage::

        book = ContractBook.from_config(settings.taps)
        book["tap_item_access"].aggregation   # Aggregation.DOMINANCE
        "tap_custom" in book                  # False unless configured
    """

    def __init__(self, contracts: Mapping[str, TapContract]) -> None:
        self._contracts = dict(contracts)

    @classmethod
    def from_config(cls, config: TapsConfig | None = None) -> "ContractBook":
        contracts = dict(BUILTIN_CONTRACTS)
        if config is not None:
            for name, override in config.contracts.items():
                contracts[name] = TapContract(
                    name=name,
                    aggregation=Aggregation(override.aggregation),
                    mandatory=override.mandatory,
                    payload_mode=PayloadMode(override.payload_mode),
                )
            for name in config.mandatory:
                base = contracts.get(name, TapContract(name))
                contracts[name] = TapContract(name, base.aggregation, True, base.payload_mode)
        return cls(contracts)

    def get(self, tap: str) -> TapContract:
        """Contract for *tap*; unknown taps default to accumulate, non-mandatory."""
        return self._contracts.get(tap) or TapContract(tap)

    def __getitem__(self, tap: str) -> TapContract:
        return self._contracts[tap]

    def __contains__(self, tap: object) -> bool:
        return tap in self._contracts

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._contracts))

    def __len__(self) -> int:
        return len(self._contracts)
