"""Tap layer — Aggregation of plugin contributions.

Three aggregation classes:

accumulate
    Every non-empty contribution is kept, in weight order.
dominance
    Grant / Deny / Neutral decisions.  Any Deny wins regardless of order,
    otherwise any Grant, otherwise Neutral.  Callers must treat Neutral as
    deny-by-default for security-sensitive checks.
transform
    Plugins receive the accumulated structure and may only add to it.  An
    attempt to overwrite or delete an earlier contribution is rejected: the
    earlier value is kept and the conflict recorded.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from taphost.taps.contracts import Aggregation


class AccessResult(str, Enum):
    GRANT = "grant"
    DENY = "deny"
    NEUTRAL = "neutral"

    def allows(self) -> bool:
        """Only an explicit Grant allows; Neutral is deny-by-default."""
        return self is AccessResult.GRANT

    @classmethod
    def parse(cls, value: Any) -> "AccessResult | None":
        """Accept ``"Grant"``/``"deny"``/... or ``{"access": "grant"}``."""
        if isinstance(value, dict) and len(value) == 1:
            (key, inner), = value.items()
            value = inner if key in ("access", "result") else key
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return None
        return None


def combine_access(results: Iterable[AccessResult]) -> AccessResult:
    seen = set(results)
    if AccessResult.DENY in seen:
        return AccessResult.DENY
    if AccessResult.GRANT in seen:
        return AccessResult.GRANT
    return AccessResult.NEUTRAL


def is_empty_value(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def merge_additive(existing: Any, incoming: Any, path: str = "$") -> tuple[Any, list[str]]:
    """Merge *incoming* into *existing* without removing or replacing anything.

    - dicts merge key-wise (recursively);
    - lists keep every existing element and gain the elements of *incoming*
      not already present (multiset semantics, so an unchanged list is a no-op);
    - equal scalars are a no-op;
    - anything else is a conflict: *existing* wins and the JSON path is
      reported.

    Returns ``(merged, conflict_paths)``; neither argument is mutated.
    """
    if isinstance(existing, dict) and isinstance(incoming, dict):
        merged = dict(existing)
        conflicts: list[str] = []
        for key, value in incoming.items():
            if key not in merged:
                merged[key] = copy.deepcopy(value)
                continue
            merged[key], sub = merge_additive(merged[key], value, f"{path}.{key}")
            conflicts.extend(sub)
        return merged, conflicts

    if isinstance(existing, list) and isinstance(incoming, list):
        merged_list = list(existing)
        remaining = list(existing)
        for item in incoming:
            if item in remaining:
                remaining.remove(item)
            else:
                merged_list.append(copy.deepcopy(item))
        return merged_list, []

    if type(existing) is type(incoming) and existing == incoming:
        return existing, []
    return existing, [path]


@dataclass(frozen=True)
class Contribution:
    plugin: str
    weight: int
    value: Any


@dataclass(frozen=True)
class StepFailure:
    plugin: str
    weight: int
    kind: str
    detail: str = ""


@dataclass(frozen=True)
class MergeConflict:
    plugin: str
    path: str


@dataclass
class AggregatedResult:
    """Outcome of one dispatch.

    ``contributions`` holds one entry per step that produced a result and
    ``failures`` one per step that did not, both in weight order.
    """

    tap: str
    aggregation: Aggregation
    value: Any
    contributions: list[Contribution] = field(default_factory=list)
    failures: list[StepFailure] = field(default_factory=list)
    conflicts: list[MergeConflict] = field(default_factory=list)
    dispatch_id: str = ""

    @property
    def is_empty(self) -> bool:
        """No plugin implements the tap.  A normal outcome, not an error."""
        return not self.contributions and not self.failures

    @property
    def access(self) -> AccessResult:
        if self.aggregation is not Aggregation.DOMINANCE:
            raise TypeError(f"tap '{self.tap}' is not a dominance tap")
        return self.value  # type: ignore[no-any-return]

    def flattened(self) -> list[Any]:
        """Accumulated values with list contributions spliced in."""
        if self.aggregation is not Aggregation.ACCUMULATE:
            raise TypeError(f"tap '{self.tap}' is not an accumulate tap")
        items: list[Any] = []
        for value in self.value:
            if isinstance(value, list):
                items.extend(value)
            else:
                items.append(value)
        return items

    def to_dict(self) -> dict[str, Any]:
        value = self.value.value if isinstance(self.value, AccessResult) else self.value
        return {
            "tap": self.tap,
            "aggregation": self.aggregation.value,
            "value": value,
            "contributions": [{"plugin": c.plugin, "weight": c.weight} for c in self.contributions],
            "failures": [{"plugin": f.plugin, "weight": f.weight, "kind": f.kind} for f in self.failures],
            "conflicts": [{"plugin": c.plugin, "path": c.path} for c in self.conflicts],
        }


class Aggregator:
    """Collects the steps of one dispatch and produces the final result."""

    def __init__(self, tap: str, aggregation: Aggregation, initial: Any = None) -> None:
        self.tap = tap
        self.aggregation = aggregation
        self._contributions: list[Contribution] = []
        self._failures: list[StepFailure] = []
        self._conflicts: list[MergeConflict] = []
        self._decisions: list[AccessResult] = []
        self._state: Any = copy.deepcopy(initial)

    @property
    def current(self) -> Any:
        """The structure handed to the next step of a transform tap."""
        return self._state

    def add(self, plugin: str, weight: int, value: Any) -> list[str]:
        """Record a successful step; returns transform conflict paths."""
        self._contributions.append(Contribution(plugin, weight, value))
        if self.aggregation is Aggregation.DOMINANCE:
            self._decisions.append(AccessResult.parse(value) or AccessResult.NEUTRAL)
            return []
        if self.aggregation is Aggregation.TRANSFORM and not is_empty_value(value):
            if self._state is None:
                self._state = copy.deepcopy(value)
                return []
            self._state, paths = merge_additive(self._state, value)
            self._conflicts.extend(MergeConflict(plugin, p) for p in paths)
            return paths
        return []

    def fail(self, plugin: str, weight: int, kind: str, detail: str = "") -> None:
        self._failures.append(StepFailure(plugin, weight, kind, detail))
        if self.aggregation is Aggregation.DOMINANCE:
            self._decisions.append(AccessResult.NEUTRAL)

    def finish(self, dispatch_id: str = "") -> AggregatedResult:
        if self.aggregation is Aggregation.DOMINANCE:
            value: Any = combine_access(self._decisions)
        elif self.aggregation is Aggregation.TRANSFORM:
            value = self._state
        else:
            value = [c.value for c in self._contributions if not is_empty_value(c.value)]
        return AggregatedResult(
            tap=self.tap,
            aggregation=self.aggregation,
            value=value,
            contributions=list(self._contributions),
            failures=list(self._failures),
            conflicts=list(self._conflicts),
            dispatch_id=dispatch_id,
        )
