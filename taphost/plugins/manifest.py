"""Plugin layer — Manifest.

A PluginManifest is the contract between a plugin and the host.  It is read
from ``{name}.info.toml`` next to ``{name}.wasm`` and describes:
  - plugin identity and version
  - capabilities the plugin needs from the bridge
  - taps it implements, with its weight (lower runs earlier)
  - plugins it depends on
  - migrations applied once before the first enable

Example::

    name = "blog"
    version = "1.0.0"
    dependencies = ["categories"]
    capabilities = ["db_read", "cache"]

    [taps]
    implements = ["tap_item_info", "tap_item_access"]
    weight = 0

    [migrations]
    files = ["migrations/001_create_blog.sql"]
"""

from __future__ import annotations

import re
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from taphost.bridge.capabilities import Capability
from taphost.exceptions import ManifestError

PLUGIN_NAME = re.compile(r"^[a-z][a-z0-9_]*$")
TAP_NAME = re.compile(r"^[a-z][a-z0-9_]*$")

MANIFEST_SUFFIX = ".info.toml"


class TapsSection(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    implements: list[str] = Field(default_factory=list)
    weight: int = 0
    weights: dict[str, int] = Field(default_factory=dict)
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("implements")
    @classmethod
    def unique_tap_names(cls, v: list[str]) -> list[str]:
        for tap in v:
            if not TAP_NAME.match(tap):
                raise ValueError(f"invalid tap name '{tap}'")
        if len(set(v)) != len(v):
            raise ValueError("duplicate tap in implements")
        return v

    @model_validator(mode="after")
    def weights_refer_to_implemented(self) -> "TapsSection":
        unknown = set(self.weights) - set(self.implements)
        if unknown:
            raise ValueError(f"weights given for taps not implemented: {sorted(unknown)}")
        return self


class MigrationsSection(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    files: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)

    @field_validator("files")
    @classmethod
    def relative_paths(cls, v: list[str]) -> list[str]:
        for item in v:
            path = Path(item)
            if path.is_absolute() or ".." in path.parts:
                raise ValueError(f"migration path must stay inside the plugin directory: '{item}'")
        if len(set(v)) != len(v):
            raise ValueError("duplicate migration file")
        return v


class PluginManifest(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    description: str = ""
    version: str = "0.0.0"
    default_enabled: bool = True
    dependencies: list[str] = Field(default_factory=list)
    capabilities: list[Capability] = Field(default_factory=list)
    taps: TapsSection = Field(default_factory=TapsSection)
    migrations: MigrationsSection = Field(default_factory=MigrationsSection)

    @field_validator("name")
    @classmethod
    def valid_name(cls, v: str) -> str:
        if not PLUGIN_NAME.match(v):
            raise ValueError("name must match [a-z][a-z0-9_]*")
        return v

    @model_validator(mode="after")
    def no_self_dependency(self) -> "PluginManifest":
        if self.name in self.dependencies:
            raise ValueError("a plugin cannot depend on itself")
        return self

    def weight_for(self, tap: str) -> int:
        return self.taps.weights.get(tap, self.taps.weight)

    def implements(self, tap: str) -> bool:
        return tap in self.taps.implements

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def parse_manifest(text: str, plugin: str = "<unknown>") -> PluginManifest:
    """Parse manifest TOML *text*.  Raises :class:`ManifestError`."""
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ManifestError(plugin, f"TOML syntax error: {exc}") from exc
    try:
        return PluginManifest.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ())) or "manifest"
        raise ManifestError(plugin, f"{where}: {first.get('msg')}") from exc


def load_manifest(path: Path) -> PluginManifest:
    plugin = path.name.removesuffix(MANIFEST_SUFFIX)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestError(plugin, f"cannot read manifest: {exc.strerror}") from exc
    manifest = parse_manifest(text, plugin)
    if manifest.name != plugin:
        raise ManifestError(plugin, f"manifest name '{manifest.name}' does not match file name")
    return manifest
