"""Plugin layer — discovery, manifests, dependencies and administration."""

from taphost.plugins.admin import PluginAdmin
from taphost.plugins.dependency import DependencyGraph
from taphost.plugins.manifest import PluginManifest, load_manifest, parse_manifest
from taphost.plugins.registry import Plugin, PluginRegistry, RegistrySnapshot
from taphost.plugins.status import StatusStore

__all__ = [
    "DependencyGraph",
    "Plugin",
    "PluginAdmin",
    "PluginManifest",
    "PluginRegistry",
    "RegistrySnapshot",
    "StatusStore",
    "load_manifest",
    "parse_manifest",
]
