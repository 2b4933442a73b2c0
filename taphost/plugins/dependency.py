"""Plugin layer — Dependency graph.

Builds a NetworkX DiGraph (edge ``dependency -> dependent``) from manifests
and answers ordering questions.  Cycles and missing dependencies are fatal
when the graph is built, i.e. at registry build time, never during dispatch.

Orders are deterministic: among plugins whose dependencies are satisfied
the lexicographically smallest name comes first.
"""

from __future__ import annotations

from typing import Iterable, Mapping

import networkx as nx

from taphost.exceptions import DependencyCycleError, MissingDependencyError
from taphost.plugins.manifest import PluginManifest


class DependencyGraph:
    """Usage::

        graph = DependencyGraph(manifests)       # raises on cycles
        graph.install_order()                    # ["categories", "blog"]
        graph.dependents("categories")           # {"blog"}
    """

    def __init__(self, manifests: Mapping[str, PluginManifest]) -> None:
        self._graph = self._build_graph(manifests)

    @staticmethod
    def _build_graph(manifests: Mapping[str, PluginManifest]) -> nx.DiGraph:
        graph: nx.DiGraph = nx.DiGraph()
        for name in manifests:
            graph.add_node(name)
        for name, manifest in manifests.items():
            for dep in manifest.dependencies:
                if dep not in manifests:
                    raise MissingDependencyError(name, dep)
                graph.add_edge(dep, name)
            for dep in manifest.migrations.depends_on:
                if dep not in manifests:
                    raise MissingDependencyError(name, dep, "not installed (migration dependency)")
                graph.add_edge(dep, name)

        if not nx.is_directed_acyclic_graph(graph):
            try:
                cycle = nx.find_cycle(graph)
                cycle_ids = [edge[0] for edge in cycle] + [cycle[-1][1]]
            except nx.NetworkXNoCycle:
                cycle_ids = []
            raise DependencyCycleError(cycle_ids)

        return graph

    def install_order(self, names: Iterable[str] | None = None) -> list[str]:
        """Topological order (dependencies first), optionally restricted to *names*."""
        order = list(nx.lexicographical_topological_sort(self._graph))
        if names is None:
            return order
        wanted = set(names)
        return [n for n in order if n in wanted]

    def dependencies(self, name: str) -> set[str]:
        """Direct dependencies of *name*."""
        return set(self._graph.predecessors(name))

    def all_dependencies(self, name: str) -> set[str]:
        """Transitive dependencies of *name*."""
        return nx.ancestors(self._graph, name)

    def dependents(self, name: str) -> set[str]:
        """Plugins that depend directly on *name*."""
        return set(self._graph.successors(name))

    def all_dependents(self, name: str) -> set[str]:
        return nx.descendants(self._graph, name)
