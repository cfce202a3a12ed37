"""
Resource graph builder.

Validates a declaration against the provider schemas and turns the
references between attribute expressions into a directed acyclic graph.
Edges point from a dependency to its dependent, so a topological sort of
the underlying networkx graph is a valid apply order.
"""
from typing import Dict, Iterable, List, Optional, Set

import networkx as nx

from converge.errors import CycleError, DeclarationError, UnresolvedReferenceError
from converge.models.expression import Reference, references
from converge.models.resource import OutputValue, ResourceNode
from converge.providers.base import ProviderRegistry


class ResourceGraph:
    def __init__(self, nodes: Dict[str, ResourceNode], graph: nx.DiGraph, outputs: Dict[str, OutputValue]):
        self.nodes = nodes
        self.outputs = outputs
        self._graph = graph

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, name: str) -> ResourceNode:
        return self.nodes[name]

    def dependencies(self, name: str) -> List[str]:
        return sorted(self._graph.predecessors(name))

    def dependents(self, name: str) -> List[str]:
        return sorted(self._graph.successors(name))

    def descendants(self, name: str) -> Set[str]:
        """Every node that transitively depends on name."""
        return set(nx.descendants(self._graph, name))

    def apply_order(self) -> List[str]:
        # lexicographical tie-break keeps plans stable between runs
        return list(nx.lexicographical_topological_sort(self._graph))

    def generations(self) -> List[List[str]]:
        """Groups of nodes with no edges between them, in dependency order."""
        return [sorted(g) for g in nx.topological_generations(self._graph)]

    def edges(self) -> List[tuple]:
        return sorted(self._graph.edges())


def _check_reference(ref: Reference, owner: str, nodes: Dict[str, ResourceNode], registry: ProviderRegistry) -> None:
    target = nodes.get(ref.node)
    if target is None:
        raise UnresolvedReferenceError(
            f"reference to undeclared resource '{ref.node}' (in ${{{ref}}})", node=owner
        )
    schema = registry.schema(target.resource_type)
    if not schema.has_attribute(ref.attribute):
        raise UnresolvedReferenceError(
            f"{target.resource_type} '{ref.node}' has no attribute '{ref.attribute}'", node=owner
        )


def build_graph(
    nodes: Iterable[ResourceNode],
    registry: ProviderRegistry,
    outputs: Optional[Iterable[OutputValue]] = None,
) -> ResourceGraph:
    """
    Validate nodes and return the dependency graph.

    Raises DeclarationError, UnresolvedReferenceError or CycleError; never
    calls a provider.
    """
    by_name: Dict[str, ResourceNode] = {}
    for n in nodes:
        if n.name in by_name:
            other = by_name[n.name]
            raise DeclarationError(
                f"duplicate logical name (declared in {other.source_file or '?'} "
                f"and {n.source_file or '?'})",
                node=n.name,
            )
        if n.resource_type not in registry:
            raise DeclarationError(
                f"unknown resource type '{n.resource_type}' (known: {', '.join(registry.types)})",
                node=n.name,
            )
        registry.schema(n.resource_type).validate(n.name, n.attributes)
        by_name[n.name] = n

    graph = nx.DiGraph()
    graph.add_nodes_from(by_name)
    for n in by_name.values():
        for ref in n.references:
            _check_reference(ref, n.name, by_name, registry)
            graph.add_edge(ref.node, n.name)
        for dep in n.depends_on:
            if dep not in by_name:
                raise UnresolvedReferenceError(f"depends_on names undeclared resource '{dep}'", node=n.name)
            graph.add_edge(dep, n.name)

    try:
        cycle = nx.find_cycle(graph)
    except nx.NetworkXNoCycle:
        cycle = None
    if cycle:
        # find_cycle walks dependency -> dependent; report it as "reads from"
        raise CycleError([edge[1] for edge in reversed(cycle)])

    out: Dict[str, OutputValue] = {}
    for o in outputs or ():
        if o.name in out:
            raise DeclarationError(f"duplicate output '{o.name}'")
        for ref in references(o.value):
            _check_reference(ref, f"output.{o.name}", by_name, registry)
        out[o.name] = o

    return ResourceGraph(by_name, graph, out)
