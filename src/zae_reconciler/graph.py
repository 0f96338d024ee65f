"""Resource graph construction.

Turns an ordered sequence of resource declarations into an immutable,
acyclic ``ResourceGraph``. Dependencies are resolved once, here, from
explicit ``depends_on`` lists and from references embedded in properties.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from .exceptions import CycleError, DanglingReferenceError, DuplicateResourceError
from .models import ResourceNode, ResourceSpec
from .refs import iter_refs

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceGraph:
    """
    Immutable DAG of resource nodes.

    Attributes:
        nodes: Nodes keyed by logical name, in declaration order
        order: Topological order (dependencies first), ties broken by
               declaration order
    """

    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    order: tuple[str, ...] = ()

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        return (self.nodes[name] for name in self.order)

    def __len__(self) -> int:
        return len(self.nodes)

    def __getitem__(self, name: str) -> ResourceNode:
        return self.nodes[name]

    def dependencies(self, name: str) -> tuple[str, ...]:
        return self.nodes[name].dependencies

    def dependents(self, name: str) -> list[str]:
        """Direct dependents of ``name``, in topological order."""
        return [n for n in self.order if name in self.nodes[n].dependencies]

    def transitive_dependents(self, name: str) -> set[str]:
        """Every node that depends on ``name`` directly or indirectly."""
        found: set[str] = set()
        pending = [name]
        while pending:
            current = pending.pop()
            for dependent in self.dependents(current):
                if dependent not in found:
                    found.add(dependent)
                    pending.append(dependent)
        return found


def build_graph(declarations: Iterable[ResourceSpec]) -> ResourceGraph:
    """
    Build a resource graph from declarations.

    Args:
        declarations: Resource specs in declaration order

    Returns:
        The built graph

    Raises:
        DuplicateResourceError: If a logical name is declared twice
        DanglingReferenceError: If a spec references an undeclared name
        CycleError: If dependencies form a cycle
    """
    specs: dict[str, ResourceSpec] = {}
    for spec in declarations:
        if spec.name in specs:
            raise DuplicateResourceError(spec.name)
        specs[spec.name] = spec

    nodes: dict[str, ResourceNode] = {}
    for spec in specs.values():
        deps: list[str] = []
        for name in spec.depends_on:
            if name not in specs:
                raise DanglingReferenceError(spec.name, name)
            if name not in deps:
                deps.append(name)
        for ref in iter_refs(spec.properties):
            if ref.target not in specs:
                raise DanglingReferenceError(spec.name, ref.target)
            if ref.target not in deps:
                deps.append(ref.target)

        nodes[spec.name] = ResourceNode(
            name=spec.name,
            kind=spec.kind,
            properties=spec.properties,
            dependencies=tuple(deps),
            explicit_dependencies=tuple(spec.depends_on),
        )

    order = _topological_order(nodes)
    logger.debug("Built graph with %d nodes: %s", len(nodes), ", ".join(order))
    return ResourceGraph(nodes=nodes, order=tuple(order))


def _topological_order(nodes: dict[str, ResourceNode]) -> list[str]:
    """Depth-first topological sort that reports the first cycle found."""
    position = {name: i for i, name in enumerate(nodes)}

    def deps_of(name: str) -> Iterator[str]:
        return iter(sorted(nodes[name].dependencies, key=position.__getitem__))

    order: list[str] = []
    done: set[str] = set()

    for root in nodes:
        if root in done:
            continue
        # Explicit stack so long dependency chains do not hit the recursion limit
        stack = [(root, deps_of(root))]
        visiting = [root]
        on_path = {root}
        while stack:
            name, pending = stack[-1]
            for dep in pending:
                if dep in done:
                    continue
                if dep in on_path:
                    start = visiting.index(dep)
                    raise CycleError(visiting[start:] + [dep])
                stack.append((dep, deps_of(dep)))
                visiting.append(dep)
                on_path.add(dep)
                break
            else:
                stack.pop()
                visiting.pop()
                on_path.discard(name)
                done.add(name)
                order.append(name)
    return order
