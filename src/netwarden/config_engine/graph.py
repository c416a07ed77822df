"""Interface dependency graph.

Nodes live in a flat list and edges are indices into it, so the graph is
cheap to build once per validation pass and has no reference cycles of its
own even when the configuration does. An edge ``a -> b`` means "a needs b":
a bridge needs its ports, a bond its slaves, a VLAN its parent.
"""
from dataclasses import dataclass, field
from typing import Iterable, Optional

from ..config.schema import Interface, NetworkConfiguration


@dataclass
class Node:
    index: int
    name: str
    interface: Optional[Interface] = None  # None for live-only interfaces

    @property
    def live_only(self) -> bool:
        return self.interface is None


@dataclass
class MissingReference:
    """A dependency that names nothing in the configuration or on the host."""
    source: str
    target: str
    field: str


@dataclass
class DependencyGraph:
    nodes: list[Node] = field(default_factory=list)
    edges: list[list[int]] = field(default_factory=list)
    missing: list[MissingReference] = field(default_factory=list)
    _index: dict[str, int] = field(default_factory=dict, repr=False)

    @classmethod
    def build(
        cls,
        config: NetworkConfiguration,
        live_interfaces: Iterable[str] = (),
    ) -> "DependencyGraph":
        """Build the graph for ``config``.

        Duplicate names resolve to their first occurrence. References that
        match a live interface not present in ``config`` get a live-only node.
        """
        graph = cls()
        live = set(live_interfaces)

        for iface in config.interfaces:
            if isinstance(iface, Interface) and isinstance(iface.name, str) and iface.name not in graph._index:
                graph._add(iface.name, iface)

        for iface in list(n.interface for n in graph.nodes):
            source = graph._index[iface.name]
            deps = iface.dependencies() if hasattr(iface.kind, "dependencies") else []
            for target, field_name in deps:
                if target in graph._index:
                    graph.edges[source].append(graph._index[target])
                elif target in live:
                    graph.edges[source].append(graph._add(target, None))
                else:
                    graph.missing.append(MissingReference(iface.name, target, field_name))

        return graph

    def _add(self, name: str, interface: Optional[Interface]) -> int:
        index = len(self.nodes)
        self.nodes.append(Node(index, name, interface))
        self.edges.append([])
        self._index[name] = index
        return index

    def node(self, name: str) -> Optional[Node]:
        index = self._index.get(name)
        return self.nodes[index] if index is not None else None

    def dependencies_of(self, name: str) -> list[str]:
        """Direct dependencies of ``name``."""
        index = self._index.get(name)
        if index is None:
            return []
        return [self.nodes[i].name for i in self.edges[index]]

    def reachable(self, name: str) -> set[str]:
        """Everything ``name`` depends on, directly or transitively."""
        start = self._index.get(name)
        if start is None:
            return set()
        seen: set[int] = set()
        stack = list(self.edges[start])
        while stack:
            index = stack.pop()
            if index in seen:
                continue
            seen.add(index)
            stack.extend(self.edges[index])
        return {self.nodes[i].name for i in seen}

    def related(self, a: str, b: str) -> bool:
        """True when one interface sits on top of the other."""
        return b in self.reachable(a) or a in self.reachable(b)

    def find_cycles(self) -> list[list[str]]:
        """Every elementary cycle reachable by DFS, as a closed name path.

        A bridge ``br0`` with port ``bond0`` whose slave is ``br0`` yields
        ``["br0", "bond0", "br0"]``. Each cycle is reported once, starting
        from whichever of its members appears first in the configuration.
        """
        white, grey, black = 0, 1, 2
        color = [white] * len(self.nodes)
        cycles: list[list[str]] = []
        seen: set[tuple[int, ...]] = set()

        for root in range(len(self.nodes)):
            if color[root] != white:
                continue
            path: list[int] = [root]
            iters = [iter(self.edges[root])]
            color[root] = grey

            while iters:
                nxt = next(iters[-1], None)
                if nxt is None:
                    color[path.pop()] = black
                    iters.pop()
                    continue
                if color[nxt] == white:
                    color[nxt] = grey
                    path.append(nxt)
                    iters.append(iter(self.edges[nxt]))
                elif color[nxt] == grey:
                    cycle = path[path.index(nxt):]
                    # rotate so the earliest node leads, for de-duplication
                    pivot = cycle.index(min(cycle))
                    key = tuple(cycle[pivot:] + cycle[:pivot])
                    if key not in seen:
                        seen.add(key)
                        cycles.append([self.nodes[i].name for i in key] + [self.nodes[key[0]].name])

        return cycles
