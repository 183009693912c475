"""A directed graph whose node and edge indices stay valid across removals."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

__all__ = ["Direction", "Edge", "StableGraph", "add_graph"]

N = TypeVar("N")
E = TypeVar("E")


class Direction(Enum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"


@dataclass(frozen=True)
class Edge(Generic[E]):
    """A snapshot of one edge: its index, endpoints and weight."""

    id: int
    source: int
    target: int
    weight: E


@dataclass(slots=True)
class _NodeSlot(Generic[N]):
    weight: N
    outgoing: list[int] = field(default_factory=list)
    incoming: list[int] = field(default_factory=list)


@dataclass(slots=True)
class _EdgeSlot(Generic[E]):
    source: int
    target: int
    weight: E


class StableGraph(Generic[N, E]):
    """Directed multigraph with stable indices.

    Freed node and edge indices are reused, most recently freed first.
    Edges around a node are reported newest first.
    """

    def __init__(self) -> None:
        self._nodes: list[_NodeSlot[N] | None] = []
        self._edges: list[_EdgeSlot[E] | None] = []
        self._free_nodes: list[int] = []
        self._free_edges: list[int] = []
        self._node_count = 0

    def _node(self, node: int) -> _NodeSlot[N]:
        if 0 <= node < len(self._nodes):
            slot = self._nodes[node]
            if slot is not None:
                return slot
        raise KeyError(f"no node {node} in graph")

    def _edge(self, edge: int) -> _EdgeSlot[E]:
        if 0 <= edge < len(self._edges):
            slot = self._edges[edge]
            if slot is not None:
                return slot
        raise KeyError(f"no edge {edge} in graph")

    def __getitem__(self, node: int) -> N:
        return self._node(node).weight

    def __setitem__(self, node: int, weight: N) -> None:
        self._node(node).weight = weight

    def __contains__(self, node: object) -> bool:
        return isinstance(node, int) and self.contains_node(node)

    def add_node(self, weight: N) -> int:
        slot = _NodeSlot(weight)
        if self._free_nodes:
            index = self._free_nodes.pop()
            self._nodes[index] = slot
        else:
            index = len(self._nodes)
            self._nodes.append(slot)
        self._node_count += 1
        return index

    def remove_node(self, node: int) -> N:
        """Remove a node with all its edges and return its weight."""
        slot = self._node(node)
        while slot.outgoing:
            self.remove_edge(slot.outgoing[-1])
        while slot.incoming:
            self.remove_edge(slot.incoming[-1])
        self._nodes[node] = None
        self._free_nodes.append(node)
        self._node_count -= 1
        return slot.weight

    def add_edge(self, source: int, target: int, weight: E) -> int:
        source_slot = self._node(source)
        target_slot = self._node(target)
        slot = _EdgeSlot(source, target, weight)
        if self._free_edges:
            index = self._free_edges.pop()
            self._edges[index] = slot
        else:
            index = len(self._edges)
            self._edges.append(slot)
        source_slot.outgoing.append(index)
        target_slot.incoming.append(index)
        return index

    def remove_edge(self, edge: int) -> E:
        slot = self._edge(edge)
        self._node(slot.source).outgoing.remove(edge)
        self._node(slot.target).incoming.remove(edge)
        self._edges[edge] = None
        self._free_edges.append(edge)
        return slot.weight

    def set_edge_weight(self, edge: int, weight: E) -> None:
        self._edge(edge).weight = weight

    def contains_node(self, node: int) -> bool:
        return 0 <= node < len(self._nodes) and self._nodes[node] is not None

    def node_indices(self) -> list[int]:
        return [index for index, slot in enumerate(self._nodes) if slot is not None]

    def node_items(self) -> list[tuple[int, N]]:
        return [(index, slot.weight) for index, slot in enumerate(self._nodes) if slot is not None]

    def node_weights(self) -> list[N]:
        return [slot.weight for slot in self._nodes if slot is not None]

    def node_count(self) -> int:
        return self._node_count

    def _snapshot(self, edge: int) -> Edge[E]:
        slot = self._edge(edge)
        return Edge(edge, slot.source, slot.target, slot.weight)

    def edges(self) -> list[Edge[E]]:
        """All edges in index order."""
        return [
            Edge(index, slot.source, slot.target, slot.weight)
            for index, slot in enumerate(self._edges)
            if slot is not None
        ]

    def edges_directed(self, node: int, direction: Direction) -> list[Edge[E]]:
        """Edges leaving or entering a node, newest first."""
        slot = self._node(node)
        ids = slot.outgoing if direction is Direction.OUTGOING else slot.incoming
        return [self._snapshot(edge) for edge in reversed(ids)]

    def neighbors_directed(self, node: int, direction: Direction) -> list[int]:
        if direction is Direction.OUTGOING:
            return [edge.target for edge in self.edges_directed(node, direction)]
        return [edge.source for edge in self.edges_directed(node, direction)]

    def is_cyclic(self) -> bool:
        """True if the graph has a directed cycle, self loops included."""
        indegree = {index: len(slot.incoming) for index, slot in enumerate(self._nodes) if slot is not None}
        ready = [node for node, degree in indegree.items() if degree == 0]
        processed = 0
        while ready:
            node = ready.pop()
            processed += 1
            for edge in self._node(node).outgoing:
                target = self._edge(edge).target
                indegree[target] -= 1
                if indegree[target] == 0:
                    ready.append(target)
        return processed < self._node_count

    def copy(self) -> StableGraph[N, E]:
        """Copy the structure; weights are shared."""
        other: StableGraph[N, E] = StableGraph()
        other._nodes = [
            None if slot is None else _NodeSlot(slot.weight, list(slot.outgoing), list(slot.incoming))
            for slot in self._nodes
        ]
        other._edges = [
            None if slot is None else _EdgeSlot(slot.source, slot.target, slot.weight)
            for slot in self._edges
        ]
        other._free_nodes = list(self._free_nodes)
        other._free_edges = list(self._free_edges)
        other._node_count = self._node_count
        return other


def add_graph(source: StableGraph[N, E], extend: StableGraph[N, E]) -> dict[int, int]:
    """Insert ``extend`` into ``source``; map old indices of ``extend`` to new ones."""
    mapping = {index: source.add_node(weight) for index, weight in extend.node_items()}
    for edge in extend.edges():
        source.add_edge(mapping[edge.source], mapping[edge.target], edge.weight)
    return mapping