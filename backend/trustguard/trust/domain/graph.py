"""In-memory interaction graph snapshot built once per batch run.

Nodes live in an arena indexed by DID; each node keeps a map of neighbour
index to the summed undirected weight of every edge row between the pair.
"""

from __future__ import annotations

from typing import Iterable, Iterator, Sequence


class InteractionGraph:
    def __init__(self) -> None:
        self._index: dict[str, int] = {}
        self.dids: list[str] = []
        self.adjacency: list[dict[int, float]] = []

    @classmethod
    def from_edges(
        cls,
        edges: Iterable[tuple[str, str, float]],
        nodes: Iterable[str] = (),
    ) -> "InteractionGraph":
        graph = cls()
        for did in nodes:
            graph.add_node(did)
        for source, target, weight in edges:
            graph.add_edge(source, target, weight)
        return graph

    def add_node(self, did: str) -> int:
        idx = self._index.get(did)
        if idx is None:
            idx = len(self.dids)
            self._index[did] = idx
            self.dids.append(did)
            self.adjacency.append({})
        return idx

    def add_edge(self, source: str, target: str, weight: float) -> None:
        if source == target or weight <= 0:
            return
        a = self.add_node(source)
        b = self.add_node(target)
        self.adjacency[a][b] = self.adjacency[a].get(b, 0.0) + weight
        self.adjacency[b][a] = self.adjacency[b].get(a, 0.0) + weight

    def index_of(self, did: str) -> int | None:
        return self._index.get(did)

    def __contains__(self, did: object) -> bool:
        return did in self._index

    def __len__(self) -> int:
        return len(self.dids)

    @property
    def node_count(self) -> int:
        return len(self.dids)

    @property
    def edge_count(self) -> int:
        """Number of distinct undirected pairs."""
        return sum(len(neighbours) for neighbours in self.adjacency) // 2

    def neighbours(self, idx: int) -> dict[int, float]:
        return self.adjacency[idx]

    def degree(self, idx: int) -> int:
        return len(self.adjacency[idx])

    def pairs(self) -> Iterator[tuple[int, int, float]]:
        for a, neighbours in enumerate(self.adjacency):
            for b, weight in neighbours.items():
                if a < b:
                    yield a, b, weight


class UnionFind:
    """Disjoint sets over dense integer ids with path halving and union by size."""

    def __init__(self, size: int) -> None:
        self._parent = list(range(size))
        self._size = [1] * size

    def find(self, x: int) -> int:
        parent = self._parent
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if self._size[ra] < self._size[rb]:
            ra, rb = rb, ra
        self._parent[rb] = ra
        self._size[ra] += self._size[rb]

    def groups(self, members: Iterable[int]) -> list[list[int]]:
        buckets: dict[int, list[int]] = {}
        for member in members:
            buckets.setdefault(self.find(member), []).append(member)
        return list(buckets.values())


def count_component_edges(graph: InteractionGraph, members: Sequence[int] | set[int]) -> tuple[int, int]:
    """Return ``(internal, external)`` undirected pair counts for a node set."""

    member_set = members if isinstance(members, set) else set(members)
    internal_twice = 0
    external = 0
    for idx in member_set:
        for neighbour in graph.neighbours(idx):
            if neighbour in member_set:
                internal_twice += 1
            else:
                external += 1
    return internal_twice // 2, external
