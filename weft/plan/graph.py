"""Dependency graph algorithms over flat (source, target) id pairs.

Tasks never hold references to each other. A plan's dependencies are a
set of ``(source, target)`` edges meaning "target depends on source",
and every algorithm here works on that flat representation.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from heapq import heapify, heappop, heappush

from weft.types import Edge

_WHITE, _GREY, _BLACK = 0, 1, 2


class CycleError(ValueError):
    """Raised when a topological order is requested for a cyclic graph."""

    def __init__(self, cycles: Iterable[tuple[str, ...]]) -> None:
        self.cycles = tuple(cycles)
        preview = ", ".join(" -> ".join(c) for c in self.cycles[:3])
        super().__init__(f"Dependency graph contains cycle(s): {preview or '?'}")


class DependencyGraph:
    """Adjacency-list view of a plan's dependency edges.

    Built on demand from a snapshot and thrown away — it never outlives
    the plan it was built from.
    """

    __slots__ = ("_nodes", "_children", "_parents")

    def __init__(self, nodes: Iterable[str], edges: Iterable[Edge]) -> None:
        self._nodes: set[str] = set(nodes)
        self._children: dict[str, set[str]] = {n: set() for n in self._nodes}
        self._parents: dict[str, set[str]] = {n: set() for n in self._nodes}
        for source, target in edges:
            # Dangling edges are kept so cycle checks still see them
            self._children.setdefault(source, set()).add(target)
            self._parents.setdefault(target, set()).add(source)
            self._children.setdefault(target, set())
            self._parents.setdefault(source, set())

    @property
    def nodes(self) -> tuple[str, ...]:
        return tuple(sorted(self._children))

    def children(self, node: str) -> tuple[str, ...]:
        return tuple(sorted(self._children.get(node, ())))

    def parents(self, node: str) -> tuple[str, ...]:
        return tuple(sorted(self._parents.get(node, ())))

    def topological_sort(self) -> tuple[str, ...]:
        """Kahn's algorithm with a heap for deterministic order."""
        indegree = {n: len(self._parents[n]) for n in self._children}
        ready = [n for n, d in indegree.items() if d == 0]
        heapify(ready)

        order: list[str] = []
        while ready:
            node = heappop(ready)
            order.append(node)
            for child in sorted(self._children[node]):
                indegree[child] -= 1
                if indegree[child] == 0:
                    heappush(ready, child)

        if len(order) != len(self._children):
            raise CycleError(self.detect_cycles())
        return tuple(order)

    def is_acyclic(self) -> bool:
        return not self.back_edges()

    def back_edges(self) -> list[Edge]:
        """Edges closing a cycle, found by three-colour DFS."""
        return [(path[-2], path[-1]) for path in self._walk_cycles()]

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """Closed cycle paths, e.g. ``("B", "D", "B")``, deduplicated."""
        seen: dict[tuple[str, ...], None] = {}
        for path in self._walk_cycles():
            seen[_canonical(path)] = None
        return tuple(sorted(seen))

    def _walk_cycles(self) -> Iterator[tuple[str, ...]]:
        colour: dict[str, int] = {}
        stack: list[str] = []

        for start in sorted(self._children):
            if colour.get(start, _WHITE) != _WHITE:
                continue
            colour[start] = _GREY
            stack.append(start)
            frames: list[tuple[str, Iterator[str]]] = [
                (start, iter(sorted(self._children[start])))
            ]
            while frames:
                node, child_iter = frames[-1]
                child = next(child_iter, None)
                if child is None:
                    frames.pop()
                    stack.pop()
                    colour[node] = _BLACK
                    continue
                state = colour.get(child, _WHITE)
                if state == _WHITE:
                    colour[child] = _GREY
                    stack.append(child)
                    frames.append((child, iter(sorted(self._children[child]))))
                elif state == _GREY:
                    yield tuple(stack[stack.index(child):] + [child])

    def descendants(self, node: str) -> set[str]:
        return self._closure(node, self._children)

    def ancestors(self, node: str) -> set[str]:
        return self._closure(node, self._parents)

    def reaches(self, source: str, target: str, skip: Edge | None = None) -> bool:
        """True when ``target`` is reachable from ``source``.

        ``skip`` excludes one edge from the walk, which is how redundant
        edges are found.
        """
        frontier = [source]
        visited: set[str] = set()
        while frontier:
            node = frontier.pop()
            for child in self._children.get(node, ()):
                if skip is not None and (node, child) == skip:
                    continue
                if child == target:
                    return True
                if child not in visited:
                    visited.add(child)
                    frontier.append(child)
        return False

    def redundant_edges(self) -> list[Edge]:
        """Edges whose endpoints stay connected through another path."""
        redundant = []
        for source in sorted(self._children):
            for target in sorted(self._children[source]):
                if self.reaches(source, target, skip=(source, target)):
                    redundant.append((source, target))
        return redundant

    @staticmethod
    def _closure(node: str, adjacency: dict[str, set[str]]) -> set[str]:
        found: set[str] = set()
        frontier = list(adjacency.get(node, ()))
        while frontier:
            current = frontier.pop()
            if current in found:
                continue
            found.add(current)
            frontier.extend(adjacency.get(current, ()))
        found.discard(node)
        return found


def _canonical(cycle: tuple[str, ...]) -> tuple[str, ...]:
    """Rotate a closed path so the smallest id comes first."""
    body = list(cycle[:-1])
    pivot = body.index(min(body))
    rotated = body[pivot:] + body[:pivot]
    return tuple(rotated + [rotated[0]])
