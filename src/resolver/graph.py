"""Resolved dependency graph."""

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from constants import PackageKind


@dataclass(frozen=True)
class ResolvedNode:
    """One package in a resolution: exactly one per name."""
    name: str
    version: str
    kind: PackageKind
    digest: str
    repository: str
    dependencies: Tuple[str, ...] = ()
    dependents: Tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"{self.repository}/{self.name}@{self.version}"


class DependencyGraph:
    """Immutable mapping from package name to ResolvedNode.

    ``roots`` are the names the root manifest requires directly. Iteration is
    always in name order.
    """

    def __init__(self, nodes: Iterable[ResolvedNode], roots: Iterable[str] = ()):
        self._nodes: Dict[str, ResolvedNode] = {}
        for node in nodes:
            if node.name in self._nodes:
                raise ValueError(f"Duplicate node for '{node.name}'")
            self._nodes[node.name] = node
        self._roots = tuple(sorted(set(roots)))
        missing = [r for r in self._roots if r not in self._nodes]
        if missing:
            raise ValueError(f"Root requirement(s) without node: {', '.join(missing)}")

    @property
    def roots(self) -> Tuple[str, ...]:
        return self._roots

    def __getitem__(self, name: str) -> ResolvedNode:
        return self._nodes[name]

    def get(self, name: str) -> Optional[ResolvedNode]:
        return self._nodes.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __iter__(self) -> Iterator[ResolvedNode]:
        for name in sorted(self._nodes):
            yield self._nodes[name]

    def __len__(self) -> int:
        return len(self._nodes)

    def __eq__(self, other) -> bool:
        if not isinstance(other, DependencyGraph):
            return NotImplemented
        return self._nodes == other._nodes and self._roots == other._roots

    def names(self) -> List[str]:
        return sorted(self._nodes)

    def edges(self) -> List[Tuple[str, str]]:
        """(dependent, dependency) pairs, sorted."""
        return sorted(
            (node.name, dep) for node in self._nodes.values() for dep in node.dependencies
        )

    def reachable(self) -> List[str]:
        """Names reachable from the roots, sorted."""
        seen = set()
        stack = list(self._roots)
        while stack:
            name = stack.pop()
            if name in seen or name not in self._nodes:
                continue
            seen.add(name)
            stack.extend(self._nodes[name].dependencies)
        return sorted(seen)

    def find_cycle(self) -> Optional[List[str]]:
        """Return a cycle as a name path (first name repeated at the end), or None.

        Iterative depth-first search with an explicit stack; visits names in
        sorted order so the reported cycle is deterministic.
        """
        state: Dict[str, int] = {}  # 1 = on the current path, 2 = finished
        for start in sorted(self._nodes):
            if state.get(start):
                continue
            path: List[str] = []
            stack: List[Tuple[str, Iterator[str]]] = []
            state[start] = 1
            path.append(start)
            stack.append((start, iter(sorted(self._nodes[start].dependencies))))
            while stack:
                name, children = stack[-1]
                child = next(children, None)
                if child is None:
                    stack.pop()
                    path.pop()
                    state[name] = 2
                    continue
                if child not in self._nodes:
                    continue
                if state.get(child) == 1:
                    return path[path.index(child):] + [child]
                if not state.get(child):
                    state[child] = 1
                    path.append(child)
                    stack.append((child, iter(sorted(self._nodes[child].dependencies))))
        return None

