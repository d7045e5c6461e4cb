"""Consistency graph over loop closures and its maximum clique.

Vertices are numbered in insertion order and stored as bitsets (Python ints):
``adjacency[v]`` has bit ``u`` set iff ``u`` and ``v`` are pairwise
consistent. Among all maximum cliques the lexicographically smallest sorted
vertex tuple is returned, i.e. ties go to the earliest inserted measurements.
"""
import logging
from typing import Iterable, List, Optional, Sequence

logger = logging.getLogger("robust_pgo.clique")

CLIQUE_METHODS = ("incremental", "exact")


def bitcount(mask: int) -> int:
    return bin(mask).count("1")


def lsb_index(mask: int) -> int:
    return (mask & -mask).bit_length() - 1 if mask else -1


def maximum_clique(adjacency: Sequence[int], candidates: Optional[int] = None,
                   floor: int = 0) -> List[int]:
    """Exact maximum clique by branch and bound.

    Branches on candidates in increasing vertex order and only replaces the
    incumbent with a strictly larger clique, so the first maximum found is the
    lexicographically smallest one. ``candidates`` restricts the search to a
    vertex subset; cliques of size ``<= floor`` are not reported (an empty
    list is returned when nothing beats the floor).
    """
    if candidates is None:
        candidates = (1 << len(adjacency)) - 1
    best: List[int] = []
    best_size = [floor]
    current: List[int] = []

    def expand(P: int) -> None:
        if P == 0:
            if len(current) > best_size[0]:
                best[:] = current
                best_size[0] = len(current)
            return
        while P:
            if len(current) + bitcount(P) <= best_size[0]:
                return
            v = lsb_index(P)
            P &= ~(1 << v)
            current.append(v)
            expand(P & adjacency[v])
            current.pop()

    expand(candidates)
    return list(best)


class ConsistencyGraph:
    """Undirected graph of pairwise-consistent loop closures.

    Edges are only ever added together with a new vertex; existing edges are
    never revisited. That makes the incremental update exact: the new maximum
    clique either is the previous one or contains the new vertex.
    """

    def __init__(self, method: str = "incremental"):
        if method not in CLIQUE_METHODS:
            raise ValueError(f"Unsupported clique method: {method}")
        self.method = method
        self.adjacency: List[int] = []
        self.records: List[int] = []
        self._clique: List[int] = []

    def __len__(self) -> int:
        return len(self.adjacency)

    def add_vertex(self, record_index: int, neighbors: Iterable[int]) -> int:
        """Insert a vertex adjacent to the given existing vertices."""
        v = len(self.adjacency)
        mask = 0
        for u in neighbors:
            if not 0 <= u < v:
                raise IndexError(f"Neighbor {u} is not an existing vertex")
            mask |= 1 << u
            self.adjacency[u] |= 1 << v
        self.adjacency.append(mask)
        self.records.append(record_index)
        self._update(v)
        return v

    def _update(self, v: int) -> None:
        if self.method == "exact":
            self._clique = maximum_clique(self.adjacency)
        else:
            old = self._clique
            around = maximum_clique(self.adjacency, self.adjacency[v], floor=max(len(old) - 2, 0))
            with_v = around + [v]
            if len(with_v) > len(old) or (len(with_v) == len(old) and with_v < old):
                self._clique = with_v
        logger.debug("Max clique %d/%d vertices (%s)", len(self._clique), len(self.adjacency), self.method)

    def num_edges(self) -> int:
        return sum(bitcount(m) for m in self.adjacency) // 2

    def clique_records(self) -> List[int]:
        """Record indices of the current maximum clique, in insertion order."""
        return [self.records[v] for v in self._clique]
