"""Dependency graph between cells, topological scheduling and affected sets."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import logging
from typing import Iterable

import networkx as nx

from ..constants import EVENT_CYCLE_DETECTED, EVENT_SHADOW
from .core import CellEvent, CycleError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionPlan:
    """Cells to execute for one trigger.

    ``order`` is the full topological order of executable cells; ``run`` the
    subset that executes; ``skipped`` the manual cells the closure reached but
    did not enter.
    """

    order: tuple
    run: frozenset
    seeds: frozenset = frozenset()
    skipped: frozenset = frozenset()

    def __iter__(self):
        return (cid for cid in self.order if cid in self.run)

    def __len__(self) -> int:
        return len(self.run)


@dataclass
class DependencyGraph:
    """Snapshot of the const-binding graph for an ordered list of cells."""

    cells: dict
    graph: nx.DiGraph
    order: list
    producers: dict = field(default_factory=dict)
    exports: dict = field(default_factory=dict)
    shadowed: list = field(default_factory=list)

    def successors(self, cell_id: int) -> list[int]:
        return sorted(self.graph.successors(cell_id), key=self.order.index)

    def predecessors(self, cell_id: int) -> list[int]:
        return sorted(self.graph.predecessors(cell_id), key=self.order.index)

    def ancestors(self, cell_id: int) -> set[int]:
        return nx.ancestors(self.graph, cell_id)

    def in_degree(self) -> dict[int, int]:
        return dict(self.graph.in_degree())

    def adjacency(self) -> dict[int, list[int]]:
        """Producer → consumers multimap (every executable cell has an entry)."""

        return {cid: self.successors(cid) for cid in self.order}

    def affected(self, seeds: Iterable[int]) -> tuple[set[int], set[int]]:
        """Forward closure of *seeds*; manual cells stop the walk unless seeded.

        Returns ``(closure, blocked)`` where *blocked* holds the manual cells
        the walk reached without entering.
        """

        seeds = {s for s in seeds if s in self.cells}
        closure = set(seeds)
        blocked: set[int] = set()
        queue = deque(sorted(seeds, key=self.order.index))
        while queue:
            node = queue.popleft()
            for succ in self.successors(node):
                if succ in closure:
                    continue
                cell = self.cells[succ]
                if cell.manual or cell.norun:
                    blocked.add(succ)
                    continue
                closure.add(succ)
                queue.append(succ)
        return closure, blocked - closure

    def plan(self, seeds: Iterable[int]) -> ExecutionPlan:
        seeds = frozenset(s for s in seeds if s in self.cells)
        closure, blocked = self.affected(seeds)
        return ExecutionPlan(tuple(self.order), frozenset(closure), seeds, frozenset(blocked))

    def label_index(self) -> dict[str, int]:
        """Label → cell id, the first labelled cell in topological order wins."""

        labels: dict[str, int] = {}
        for cid in self.order:
            label = self.cells[cid].label
            if label and label not in labels:
                labels[label] = cid
        return labels


def build_dag(cells, observers=None) -> DependencyGraph:
    """Build the dependency graph for *cells* (in notebook order).

    The latest definer of a name owns it; earlier definers keep the value
    private.  Raises :class:`CycleError` when consumers form a cycle.
    """

    executable = [cell for cell in cells if cell.executable]
    position = {cell.id: index for index, cell in enumerate(executable)}
    by_id = {cell.id: cell for cell in executable}

    producers: dict[str, int] = {}
    for cell in executable:
        for name in sorted(cell.defines):
            previous = producers.get(name)
            if previous is not None and previous != cell.id:
                logger.warning("cell %s shadows %r defined by cell %s", cell.id, name, previous)
            producers[name] = cell.id

    shadowed = []
    exports: dict[int, frozenset] = {}
    for cell in executable:
        owned = {name for name in cell.defines if producers.get(name) == cell.id}
        for name in sorted(cell.defines - owned):
            shadowed.append((cell.id, name, producers[name]))
        exports[cell.id] = frozenset(owned)

    graph = nx.DiGraph()
    graph.add_nodes_from(by_id)
    for cell in executable:
        needed = set(cell.uses) | {n for n in cell.builtin_refs if n in producers}
        for name in sorted(needed):
            src = producers.get(name)
            if src is None or src == cell.id:
                continue
            if graph.has_edge(src, cell.id):
                graph.edges[src, cell.id]["names"].add(name)
            else:
                graph.add_edge(src, cell.id, names={name})

    if observers is not None:
        for cid, name, winner in shadowed:
            observers.emit(
                CellEvent(cid, EVENT_SHADOW, message=f"{name!r} is shadowed by cell {winner}")
            )

    try:
        order = list(nx.lexicographical_topological_sort(graph, key=position.__getitem__))
    except nx.NetworkXUnfeasible:
        cycle = nx.find_cycle(graph)
        involved = list(dict.fromkeys(node for edge in cycle for node in edge[:2]))
        logger.warning("dependency cycle between cells %s", involved)
        if observers is not None:
            observers.emit(
                CellEvent(None, EVENT_CYCLE_DETECTED, message=f"cycle between cells {involved}")
            )
        raise CycleError(involved) from None

    logger.debug("topological order %s", order)
    return DependencyGraph(by_id, graph, order, producers, exports, shadowed)


__all__ = [
    "ExecutionPlan",
    "DependencyGraph",
    "build_dag",
]
