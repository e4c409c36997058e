"""Notebook session: cells, triggers and the single active run."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable

from ..atra import atra
from ..constants import (
    EVENT_ANALYSIS_WARNING,
    KIND_CODE,
    PREEMPTING_TRIGGERS,
    STATE_CANCELED,
    STATE_RUNNING,
    STATE_SCHEDULED,
    TRIGGER_EDIT,
    TRIGGER_RUN,
    TRIGGER_RUN_ALL,
    TRIGGER_WIDGET,
)
from .analysis import annotate_cell, export_graphviz
from .core import Cell, CellEvent, Observers, Scope
from .dag import DependencyGraph, build_dag
from .executor import Executor
from .modules import ModuleCache
from .stdlib import make_std
from .widgets import WidgetFactory

logger = logging.getLogger(__name__)


class Notebook:
    """An ordered list of cells plus the reactive machinery that runs them.

    Triggers are coroutines.  Only one run is active at a time: edits,
    explicit runs and run-all preempt it, widget changes queue behind it and
    coalesce into one follow-up run.
    """

    def __init__(self, cells: Iterable | None = None, observer: Callable | Iterable | None = None,
                 imports=None, scope: dict | None = None, client=None):
        if observer is None or callable(observer):
            observers = [observer]
        else:
            observers = list(observer)
        self.observers = Observers(observers)
        self.cells: list[Cell] = []
        self.modules = ModuleCache(client)
        self.std = make_std()
        if imports is not None:
            self.std.atra = atra(imports=imports)
        self.base_scope = Scope(scope)
        self._scope = self.base_scope
        self.executor = Executor(self.observers, self._environment)
        self.dag: DependencyGraph | None = None
        self._next_id = 1
        self._task: asyncio.Task | None = None
        self._plan = None
        self._queued: set[int] = set()
        for entry in cells or []:
            if isinstance(entry, str):
                self.add_cell(entry)
            elif isinstance(entry, dict):
                self.add_cell(entry.get("source", ""), entry.get("kind", KIND_CODE))
            else:
                kind, source = entry
                self.add_cell(source, kind)

    # ── cells ──

    @property
    def scope(self) -> Scope:
        return self._scope

    def cell(self, cell_id: int) -> Cell:
        for cell in self.cells:
            if cell.id == cell_id:
                return cell
        raise KeyError(f"No cell with id {cell_id}")

    def _analyse(self, cell: Cell) -> None:
        result = annotate_cell(cell)
        cell.program = None
        if result.error:
            self.observers.emit(
                CellEvent(cell.id, EVENT_ANALYSIS_WARNING, cell.state, message=result.error)
            )

    def add_cell(self, source: str = "", kind: str = KIND_CODE, index: int | None = None) -> Cell:
        cell = Cell(self._next_id, source, kind)
        self._next_id += 1
        self._analyse(cell)
        if index is None:
            self.cells.append(cell)
        else:
            self.cells.insert(index, cell)
        return cell

    def update_cell(self, cell_id: int, source: str) -> Cell:
        cell = self.cell(cell_id)
        cell.source = source
        self._analyse(cell)
        return cell

    def remove_cell(self, cell_id: int) -> Cell:
        cell = self.cell(cell_id)
        self.cells.remove(cell)
        if cell.invalidation is not None:
            cell.invalidation.fire()
        self._queued.discard(cell_id)
        return cell

    def graph(self) -> DependencyGraph:
        return build_dag(self.cells)

    def export_graph(self, output_path) -> None:
        export_graphviz(self.cells, self.graph(), output_path)

    # ── triggers ──

    async def edit(self, cell_id: int, source: str) -> Scope:
        """Replace a cell's source and re-run it with its consumers."""

        self.update_cell(cell_id, source)
        return await self._trigger(TRIGGER_EDIT, {cell_id})

    async def run(self, *cell_ids: int) -> Scope:
        """Explicitly run cells (manual cells included) and their consumers."""

        for cell_id in cell_ids:
            self.cell(cell_id)
        return await self._trigger(TRIGGER_RUN, set(cell_ids))

    async def run_all(self) -> Scope:
        seeds = {cell.id for cell in self.cells if cell.executable and not cell.norun}
        return await self._trigger(TRIGGER_RUN_ALL, seeds)

    async def set_widget(self, cell_id: int, label: str, value: Any) -> Scope | None:
        """Change a widget value.

        Reactive widgets re-run their cell; callback widgets only invoke the
        callback and return None.
        """

        cell = self.cell(cell_id)
        widget = cell.widgets.get(label)
        if widget is None:
            raise KeyError(f"Cell {cell_id} has no widget {label!r}")
        widget.value = widget.coerce(value)
        if not widget.reactive:
            await widget.notify()
            return None
        return await self._trigger(TRIGGER_WIDGET, {cell_id})

    async def idle(self) -> Scope:
        """Wait until no run is active or queued."""

        while self._task is not None and not self._task.done():
            await asyncio.wait([self._task])
        return self._scope

    async def close(self) -> None:
        """Cancel the active run and release every cell's resources."""

        self._queued.clear()
        while self._task is not None and not self._task.done():
            self._interrupt()
            await asyncio.wait([self._task])
        for cell in self.cells:
            if cell.invalidation is not None:
                cell.invalidation.fire()

    # ── scheduling ──

    def _environment(self, cell: Cell, token) -> dict[str, Any]:
        values = {
            "std": self.std,
            "load": self.modules.load,
            "install": self.modules.install,
            "install_binary": self.modules.install_binary,
        }
        values.update(WidgetFactory(cell).functions())
        return values

    def _interrupt(self) -> set[int]:
        """Fire live tokens, cancel the active task; return its unfinished cells."""

        unfinished: set[int] = set(self._queued)
        if self._plan is not None:
            for cid in self._plan.run:
                cell = self.dag.cells.get(cid) if self.dag else None
                if cell is not None and cell.state in (STATE_SCHEDULED, STATE_RUNNING, STATE_CANCELED):
                    unfinished.add(cid)
        self._queued.clear()
        self.executor.cancel_all()
        self._task.cancel()
        return unfinished

    async def _trigger(self, source: str, seeds: set[int]) -> Scope:
        seeds = set(seeds)
        logger.debug("trigger %s for cells %s", source, sorted(seeds))
        while self._task is not None and not self._task.done():
            if source not in PREEMPTING_TRIGGERS:
                self._queued |= seeds
                logger.debug("queued widget run for cells %s", sorted(seeds))
                return self._scope
            seeds |= self._interrupt()
            await asyncio.wait([self._task])

        task = asyncio.ensure_future(self._drive(seeds))
        self._task = task
        await asyncio.wait([task])
        if task.cancelled():
            return self._scope
        return task.result()

    async def _drive(self, seeds: set[int]) -> Scope:
        while True:
            dag = build_dag(self.cells, self.observers)
            plan = dag.plan(seeds)
            self.dag, self._plan = dag, plan
            self._scope = await self.executor.run(dag, plan, self.base_scope)
            self._plan = None
            if not self._queued:
                return self._scope
            seeds, self._queued = set(self._queued), set()


__all__ = ["Notebook"]
