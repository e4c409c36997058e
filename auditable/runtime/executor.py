"""Cooperative executor: runs an execution plan one cell at a time."""
from __future__ import annotations

import asyncio
from collections import Counter
import logging
from typing import Any, Callable

from ..constants import (
    EVENT_GOTO_MISSING,
    EVENT_LOOP_LIMIT,
    GOTO_LIMIT,
    GOTO_NAME,
    KIND_HTML,
    RESERVED_NAMES,
    STATE_CANCELED,
    STATE_FAILED,
    STATE_OK,
    STATE_RUNNING,
    STATE_SCHEDULED,
    STATE_SKIPPED,
)
from .analysis import compile_cell, render_template
from .core import CancelToken, CellCancelled, CellEvent, Invalidation, Observers, Scope
from .dag import DependencyGraph, ExecutionPlan

logger = logging.getLogger(__name__)


class Output:
    """Display sink handed to a cell as ``io``."""

    def __init__(self, cell):
        self.cell = cell

    def display(self, *values):
        self.cell.output.extend(values)
        return values[0] if len(values) == 1 else values

    def print(self, *args, sep=" "):
        self.cell.output.append(sep.join(str(a) for a in args))

    def table(self, rows, columns=None):
        rows = list(rows)
        if columns is None:
            columns = list(rows[0]) if rows and isinstance(rows[0], dict) else []
        lines = [" | ".join(str(c) for c in columns)] if columns else []
        for row in rows:
            values = [row.get(c) for c in columns] if isinstance(row, dict) else list(row)
            lines.append(" | ".join("" if v is None else str(v) for v in values))
        text = "\n".join(lines)
        self.cell.output.append(text)
        return text

    def clear(self):
        self.cell.output.clear()

    @property
    def text(self) -> str:
        return "\n".join(str(item) for item in self.cell.output)


class Executor:
    """Run plans against a dependency graph.

    *environment* is called as ``environment(cell, token)`` and returns the
    reserved names (``std``, ``load``, widget constructors, ...) injected into
    the cell alongside ``io``, ``cancel`` and ``invalidation``.
    """

    def __init__(self, observers: Observers | None = None, environment: Callable | None = None):
        self.observers = observers or Observers()
        self.environment = environment
        self.live: dict[int, CancelToken] = {}
        self.executions = 0

    def _emit(self, cell, kind, error=None, message=""):
        defines = frozenset(cell.exports) if kind == STATE_OK else frozenset()
        self.observers.emit(CellEvent(cell.id, kind, cell.state, defines, error, message))

    def _set_state(self, cell, state, error=None):
        cell.state = state
        self._emit(cell, state, error)

    def _loop_limit(self, cell, target) -> None:
        logger.warning("cell %s: goto %r loop limit reached", cell.id, target)
        self._emit(cell, EVENT_LOOP_LIMIT, message=f"goto {target!r} exceeded {GOTO_LIMIT} visits")

    def cancel_all(self) -> None:
        """Fire every live cancellation token."""

        for token in list(self.live.values()):
            token.fire()

    async def run(self, dag: DependencyGraph, plan: ExecutionPlan, scope: Scope | None = None) -> Scope:
        """Execute *plan*; return the scope after the last cell."""

        scope = scope if scope is not None else Scope()
        run_set = set(plan.run)
        labels = dag.label_index()
        position = {cid: index for index, cid in enumerate(plan.order)}
        visits: Counter = Counter()

        for cid in plan.order:
            if cid in run_set:
                self._set_state(dag.cells[cid], STATE_SCHEDULED)

        index = 0
        while index < len(plan.order):
            cid = plan.order[index]
            cell = dag.cells[cid]
            index += 1
            exports = dag.exports.get(cid, frozenset())

            if cid not in run_set:
                if cid in plan.skipped:
                    self._set_state(cell, STATE_SKIPPED)
                scope = scope.merge({k: v for k, v in cell.exports.items() if k in exports})
                continue

            if visits[cid] >= GOTO_LIMIT:
                self._loop_limit(cell, cid)
                continue
            visits[cid] += 1
            ok, goto = await self._execute(cell, scope)
            if ok:
                scope = scope.merge({k: v for k, v in cell.exports.items() if k in exports})
            if not goto:
                continue

            target = labels.get(goto)
            if target is None:
                logger.warning("cell %s: goto target %r not found", cid, goto)
                self._emit(cell, EVENT_GOTO_MISSING, message=f"goto target {goto!r} not found")
                continue
            if visits[target] >= GOTO_LIMIT:
                self._loop_limit(cell, goto)
                continue
            run_set.add(target)
            index = position[target]
        return scope

    def _program(self, cell, params):
        key = (cell.source, tuple(params), tuple(sorted(cell.defines)), cell.goto)
        if cell.program is None or cell.program_key != key:
            cell.program = compile_cell(cell.source, params, cell.defines, cell.goto, f"<cell {cell.id}>")
            cell.program_key = key
        return cell.program

    def _namespace(self, cell, token: CancelToken) -> dict[str, Any]:
        values: dict[str, Any] = {}
        if self.environment is not None:
            values.update(self.environment(cell, token))
        values["io"] = Output(cell)
        values["cancel"] = token
        values["invalidation"] = cell.invalidation
        return values

    async def _execute(self, cell, scope: Scope) -> tuple[bool, str | None]:
        """Run one cell; return ``(merged, goto_label)``."""

        if cell.invalidation is not None:
            cell.invalidation.fire()
        cell.invalidation = Invalidation()
        token = CancelToken()
        self.live[cell.id] = token
        cell.output = []
        cell.error = None
        cell.state = STATE_RUNNING
        self._emit(cell, "started")
        self.executions += 1
        try:
            if token.cancelled:
                raise CellCancelled()
            reserved = self._namespace(cell, token)
            if cell.kind == KIND_HTML:
                namespace = {k: scope[k] for k in (cell.uses | cell.builtin_refs) if k in scope}
                cell.output.append(render_template(cell.source, namespace))
                result = {}
            else:
                available = sorted(n for n in (cell.uses | cell.builtin_refs) if n in scope)
                params = sorted(set(RESERVED_NAMES) | set(available))
                program = self._program(cell, params)
                kwargs = {name: reserved.get(name) if name in RESERVED_NAMES else scope[name] for name in params}
                result = await program(**kwargs)
            if token.cancelled:
                raise CellCancelled()
        except asyncio.CancelledError:
            self._cancelled(cell)
            raise
        except CellCancelled:
            self._cancelled(cell)
            return False, None
        except Exception as exc:
            logger.debug("cell %s failed: %r", cell.id, exc)
            cell.exports = {}
            cell.error = exc
            self._set_state(cell, STATE_FAILED, exc)
            return False, None
        finally:
            self.live.pop(cell.id, None)

        goto = result.pop(GOTO_NAME, None)
        cell.exports = dict(result)
        self._set_state(cell, STATE_OK)
        return True, goto

    def _cancelled(self, cell):
        cell.exports = {}
        cell.state = STATE_CANCELED
        self._emit(cell, STATE_CANCELED)
        if cell.invalidation is not None:
            cell.invalidation.fire()


__all__ = ["Output", "Executor"]
