"""Core data structures of the reactive notebook runtime."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import asyncio
import logging
from typing import Any, Callable, Iterable, Iterator

from ..constants import CELL_KINDS, KIND_CODE, KIND_HTML, STATE_IDLE

logger = logging.getLogger(__name__)


class CellCancelled(Exception):
    """Raised inside a cell that observes its cancellation token."""


class CycleError(ValueError):
    """The const-binding graph between cells contains a cycle."""

    def __init__(self, cells: Iterable[int]):
        self.cells = list(cells)
        super().__init__(f"Dependency cycle between cells {self.cells}")


class Scope(Mapping):
    """Immutable identifier → value snapshot.

    ``merge`` returns a new snapshot; a scope object handed to a cell never
    changes afterwards.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Any] | None = None):
        self._values = dict(values or {})

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"Scope({self._values!r})"

    def merge(self, bindings: Mapping[str, Any]) -> "Scope":
        if not bindings:
            return self
        values = dict(self._values)
        values.update(bindings)
        return Scope(values)

    def without(self, names: Iterable[str]) -> "Scope":
        names = set(names)
        if not names & self._values.keys():
            return self
        return Scope({k: v for k, v in self._values.items() if k not in names})

    def to_dict(self) -> dict[str, Any]:
        return dict(self._values)


class CancelToken:
    """Single-shot synchronous cancellation flag handed to each cell as ``cancel``."""

    def __init__(self):
        self._cancelled = False
        self._callbacks: list[Callable[[], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __bool__(self) -> bool:
        return self._cancelled

    def fire(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("cancel callback failed")

    def on_cancel(self, callback: Callable[[], Any]) -> None:
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def check(self) -> None:
        """Raise :class:`CellCancelled` once the token has fired."""

        if self._cancelled:
            raise CellCancelled()


class Invalidation:
    """Resolves when the owning cell is about to be replaced.

    Cells release long-lived resources either by registering a callback
    (``invalidation.add_done_callback(fn)``) or by awaiting the object.
    """

    def __init__(self):
        self._done = False
        self._callbacks: list[Callable[["Invalidation"], Any]] = []
        self._waiters: list[asyncio.Future] = []

    def done(self) -> bool:
        return self._done

    def add_done_callback(self, callback: Callable[["Invalidation"], Any]) -> None:
        if self._done:
            callback(self)
        else:
            self._callbacks.append(callback)

    def fire(self) -> None:
        if self._done:
            return
        self._done = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("invalidation callback failed")
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done() and not waiter.get_loop().is_closed():
                waiter.set_result(None)

    def __await__(self):
        if self._done:
            return None
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        yield from waiter.__await__()


class Cell:
    """A unit of notebook source together with its analysis and last result."""

    def __init__(self, id: int, source: str = "", kind: str = KIND_CODE):
        if kind not in CELL_KINDS:
            raise ValueError(f"Unknown cell kind: {kind}")
        self.id = id
        self.kind = kind
        self.source = source
        self.state = STATE_IDLE
        self.defines: frozenset[str] = frozenset()
        self.uses: frozenset[str] = frozenset()
        self.mutable: frozenset[str] = frozenset()
        self.builtin_refs: frozenset[str] = frozenset()
        self.manual = False
        self.norun = False
        self.hidden = False
        self.collapsed = False
        self.label: str | None = None
        self.goto: str | None = None
        self.analysis_error: str | None = None
        self.exports: dict[str, Any] = {}
        self.error: BaseException | None = None
        self.output: list[Any] = []
        self.widgets: dict[str, Any] = {}
        self.invalidation: Invalidation | None = None
        self.program = None
        self.program_key = None

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"Cell({self.id}, {self.kind}, state={self.state})"

    @property
    def executable(self) -> bool:
        return self.kind in (KIND_CODE, KIND_HTML)


@dataclass(frozen=True)
class CellEvent:
    """Notification delivered to observers; state transitions and diagnostics."""

    cell_id: int | None
    kind: str
    state: str | None = None
    defines: frozenset = field(default_factory=frozenset)
    error: BaseException | None = None
    message: str = ""


class EventLog:
    """Observer that records every event it receives."""

    def __init__(self):
        self.events: list[CellEvent] = []

    def __call__(self, event: CellEvent) -> None:
        self.events.append(event)

    def kinds(self, cell_id: int | None = None) -> list[str]:
        return [e.kind for e in self.events if cell_id is None or e.cell_id == cell_id]

    def of_kind(self, kind: str) -> list[CellEvent]:
        return [e for e in self.events if e.kind == kind]

    def started(self) -> list[int]:
        """Cell ids in the order they started executing."""

        return [e.cell_id for e in self.events if e.kind == "started"]

    def clear(self) -> None:
        self.events.clear()


class Observers:
    """Fan-out of events to observer callables; failures are logged only."""

    def __init__(self, observers: Iterable[Callable[[CellEvent], Any]] | None = None):
        self._observers = [o for o in (observers or []) if o is not None]

    def add(self, observer: Callable[[CellEvent], Any]) -> None:
        self._observers.append(observer)

    def emit(self, event: CellEvent) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception("observer failed for %s", event.kind)


__all__ = [
    "CellCancelled",
    "CycleError",
    "Scope",
    "CancelToken",
    "Invalidation",
    "Cell",
    "CellEvent",
    "EventLog",
    "Observers",
]
