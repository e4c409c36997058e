"""Notebook widgets.

A widget is declared by calling one of the constructors inside a cell.
Reactive widgets return their current value, so ``const s = slider("v", 5)``
exports the value and moving the slider re-runs the cell and its consumers.
Passing ``on_input=`` (or ``on_change=``) makes a callback widget instead: the
constructor returns the :class:`Widget`, and interaction only calls the
callback without touching the dependency graph.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass
class Widget:
    kind: str
    label: str
    value: Any
    options: dict = field(default_factory=dict)
    callback: Callable | None = None

    @property
    def reactive(self) -> bool:
        return self.callback is None

    def coerce(self, value):
        """Validate and normalise a value for this widget."""

        if self.kind == "slider":
            value = float(value) if isinstance(self.value, float) or isinstance(value, float) else int(value)
            lo, hi = self.options["min"], self.options["max"]
            return min(max(value, lo), hi)
        if self.kind == "dropdown":
            choices = self.options["choices"]
            if value not in choices:
                raise ValueError(f"{value!r} is not one of {choices!r}")
            return value
        if self.kind == "checkbox":
            return bool(value)
        return "" if value is None else str(value)

    async def notify(self):
        if self.callback is None:
            return None
        result = self.callback(self.value)
        if inspect.isawaitable(result):
            result = await result
        return result

    def to_dict(self):
        return {"kind": self.kind, "label": self.label, "value": self.value, "reactive": self.reactive}


class WidgetFactory:
    """Widget constructors bound to one cell; values persist across runs by label."""

    def __init__(self, cell):
        self.cell = cell

    def _declare(self, kind, label, value, options, on_input=None, on_change=None):
        if not isinstance(label, str) or not label:
            raise ValueError(f"{kind} requires a non-empty label")
        callback = on_input or on_change
        widget = Widget(kind, label, value, options, callback)
        widget.value = widget.coerce(value)
        existing = self.cell.widgets.get(label)
        if existing is not None and existing.kind == kind:
            try:
                widget.value = widget.coerce(existing.value)
            except ValueError:
                logger.debug("dropping stale value of widget %r", label)
        self.cell.widgets[label] = widget
        return widget.value if widget.reactive else widget

    def slider(self, label, value=0, min=0, max=100, step=1, on_input=None, on_change=None):
        if min > max:
            raise ValueError("slider min must not exceed max")
        options = {"min": min, "max": max, "step": step}
        return self._declare("slider", label, value, options, on_input, on_change)

    def dropdown(self, label, choices, value=None, on_input=None, on_change=None):
        choices = list(choices)
        if not choices:
            raise ValueError("dropdown requires at least one choice")
        if value is None:
            value = choices[0]
        return self._declare("dropdown", label, value, {"choices": choices}, on_input, on_change)

    def checkbox(self, label, value=False, on_input=None, on_change=None):
        return self._declare("checkbox", label, value, {}, on_input, on_change)

    def text_input(self, label, value="", on_input=None, on_change=None):
        return self._declare("text_input", label, value, {}, on_input, on_change)

    def functions(self) -> dict[str, Callable]:
        return {
            "slider": self.slider,
            "dropdown": self.dropdown,
            "checkbox": self.checkbox,
            "text_input": self.text_input,
        }


__all__ = ["Widget", "WidgetFactory"]
