import asyncio

import pytest

from auditable.runtime.core import Cell
from auditable.runtime.widgets import Widget, WidgetFactory


@pytest.mark.parametrize(
    "kind, options, value, expected",
    [
        ("slider", {"min": 0, "max": 10}, 12, 10),
        ("slider", {"min": 0, "max": 10}, -3, 0),
        ("slider", {"min": 0.0, "max": 1.0}, 0.25, 0.25),
        ("dropdown", {"choices": ["a", "b"]}, "b", "b"),
        ("checkbox", {}, 1, True),
        ("text_input", {}, 42, "42"),
        ("text_input", {}, None, ""),
    ],
)
def test_widget_coerce(kind, options, value, expected):
    widget = Widget(kind, "w", None, options)
    assert widget.coerce(value) == expected


def test_dropdown_rejects_unknown_choice():
    with pytest.raises(ValueError):
        Widget("dropdown", "d", "a", {"choices": ["a"]}).coerce("z")


def test_factory_persists_values_by_label():
    cell = Cell(1)
    factory = WidgetFactory(cell)
    assert factory.slider("v", 5) == 5
    cell.widgets["v"].value = 8
    assert WidgetFactory(cell).slider("v", 5) == 8
    assert factory.dropdown("d", ["x", "y"]) == "x"
    assert factory.checkbox("c") is False
    assert factory.text_input("t", "hi") == "hi"
    assert set(factory.functions()) == {"slider", "dropdown", "checkbox", "text_input"}


def test_stale_value_is_dropped_when_choices_change():
    cell = Cell(1)
    WidgetFactory(cell).dropdown("d", ["a", "b"], value="b")
    assert WidgetFactory(cell).dropdown("d", ["a", "c"]) == "a"


def test_factory_validates_arguments():
    factory = WidgetFactory(Cell(1))
    with pytest.raises(ValueError):
        factory.slider("", 1)
    with pytest.raises(ValueError):
        factory.slider("v", 1, min=5, max=0)
    with pytest.raises(ValueError):
        factory.dropdown("d", [])


def test_callback_widget_returns_widget_and_awaits_coroutines():
    seen = []

    async def on_change(value):
        seen.append(value)
        return value * 2

    widget = WidgetFactory(Cell(1)).slider("v", 3, on_change=on_change)
    assert isinstance(widget, Widget)
    assert not widget.reactive
    assert asyncio.run(widget.notify()) == 6
    assert seen == [3]
    assert widget.to_dict() == {"kind": "slider", "label": "v", "value": 3, "reactive": False}
