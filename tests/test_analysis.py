"""Tests for cell analysis in ``auditable.runtime.analysis``."""

import asyncio

import pytest

from auditable.runtime.analysis import (
    analyze_cell,
    analyze_code,
    analyze_template,
    annotate_cell,
    compile_cell,
    parse_pragmas,
    render_template,
    template_expressions,
    transform_source,
)
from auditable.runtime.core import Cell


def test_parse_pragmas_accepts_both_comment_styles():
    source = "// %manual\n# %name top\n  // %goto  bottom extra\nconst x = 1"
    assert parse_pragmas(source) == {"manual": "", "name": "top", "goto": "bottom"}


def test_first_pragma_wins():
    assert parse_pragmas("// %name a\n// %name b") == {"name": "a"}


def test_transform_strips_top_level_binding_keywords():
    source = "const x = 1\nlet y = 2\nvar z = 3\nconstant = 4\n// note\nif x:\n    const_y = 1"
    python, bindings = transform_source(source)
    assert python.splitlines() == ["x = 1", "y = 2", "z = 3", "constant = 4", "# note", "if x:", "    const_y = 1"]
    assert bindings == {1: "const", 2: "let", 3: "var"}


@pytest.mark.parametrize("quote", ['"""', "'''", 'f"""'])
def test_transform_leaves_multiline_strings_alone(quote):
    source = f"const doc = {quote}\nconst kept = 1\n// kept too\nlet also = 2\n{quote[-3:]}\nconst after = len(doc)"
    python, bindings = transform_source(source)
    assert python.splitlines()[1:4] == ["const kept = 1", "// kept too", "let also = 2"]
    assert bindings == {1: "const", 6: "const"}
    result = analyze_code(source)
    assert result.defines == {"doc", "after"}


def test_analyze_code_defines_uses_and_builtins():
    result = analyze_code(
        "import math\n"
        "const total = sum(values) + offset\n"
        "let counter = 0\n"
        "def helper(v):\n"
        "    return v * scale\n"
        "class Box:\n"
        "    pass\n"
        "squares = [i * i for i in range(n)]\n"
    )
    assert result.defines == {"math", "total", "helper", "Box"}
    assert result.mutable == {"counter"}
    assert result.uses == {"values", "offset", "scale", "n"}
    assert result.builtin_refs == {"sum", "range"}
    assert result.error is None


@pytest.mark.parametrize(
    "source",
    [
        "const x = x + 1",
        "const total = sum(total_in)\nconst total_in = 3",
        "def f():\n    return f\nconst g = f()",
        "import os\nconst sep = os.sep + other",
    ],
)
def test_defines_and_uses_are_disjoint(source):
    result = analyze_code(source)
    assert result.defines
    assert result.defines.isdisjoint(result.uses)


def test_tuple_targets_and_annotated_bindings():
    result = analyze_code("const a, (b, *c) = pair\nconst d: int = 4")
    assert result.defines == {"a", "b", "c", "d"}
    assert result.uses == {"pair"}


def test_reserved_names_are_not_dependencies():
    result = analyze_code("const v = slider('v', 1) + std.mean(xs)\nio.display(v)\ncancel.check()")
    assert result.uses == {"xs"}


def test_nested_scopes_bind_their_own_names():
    result = analyze_code(
        "const f = lambda a: a + b\n"
        "def g(x, *rest, k=default):\n"
        "    y = x\n"
        "    return [y + z for z in rest] + [w for w in outer]\n"
    )
    assert result.uses == {"b", "default", "outer"}


def test_await_at_top_level_is_allowed():
    result = analyze_code("import asyncio\nawait asyncio.sleep(0)\nconst done = True")
    assert result.error is None
    assert result.defines == {"asyncio", "done"}


def test_syntax_error_is_reported_not_raised():
    result = analyze_code("const x = (")
    assert result.defines == frozenset()
    assert "line 1" in result.error


def test_template_cells_use_placeholder_names():
    source = "<b>${name.upper()}</b> has ${len(items)} items"
    assert template_expressions(source) == ["name.upper()", "len(items)"]
    result = analyze_template(source)
    assert result.uses == {"name", "items"}
    assert result.builtin_refs == {"len"}
    assert analyze_template("${(}").error


@pytest.mark.parametrize("kind", ["markup", "style"])
def test_non_executable_kinds_only_read_pragmas(kind):
    result = analyze_cell("// %hide\n${x} const y = 1", kind)
    assert result.uses == frozenset() and result.defines == frozenset()
    assert "hide" in result.pragmas


def test_render_template_inlines_errors():
    rendered = render_template("Hi ${name}! ${1/0} ${none}", {"name": "Ada", "none": None})
    assert rendered == "Hi Ada! [Error: division by zero] "


def test_annotate_cell_copies_flags():
    cell = Cell(1, "// %manual\n// %name loader\n// %hide\n// %collapsed\n// %goto next\nconst data = 1")
    annotate_cell(cell)
    assert cell.manual and cell.hidden and cell.collapsed
    assert not cell.norun
    assert cell.label == "loader"
    assert cell.goto == "next"
    assert cell.defines == {"data"}


def test_compile_cell_returns_only_bound_exports():
    program = compile_cell("const y = x + 1\nlet tmp = 5\nif False:\n    z = 1", ["x"], ["y", "z"])
    assert asyncio.run(program(x=1)) == {"y": 2}


def test_compile_cell_sets_goto_label():
    program = compile_cell("const y = 1", [], ["y"], goto="top")
    assert asyncio.run(program()) == {"y": 1, "__goto": "top"}


def test_compile_cell_allows_await():
    program = compile_cell("import asyncio\nawait asyncio.sleep(0)\nconst r = 3", [], ["r", "asyncio"])
    result = asyncio.run(program())
    assert result["r"] == 3
