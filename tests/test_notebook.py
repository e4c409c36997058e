"""End-to-end tests for ``auditable.runtime.notebook.Notebook``."""

import asyncio

import pytest

from auditable.constants import GOTO_LIMIT
from auditable.runtime import CycleError, EventLog, Notebook


def run(coro):
    return asyncio.run(coro)


def test_linear_dependency_runs_in_order():
    log = EventLog()
    nb = Notebook(["const x=2", "const y=x+1", "const z=y*y"], observer=log)

    scope = run(nb.edit(1, "const x=2"))

    assert log.started() == [1, 2, 3]
    assert dict(scope) == {"x": 2, "y": 3, "z": 9}
    assert [cell.state for cell in nb.cells] == ["ok", "ok", "ok"]


def test_edit_reruns_only_consumers():
    log = EventLog()
    nb = Notebook(["const x = 2", "const y = x + 1", "const other = 5"], observer=log)

    async def scenario():
        await nb.run_all()
        log.clear()
        return await nb.edit(1, "const x = 10")

    scope = run(scenario())
    assert log.started() == [1, 2]
    assert scope["y"] == 11
    assert scope["other"] == 5


def test_manual_cell_is_skipped_until_run_explicitly():
    log = EventLog()
    nb = Notebook(["const x=2", "// %manual\nconst y=x+1"], observer=log)

    async def scenario():
        first = await nb.edit(1, "const x=2")
        second = await nb.run(2)
        return first, second

    first, second = run(scenario())
    assert dict(first) == {"x": 2}
    assert nb.cell(2).state == "ok"
    assert "skipped" in log.kinds(2)
    assert second["y"] == 3


def test_manual_cell_keeps_previous_value():
    nb = Notebook(["const x=2", "// %manual\nconst y=x+1"])

    async def scenario():
        await nb.run(1, 2)
        return await nb.edit(1, "const x=5")

    scope = run(scenario())
    assert scope["x"] == 5
    assert scope["y"] == 3


def test_run_all_includes_manual_but_not_norun_cells():
    nb = Notebook(["const x=2", "// %manual\nconst y=x+1", "// %norun\nconst z=x"])
    scope = run(nb.run_all())
    assert scope["y"] == 3
    assert "z" not in scope
    assert nb.cell(3).state == "skipped"


def test_shadowing_uses_latest_definition():
    log = EventLog()
    nb = Notebook(["const x=1", "const x=2", "const y=x"], observer=log)

    scope = run(nb.run_all())

    assert scope["y"] == 2
    assert scope["x"] == 2
    shadow = log.of_kind("shadow")
    assert shadow and shadow[0].cell_id == 1


def test_slider_change_reruns_cell_and_consumers():
    log = EventLog()
    nb = Notebook(['const s = slider("v", 5)', "const t = s*2"], observer=log)

    async def scenario():
        await nb.run_all()
        log.clear()
        return await nb.set_widget(1, "v", 7)

    scope = run(scenario())
    assert log.started() == [1, 2]
    assert scope["s"] == 7
    assert scope["t"] == 14
    assert nb.cell(1).widgets["v"].value == 7


def test_widget_values_are_coerced():
    nb = Notebook(['const s = slider("v", 5, min=0, max=10)', 'const d = dropdown("d", ["a", "b"])'])

    async def scenario():
        await nb.run_all()
        await nb.set_widget(1, "v", 50)
        with pytest.raises(ValueError):
            await nb.set_widget(2, "d", "z")
        with pytest.raises(KeyError):
            await nb.set_widget(1, "missing", 1)
        return nb.scope

    scope = run(scenario())
    assert scope["s"] == 10
    assert scope["d"] == "a"


def test_callback_widget_does_not_rerun_cell():
    seen = []
    log = EventLog()
    nb = Notebook(
        ['const w = slider("v", 1, on_input=lambda v: seen.append(v))'],
        observer=log,
        scope={"seen": seen},
    )

    async def scenario():
        await nb.run_all()
        return await nb.set_widget(1, "v", 9)

    assert run(scenario()) is None
    assert seen == [9]
    assert log.started() == [1]
    assert nb.scope["w"].value == 9


def test_widget_trigger_during_run_is_queued():
    nb = Notebook([
        'const s = slider("v", 1)',
        "import asyncio\nawait asyncio.sleep(0.2 if s == 1 else 0)\nconst t = s * 2",
    ])

    async def scenario():
        first = asyncio.ensure_future(nb.run_all())
        await asyncio.sleep(0.05)
        queued = await nb.set_widget(1, "v", 3)
        final = await first
        return queued, final

    queued, final = run(scenario())
    assert "t" not in queued
    assert final["s"] == 3
    assert final["t"] == 6


def test_edit_preempts_active_run():
    log = EventLog()
    nb = Notebook(
        ["const x = 1", "import asyncio\nawait asyncio.sleep(5 if x == 1 else 0)\nconst y = x + 1"],
        observer=log,
    )

    async def scenario():
        first = asyncio.ensure_future(nb.run_all())
        await asyncio.sleep(0.05)
        scope = await nb.edit(1, "const x = 10")
        await first
        return scope

    scope = run(scenario())
    assert "canceled" in log.kinds(2)
    assert scope["x"] == 10
    assert scope["y"] == 11
    assert nb.cell(2).state == "ok"


def test_cancel_token_stops_cooperative_cell():
    nb = Notebook(["const x = 1", "cancel.fire()\ncancel.check()\nconst y = 2", "const z = y"])
    scope = run(nb.run_all())
    assert nb.cell(2).state == "canceled"
    assert "y" not in scope
    assert nb.cell(3).state == "failed"


def test_invalidation_fires_before_rerun_and_on_close():
    closed = []
    nb = Notebook(
        ["invalidation.add_done_callback(lambda inv: closed.append(n))\nconst n = 1"],
        scope={"closed": closed},
    )

    async def scenario():
        await nb.run_all()
        assert closed == []
        await nb.edit(1, "invalidation.add_done_callback(lambda inv: closed.append(n))\nconst n = 2")
        assert closed == [1]
        await nb.close()

    run(scenario())
    assert closed == [1, 2]


def test_failure_is_reported_and_downstream_reruns():
    log = EventLog()
    nb = Notebook(["const y = 1/0", "const z = y + 1", "const ok = 1"], observer=log)

    scope = run(nb.run_all())

    assert nb.cell(1).state == "failed"
    assert isinstance(nb.cell(1).error, ZeroDivisionError)
    assert nb.cell(2).state == "failed"
    assert isinstance(nb.cell(2).error, NameError)
    assert dict(scope) == {"ok": 1}
    failed = log.of_kind("failed")
    assert failed[0].error is nb.cell(1).error


def test_cycle_is_rejected():
    log = EventLog()
    nb = Notebook(["const a = b", "const b = a"], observer=log)
    with pytest.raises(CycleError):
        run(nb.run_all())
    assert log.of_kind("cycle-detected")


def test_analysis_warning_for_unparsable_cell():
    log = EventLog()
    nb = Notebook(["const x = ("], observer=log)
    assert log.of_kind("analysis-warning")
    run(nb.run_all())
    assert nb.cell(1).state == "failed"
    assert isinstance(nb.cell(1).error, SyntaxError)


def test_goto_loop_stops_at_limit():
    log = EventLog()
    nb = Notebook(
        [
            "// %name top\n// %goto bottom\nconst a = 1",
            "// %name bottom\n// %goto top\nconst b = 2",
        ],
        observer=log,
    )

    scope = run(nb.run_all())

    assert len(log.of_kind("loop-limit-reached")) == 1
    started = log.started()
    assert started.count(1) == GOTO_LIMIT
    assert started.count(2) == GOTO_LIMIT
    assert len(started) <= GOTO_LIMIT * len(nb.cells)
    assert scope["a"] == 1 and scope["b"] == 2


def test_goto_loop_through_three_cells_stays_within_bound():
    log = EventLog()
    nb = Notebook(
        [
            "// %name start\nconst a = 1",
            "const b = a + 1",
            "// %goto start\nconst c = b + 1",
        ],
        observer=log,
    )

    scope = run(nb.run_all())

    assert len(log.started()) <= GOTO_LIMIT * len(nb.cells)
    assert log.started().count(1) == GOTO_LIMIT
    assert log.of_kind("loop-limit-reached")
    assert scope["c"] == 3


def test_goto_forward_jump_runs_target():
    log = EventLog()
    nb = Notebook(
        [
            "// %goto tail\nconst a = 1",
            "// %norun\nconst skipped_value = 1",
            "// %name tail\n// %norun\nconst t = a + 1",
        ],
        observer=log,
    )
    scope = run(nb.run_all())
    assert scope["t"] == 2
    assert 2 not in log.started()


def test_missing_goto_target_is_reported():
    log = EventLog()
    nb = Notebook(["// %goto nowhere\nconst a = 1"], observer=log)
    scope = run(nb.run_all())
    assert scope["a"] == 1
    (event,) = log.of_kind("goto-target-missing")
    assert "nowhere" in event.message


def test_html_cell_renders_template():
    nb = Notebook([
        ("code", "const name = 'World'"),
        ("html", "<p>Hello ${name}!</p> ${missing()}"),
        {"kind": "markup", "source": "# Notes"},
    ])
    run(nb.run_all())
    html = nb.cell(2)
    assert html.output == ["<p>Hello World!</p> [Error: name 'missing' is not defined]"]
    assert nb.cell(3).state == "idle"


def test_io_output_and_std_namespace():
    nb = Notebook([
        "const values = [3, 1, 2]",
        "const m = std.median(values)\nio.print('median', m)\nio.table([{'a': 1}])",
    ])
    scope = run(nb.run_all())
    assert scope["m"] == 2
    assert nb.cell(2).output == ["median 2", "a\n1"]


def test_atra_inside_a_cell():
    nb = Notebook([
        "const kernel = std.atra('function sqr(x: f64): f64 begin sqr := x*x end')",
        "const nine = kernel.sqr(3)",
    ])
    scope = run(nb.run_all())
    assert scope["nine"] == 9.0


def test_cell_management():
    nb = Notebook(["const x = 1"])
    cell = nb.add_cell("const y = x", index=0)
    assert [c.id for c in nb.cells] == [2, 1]
    assert nb.graph().order == [1, 2]
    nb.update_cell(2, "const y = x * 3")
    assert run(nb.run_all())["y"] == 3
    nb.remove_cell(cell.id)
    with pytest.raises(KeyError):
        nb.cell(cell.id)
    with pytest.raises(KeyError):
        run(nb.run(99))
