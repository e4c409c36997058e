import asyncio
import math

import httpx
import pytest

from auditable.atra import atra
from auditable.runtime.stdlib import (
    STD_FUNCTIONS,
    bin_,
    cross,
    csv,
    extent,
    fetch_json,
    fmt,
    include,
    linspace,
    make_std,
    mean,
    median,
    sum_,
    unique,
    zip_,
)


def test_csv_handles_quotes_and_separators():
    text = 'a,b\n1,"x, y"\n2,"he said ""hi"""\n'
    assert csv(text) == [{"a": "1", "b": "x, y"}, {"a": "2", "b": 'he said "hi"'}]


def test_csv_quoted_newline_and_crlf():
    assert csv('a,b\r\n1,"two\nlines"\r\n') == [{"a": "1", "b": "two\nlines"}]


def test_csv_typed_values():
    rows = csv("n,flag,empty,s\n1,true,,x\n2.5,false,,y", typed=True)
    assert rows == [
        {"n": 1, "flag": True, "empty": None, "s": "x"},
        {"n": 2.5, "flag": False, "empty": None, "s": "y"},
    ]


def test_csv_custom_separator_and_short_rows():
    assert csv("a;b\n1", separator=";") == [{"a": "1", "b": ""}]
    assert csv("only,header") == []
    assert csv("") == []


def test_summary_statistics():
    assert sum_([1, 2, 3]) == 6
    assert sum_([{"v": 2}, {"v": 5}], key=lambda r: r["v"]) == 7
    assert mean([1, 2, 3]) == 2
    assert math.isnan(mean([]))
    assert median([3, 1, 4, 2]) == 2.5
    assert median([5, 1, 3]) == 3
    assert math.isnan(median([]))
    assert extent([3, 1, 2]) == (1, 3)
    assert extent([]) == (math.inf, -math.inf)


def test_bin_assigns_maximum_to_last_bin():
    bins = bin_([0, 1, 2, 3, 4], 2)
    assert [b["values"] for b in bins] == [[0, 1], [2, 3, 4]]
    assert (bins[0]["x0"], bins[1]["x1"]) == (0, 4)
    assert bin_([], 3) == []
    assert len(bin_([7, 7], 3)) == 3
    with pytest.raises(ValueError):
        bin_([1], 0)


def test_sequence_helpers():
    assert linspace(0, 1, 5) == [0, 0.25, 0.5, 0.75, 1]
    assert linspace(2, 3, 1) == [2]
    assert linspace(2, 3, 0) == []
    assert unique([3, 1, 3, 2, 1]) == [3, 1, 2]
    assert unique(["a", "A", "b"], key=str.lower) == ["a", "b"]
    assert zip_([1, 2], [3, 4, 5]) == [[1, 3], [2, 4]]
    assert cross([1, 2], ["a", "b"]) == [[1, "a"], [1, "b"], [2, "a"], [2, "b"]]
    assert cross() == [[]]


@pytest.mark.parametrize(
    "args, kwargs, expected",
    [
        ((1234567,), {}, "1,234,567"),
        ((3.14159, 2), {}, "3.14"),
        ((1234.5,), {}, "1,234.5"),
        ((2.0,), {}, "2"),
        ((0.5,), {"prefix": "$", "suffix": "!"}, "$0.5!"),
    ],
)
def test_fmt(args, kwargs, expected):
    assert fmt(*args, **kwargs) == expected


LIBRARY = {
    "sources": {
        "sqr": "function sqr(x: f64): f64 begin sqr := x*x end",
        "hyp": "function hyp(a: f64, b: f64): f64 begin hyp := sqrt(sqr(a) + sqr(b)) end",
        "norm": "function norm(a: f64): f64 begin norm := hyp(a, a) end",
    },
    "deps": {"hyp": ["sqr"], "norm": ["hyp"]},
}


def test_include_orders_dependencies_first():
    text = include(LIBRARY, "norm", "sqr")
    assert text.index("function sqr") < text.index("function hyp") < text.index("function norm")
    assert text.count("function sqr") == 1


def test_include_output_compiles():
    exports = atra(include(LIBRARY, "hyp"))
    assert exports.hyp(3, 4) == 5.0


def test_include_errors():
    with pytest.raises(KeyError):
        include(LIBRARY, "missing")
    with pytest.raises(ValueError, match="circular"):
        include({"sources": {"x": "", "y": ""}, "deps": {"x": ["y"], "y": ["x"]}}, "x")
    with pytest.raises(ValueError, match="expected library"):
        include({"sources": {}}, "x")


def test_include_merges_library_lists():
    extra = {"sources": {"cube": "CUBE"}, "deps": {"cube": ["sqr"]}}
    text = include([LIBRARY, extra], "cube")
    assert text.endswith("CUBE")
    assert text.startswith("function sqr")


def test_fetch_json_uses_client():
    def handler(request):
        if request.url.path == "/missing":
            return httpx.Response(404)
        return httpx.Response(200, json={"path": request.url.path})

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            data = await fetch_json("https://example.test/data.json", client)
            with pytest.raises(httpx.HTTPStatusError):
                await fetch_json("https://example.test/missing", client)
            return data

    assert asyncio.run(scenario()) == {"path": "/data.json"}


def test_make_std_namespace():
    std = make_std()
    assert std.sum is sum_
    assert std.bin is bin_
    assert std.atra is atra
    assert make_std() is not std
    with pytest.raises(TypeError):
        STD_FUNCTIONS["sum"] = None


def test_csv_skips_blank_lines_and_keeps_quoted_separators():
    assert csv('a;b\n\n"1;2";3\n\n', separator=";") == [{"a": "1;2", "b": "3"}]
