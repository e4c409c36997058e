"""The ``std`` namespace handed to every cell."""
from __future__ import annotations

from csv import reader as csv_reader
import io
import logging
import math
from types import MappingProxyType, SimpleNamespace
from typing import Any, Callable, Iterable, Sequence

import httpx

from ..atra import atra

logger = logging.getLogger(__name__)


def _field_value(text: str, typed: bool):
    if not typed:
        return text
    if text == "":
        return None
    if text == "true":
        return True
    if text == "false":
        return False
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def _csv_rows(text: str, separator: str) -> list[list[str]]:
    reader = csv_reader(io.StringIO(text, newline=""), delimiter=separator)
    return [row for row in reader if row and row != [""]]


def csv(text: str, separator: str = ",", typed: bool = False) -> list[dict]:
    """Parse CSV with a header row into a list of dicts.

    Quoted fields may contain separators, newlines and doubled quotes.  With
    ``typed=True`` numbers, ``true``/``false`` and empty fields are converted.
    """

    rows = _csv_rows(text or "", separator)
    if len(rows) < 2:
        return []
    headers = rows[0]
    records = []
    for row in rows[1:]:
        records.append({
            header: _field_value(row[index] if index < len(row) else "", typed)
            for index, header in enumerate(headers)
        })
    return records


def _values(items: Iterable, key: Callable | None) -> list:
    return [key(item) for item in items] if key else list(items)


def sum_(items: Iterable, key: Callable | None = None):
    total = 0
    for value in _values(items, key):
        total += value
    return total


def mean(items: Iterable, key: Callable | None = None) -> float:
    values = _values(items, key)
    if not values:
        return math.nan
    return sum_(values) / len(values)


def median(items: Iterable, key: Callable | None = None) -> float:
    values = sorted(_values(items, key))
    n = len(values)
    if n == 0:
        return math.nan
    if n % 2:
        return values[n // 2]
    return (values[n // 2 - 1] + values[n // 2]) / 2


def extent(items: Iterable, key: Callable | None = None) -> tuple:
    """``(min, max)`` of the values; ``(inf, -inf)`` when empty."""

    lo, hi = math.inf, -math.inf
    for value in _values(items, key):
        lo = min(lo, value)
        hi = max(hi, value)
    return lo, hi


def bin_(items: Iterable, n: int = 10, key: Callable | None = None) -> list[dict]:
    """Split values into *n* equal-width bins ``{"x0", "x1", "values"}``."""

    values = _values(items, key)
    if n < 1:
        raise ValueError("bin count must be positive")
    if not values:
        return []
    lo, hi = extent(values)
    step = ((hi - lo) or 1) / n
    bins = [{"x0": lo + i * step, "x1": lo + (i + 1) * step, "values": []} for i in range(n)]
    for value in values:
        index = min(max(int(math.floor((value - lo) / step)), 0), n - 1)
        bins[index]["values"].append(value)
    return bins


def linspace(start: float, stop: float, n: int) -> list[float]:
    if n < 2:
        return [start] if n == 1 else []
    step = (stop - start) / (n - 1)
    values = [start + i * step for i in range(n)]
    values[-1] = stop
    return values


def unique(items: Iterable, key: Callable | None = None) -> list:
    seen = set()
    result = []
    for item in items:
        marker = key(item) if key else item
        if marker not in seen:
            seen.add(marker)
            result.append(item)
    return result


def zip_(*sequences: Sequence) -> list[list]:
    return [list(group) for group in zip(*sequences)]


def cross(*sequences: Sequence) -> list[list]:
    if not sequences:
        return [[]]
    first, *rest = sequences
    tails = cross(*rest)
    return [[item, *tail] for item in first for tail in tails]


def fmt(number, decimals: int | None = None, prefix: str = "", suffix: str = "") -> str:
    if decimals is not None:
        text = f"{number:.{decimals}f}"
    else:
        text = f"{number:,.6f}".rstrip("0").rstrip(".") if isinstance(number, float) else f"{number:,}"
    return f"{prefix}{text}{suffix}"


def include(libraries, *names: str) -> str:
    """Concatenate routine sources with their dependencies first.

    A library is a mapping ``{"sources": {name: src}, "deps": {name: [dep, ...]}}``;
    a list of libraries is merged.
    """

    if isinstance(libraries, dict):
        libraries = [libraries]
    sources: dict[str, str] = {}
    deps: dict[str, list] = {}
    for library in libraries:
        if not isinstance(library, dict) or "sources" not in library or "deps" not in library:
            raise ValueError("include: expected library with sources and deps")
        sources.update(library["sources"])
        deps.update(library["deps"])

    ordered: list[str] = []
    visiting: set[str] = set()

    def visit(name):
        if name in ordered:
            return
        if name not in sources:
            raise KeyError(f"include: unknown routine {name!r}")
        if name in visiting:
            raise ValueError(f"include: circular dependency through {name!r}")
        visiting.add(name)
        for dep in deps.get(name, []):
            visit(dep)
        visiting.discard(name)
        ordered.append(name)

    for name in names:
        visit(name)
    return "\n\n".join(sources[name] for name in ordered)


async def fetch_json(url: str, client: httpx.AsyncClient | None = None) -> Any:
    """GET *url* and decode the JSON body; HTTP errors raise ``httpx.HTTPStatusError``."""

    if client is not None:
        response = await client.get(url)
        response.raise_for_status()
        return response.json()
    async with httpx.AsyncClient(follow_redirects=True) as session:
        response = await session.get(url)
        response.raise_for_status()
        return response.json()


STD_FUNCTIONS = MappingProxyType({
    "csv": csv,
    "sum": sum_,
    "mean": mean,
    "median": median,
    "extent": extent,
    "bin": bin_,
    "linspace": linspace,
    "unique": unique,
    "zip": zip_,
    "cross": cross,
    "fmt": fmt,
    "include": include,
    "fetch_json": fetch_json,
    "atra": atra,
})


def make_std() -> SimpleNamespace:
    """Return a fresh ``std`` namespace."""

    return SimpleNamespace(**STD_FUNCTIONS)


__all__ = [
    "csv",
    "mean",
    "median",
    "extent",
    "linspace",
    "unique",
    "cross",
    "fmt",
    "include",
    "fetch_json",
    "STD_FUNCTIONS",
    "make_std",
]
