"""Command-line interface: run notebook files and compile ATRA sources."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
import re
import sys

from ..atra import AtraError, compile_module, run as run_atra, validate
from ..constants import (
    CELL_KINDS,
    DIAGNOSTIC_EVENTS,
    KIND_CODE,
    STATE_FAILED,
    STATE_OK,
)
from .analysis import export_graphviz
from .core import CycleError, EventLog
from .notebook import Notebook

logger = logging.getLogger(__name__)

SEPARATOR_PATTERN = re.compile(r"^%%[ \t]*(?P<kind>\w+)?[ \t]*$")
PREVIEW_LIMIT = 60


def split_cells(text: str) -> list[tuple[str, str]]:
    """Split ``%%``-separated notebook text into ``(kind, source)`` pairs."""

    cells: list[tuple[str, str]] = []
    kind, lines = KIND_CODE, []
    started = False
    for line in text.splitlines():
        match = SEPARATOR_PATTERN.match(line)
        if match:
            if started or any(l.strip() for l in lines):
                cells.append((kind, "\n".join(lines).strip("\n")))
            kind = match.group("kind") or KIND_CODE
            if kind not in CELL_KINDS:
                raise ValueError(f"Unknown cell kind: {kind}")
            lines, started = [], True
            continue
        lines.append(line)
    if started or any(l.strip() for l in lines):
        cells.append((kind, "\n".join(lines).strip("\n")))
    return cells


def load_notebook(path) -> list[tuple[str, str]]:
    """Read a JSON (``{"cells": [...]}``) or ``%%``-separated notebook file."""

    text = Path(path).read_text(encoding="utf-8")
    if text.lstrip().startswith("{"):
        data = json.loads(text)
        return [(c.get("kind", KIND_CODE), c.get("source", "")) for c in data.get("cells", [])]
    return split_cells(text)


def _preview(value) -> str:
    text = repr(value)
    return text if len(text) <= PREVIEW_LIMIT else text[: PREVIEW_LIMIT - 1] + "…"


def run_notebook(path, graph=None) -> int:
    log = EventLog()
    notebook = Notebook(load_notebook(path), observer=log)
    print(f"Notebook: {path}")
    try:
        scope = asyncio.run(notebook.run_all())
    except CycleError as exc:
        print(f"  ✗ {exc}")
        return 1

    for event in log.events:
        if event.kind in DIAGNOSTIC_EVENTS:
            where = f"cell {event.cell_id}" if event.cell_id is not None else "notebook"
            print(f"  ! {event.kind} ({where}): {event.message}")

    failures = 0
    for cell in notebook.cells:
        if not cell.executable:
            continue
        if cell.state == STATE_OK:
            names = ", ".join(sorted(cell.exports)) or "no exports"
            print(f"  ✓ cell {cell.id}: {names}")
        elif cell.state == STATE_FAILED:
            failures += 1
            print(f"  ✗ cell {cell.id}: {type(cell.error).__name__}: {cell.error}")
        else:
            print(f"  - cell {cell.id}: {cell.state}")
        for item in cell.output:
            print(f"      {item}")

    print("\nScope:")
    for name in sorted(scope):
        print(f"  {name} = {_preview(scope[name])}")

    if graph:
        export_graphviz(notebook.cells, notebook.graph(), graph)
    return 1 if failures else 0


def _number(text: str):
    try:
        return int(text)
    except ValueError:
        return float(text)


def compile_atra(path, dump=False, wasm=None, call=None) -> int:
    source = Path(path).read_text(encoding="utf-8")
    print(f"ATRA: {path}")
    try:
        compiled = compile_module(source)
    except AtraError as exc:
        print(f"  ✗ {exc}")
        return 1

    exports = ", ".join(compiled.exports) or "none"
    print(f"  ✓ compiled {len(compiled.binary)} bytes, exports: {exports}")
    if compiled.imports:
        print(f"  → imports: {', '.join(spec.key for spec in compiled.imports)}")
    try:
        ok = validate(compiled.binary)
    except RuntimeError as exc:
        print(f"  ✗ {exc}")
        ok = None
    if ok is not None:
        print("  ✓ module validates" if ok else "  ✗ module failed validation")
    if dump:
        print(compiled.hex())
    if wasm:
        out = Path(wasm)
        if out.parent and not out.parent.exists():
            out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(compiled.binary)
        print(f"  ✓ WebAssembly module exported → {out}")
    if call:
        name, *args = call
        try:
            result = run_atra(source)[name](*[_number(a) for a in args])
        except (AtraError, KeyError, TypeError) as exc:
            print(f"  ✗ {name}: {exc}")
            return 1
        print(f"  → {name}({', '.join(args)}) = {result}")
    return 0 if ok is not False else 1


def parse_args(args):
    argp = argparse.ArgumentParser(description="Reactive notebook runtime and ATRA compiler")

    argp.add_argument("notebook", nargs="?", help="Notebook file (JSON or %%-separated text)")
    argp.add_argument(
        "--graph",
        metavar="OUTPUT",
        help="Export the cell dependency graph to an SVG file",
    )
    argp.add_argument("--atra", metavar="FILE", help="Compile an ATRA source file")
    argp.add_argument(
        "--dump", action="store_true", help="Print the compiled module as hex"
    )
    argp.add_argument(
        "--wasm",
        metavar="OUTPUT",
        help="Write the compiled WebAssembly module to a file",
    )
    argp.add_argument(
        "--call",
        nargs="+",
        metavar=("NAME", "ARG"),
        help="Call an exported routine of the compiled module",
    )
    argp.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    params = argp.parse_args(args)
    if not params.notebook and not params.atra:
        argp.error("a notebook file or --atra FILE is required")
    return params


def main(args) -> int:
    params = parse_args(args)
    logging.basicConfig(
        level=logging.DEBUG if params.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    status = 0
    if params.atra:
        status |= compile_atra(params.atra, params.dump, params.wasm, params.call)
    if params.notebook:
        if params.atra:
            print()
        status |= run_notebook(params.notebook, params.graph)
    return status


def _run() -> None:  # pragma: no cover
    sys.exit(main(sys.argv[1:]))


__all__ = [
    "main",
    "parse_args",
    "split_cells",
    "load_notebook",
    "run_notebook",
    "compile_atra",
]


if __name__ == "__main__":  # pragma: no cover
    _run()
