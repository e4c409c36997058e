"""Cell analysis: pragmas, the script transform, defines/uses and cell compilation.

Code cells are Python with an optional binding keyword on top-level lines:

    const total = sum(values)     # single assignment, exported to other cells
    let counter = 0               # mutable, private to the cell
    // %manual                    # pragma (also accepted as ``# %manual``)
"""
from __future__ import annotations

import ast
import builtins
from dataclasses import dataclass, field
import io
import logging
from pathlib import Path
import re
import tokenize
from typing import Any, Iterable

try:
    import networkx as nx
except ModuleNotFoundError:  # pragma: no cover
    nx = None

try:
    import matplotlib.pyplot as plt
except ModuleNotFoundError:  # pragma: no cover
    plt = None

try:
    import pydot
except ModuleNotFoundError:  # pragma: no cover
    pydot = None

from ..constants import (
    BINDING_CONST,
    BINDING_MUTABLE,
    GOTO_NAME,
    KIND_CODE,
    KIND_HTML,
    PRAGMA_COLLAPSED,
    PRAGMA_GOTO,
    PRAGMA_HIDE,
    PRAGMA_MANUAL,
    PRAGMA_NAME,
    PRAGMA_NORUN,
    RESERVED_NAMES,
    STATE_COLORS,
)

logger = logging.getLogger(__name__)

PRAGMA_PATTERN = re.compile(r"^[ \t]*(?://|#)[ \t]*%(?P<name>[A-Za-z_]\w*)(?:[ \t]+(?P<arg>\S+))?", re.M)
BINDING_PATTERN = re.compile(
    rf"^(?P<kw>{BINDING_CONST}|{'|'.join(BINDING_MUTABLE)})[ \t]+(?=[A-Za-z_(\[])"
)
SLASH_COMMENT_PATTERN = re.compile(r"^(?P<indent>[ \t]*)//")
TEMPLATE_PATTERN = re.compile(r"\$\{(?P<expr>.*?)\}", re.S)

BUILTIN_NAMES = frozenset(dir(builtins))
CELL_FUNCTION = "__cell__"
CELL_LOCALS = "__cell_locals__"
# f-strings tokenize as one STRING before Python 3.12
FSTRING_START = getattr(tokenize, "FSTRING_START", None)
FSTRING_END = getattr(tokenize, "FSTRING_END", None)


@dataclass
class CellAnalysis:
    """Result of analysing one cell's source."""

    defines: frozenset = frozenset()
    uses: frozenset = frozenset()
    mutable: frozenset = frozenset()
    builtin_refs: frozenset = frozenset()
    pragmas: dict = field(default_factory=dict)
    error: str | None = None

    @property
    def manual(self) -> bool:
        return PRAGMA_MANUAL in self.pragmas

    @property
    def norun(self) -> bool:
        return PRAGMA_NORUN in self.pragmas

    @property
    def label(self) -> str | None:
        return self.pragmas.get(PRAGMA_NAME) or None

    @property
    def goto(self) -> str | None:
        return self.pragmas.get(PRAGMA_GOTO) or None


def parse_pragmas(source: str) -> dict[str, str]:
    """Return ``{pragma: argument}`` for every ``// %pragma [arg]`` line."""

    pragmas: dict[str, str] = {}
    for match in PRAGMA_PATTERN.finditer(source or ""):
        pragmas.setdefault(match.group("name"), match.group("arg") or "")
    return pragmas


def transform_source(source: str) -> tuple[str, dict[int, str]]:
    """Rewrite cell source into plain Python.

    Binding keywords are stripped from top-level lines and ``//`` comment
    lines become ``#`` comments.  Returns the new source and a mapping of
    1-based line numbers to the keyword that was removed there.
    """

    original = (source or "").splitlines()
    lines, bindings = _rewrite_lines(original, frozenset())
    # rewriting only touches line prefixes, so string spans survive the first pass
    quoted = _string_continuation_lines("\n".join(lines) + "\n")
    if quoted:
        lines, bindings = _rewrite_lines(original, quoted)
    return "\n".join(lines) + "\n", bindings


def _rewrite_lines(lines: list[str], quoted: frozenset) -> tuple[list[str], dict[int, str]]:
    bindings: dict[int, str] = {}
    out = []
    for lineno, line in enumerate(lines, start=1):
        if lineno not in quoted:
            match = BINDING_PATTERN.match(line)
            if match:
                bindings[lineno] = match.group("kw")
                line = line[match.end():]
            else:
                line = SLASH_COMMENT_PATTERN.sub(r"\g<indent>#", line, count=1)
        out.append(line)
    return out, bindings


def _string_continuation_lines(text: str) -> frozenset:
    """Line numbers that start inside a multi-line string literal."""

    rows: set[int] = set()
    fstring_starts: list[int] = []
    try:
        for tok in tokenize.generate_tokens(io.StringIO(text).readline):
            if tok.type == tokenize.STRING:
                rows.update(range(tok.start[0] + 1, tok.end[0] + 1))
            elif tok.type == FSTRING_START:
                fstring_starts.append(tok.start[0])
            elif tok.type == FSTRING_END and fstring_starts:
                rows.update(range(fstring_starts.pop() + 1, tok.end[0] + 1))
    except (tokenize.TokenError, SyntaxError):
        # unbalanced source is reported by ast.parse later
        pass
    return frozenset(rows)


def _target_names(target) -> list[str]:
    if isinstance(target, ast.Name):
        return [target.id]
    if isinstance(target, (ast.Tuple, ast.List)):
        names = []
        for elt in target.elts:
            names.extend(_target_names(elt))
        return names
    if isinstance(target, ast.Starred):
        return _target_names(target.value)
    return []


def _bound_names(nodes: Iterable[ast.AST]) -> set[str]:
    """Names bound in the scope that owns *nodes* (nested scopes excluded)."""

    bound: set[str] = set()
    stack = list(nodes)
    while stack:
        node = stack.pop()
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            bound.add(node.name)
            continue
        if isinstance(node, (ast.Lambda, ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp)):
            continue
        if isinstance(node, ast.Name) and isinstance(node.ctx, (ast.Store, ast.Del)):
            bound.add(node.id)
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            for alias in node.names:
                if alias.name != "*":
                    bound.add(alias.asname or alias.name.split(".")[0])
        elif isinstance(node, ast.ExceptHandler) and node.name:
            bound.add(node.name)
        elif isinstance(node, (ast.MatchAs, ast.MatchStar)) and node.name:
            bound.add(node.name)
        elif isinstance(node, ast.MatchMapping) and node.rest:
            bound.add(node.rest)
        stack.extend(ast.iter_child_nodes(node))
    return bound


class _FreeNames(ast.NodeVisitor):
    """Collect loaded names that no enclosing scope binds."""

    def __init__(self, module_bound: set[str]):
        self.scopes = [module_bound]
        self.free: dict[str, None] = {}

    def _bound(self, name: str) -> bool:
        return any(name in scope for scope in self.scopes)

    def visit_Name(self, node):
        if isinstance(node.ctx, ast.Load) and not self._bound(node.id):
            self.free.setdefault(node.id)

    def _visit_arguments(self, args: ast.arguments):
        for default in [*args.defaults, *args.kw_defaults]:
            if default is not None:
                self.visit(default)
        for arg in [*args.posonlyargs, *args.args, *args.kwonlyargs, args.vararg, args.kwarg]:
            if arg is not None and arg.annotation is not None:
                self.visit(arg.annotation)

    @staticmethod
    def _parameter_names(args: ast.arguments) -> set[str]:
        params = [*args.posonlyargs, *args.args, *args.kwonlyargs, args.vararg, args.kwarg]
        return {a.arg for a in params if a is not None}

    def _visit_function(self, node):
        for decorator in node.decorator_list:
            self.visit(decorator)
        self._visit_arguments(node.args)
        if node.returns is not None:
            self.visit(node.returns)
        declared_global = {
            name
            for stmt in ast.walk(node)
            if isinstance(stmt, ast.Global)
            for name in stmt.names
        }
        self.scopes.append((self._parameter_names(node.args) | _bound_names(node.body)) - declared_global)
        for stmt in node.body:
            self.visit(stmt)
        self.scopes.pop()

    visit_FunctionDef = _visit_function
    visit_AsyncFunctionDef = _visit_function

    def visit_Lambda(self, node):
        self._visit_arguments(node.args)
        self.scopes.append(self._parameter_names(node.args))
        self.visit(node.body)
        self.scopes.pop()

    def visit_ClassDef(self, node):
        for expr in [*node.decorator_list, *node.bases, *(k.value for k in node.keywords)]:
            self.visit(expr)
        self.scopes.append(_bound_names(node.body))
        for stmt in node.body:
            self.visit(stmt)
        self.scopes.pop()

    def _visit_comprehension(self, node, parts):
        generators = node.generators
        self.visit(generators[0].iter)
        bound: set[str] = set()
        for gen in generators:
            bound.update(_target_names(gen.target))
        self.scopes.append(bound)
        for index, gen in enumerate(generators):
            if index:
                self.visit(gen.iter)
            for cond in gen.ifs:
                self.visit(cond)
        for part in parts:
            self.visit(part)
        self.scopes.pop()

    def visit_ListComp(self, node):
        self._visit_comprehension(node, [node.elt])

    visit_SetComp = visit_ListComp
    visit_GeneratorExp = visit_ListComp

    def visit_DictComp(self, node):
        self._visit_comprehension(node, [node.key, node.value])


def free_names(tree: ast.AST, module_bound: set[str] | None = None) -> list[str]:
    """Names *tree* reads without binding them, in first-use order."""

    visitor = _FreeNames(set(module_bound or ()))
    visitor.visit(tree)
    return list(visitor.free)


def _split_free(names: Iterable[str]) -> tuple[frozenset, frozenset]:
    reserved = set(RESERVED_NAMES) | {GOTO_NAME}
    uses = frozenset(n for n in names if n not in reserved and n not in BUILTIN_NAMES)
    builtin_refs = frozenset(n for n in names if n in BUILTIN_NAMES and n not in reserved)
    return uses, builtin_refs


def analyze_code(source: str) -> CellAnalysis:
    """Compute defines/uses for a code cell."""

    pragmas = parse_pragmas(source)
    python_source, bindings = transform_source(source)
    try:
        tree = ast.parse(python_source)
    except SyntaxError as exc:
        logger.warning("cannot analyse cell: %s", exc)
        return CellAnalysis(pragmas=pragmas, error=f"{exc.msg} (line {exc.lineno})")

    defines: set[str] = set()
    mutable: set[str] = set()
    for stmt in tree.body:
        kind = bindings.get(stmt.lineno)
        if isinstance(stmt, (ast.Assign, ast.AnnAssign)) and kind is not None:
            targets = stmt.targets if isinstance(stmt, ast.Assign) else [stmt.target]
            names = [n for t in targets for n in _target_names(t)]
            (defines if kind == BINDING_CONST else mutable).update(names)
        elif isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            defines.add(stmt.name)
        elif isinstance(stmt, (ast.Import, ast.ImportFrom)):
            for alias in stmt.names:
                if alias.name != "*":
                    defines.add(alias.asname or alias.name.split(".")[0])
    defines -= mutable
    defines.discard(GOTO_NAME)

    uses, builtin_refs = _split_free(free_names(tree, _bound_names(tree.body)))
    return CellAnalysis(
        frozenset(defines),
        uses,
        frozenset(mutable),
        builtin_refs,
        pragmas,
    )


def template_expressions(source: str) -> list[str]:
    return [m.group("expr") for m in TEMPLATE_PATTERN.finditer(source or "")]


def analyze_template(source: str) -> CellAnalysis:
    """Uses of a structured-markup cell: free names of every ``${...}`` placeholder."""

    names: dict[str, None] = {}
    for expr in template_expressions(source):
        try:
            tree = ast.parse(expr.strip(), mode="eval")
        except SyntaxError as exc:
            return CellAnalysis(pragmas=parse_pragmas(source), error=f"{exc.msg} in ${{{expr}}}")
        for name in free_names(tree):
            names.setdefault(name)
    uses, builtin_refs = _split_free(names)
    return CellAnalysis(uses=uses, builtin_refs=builtin_refs, pragmas=parse_pragmas(source))


def analyze_cell(source: str, kind: str = KIND_CODE) -> CellAnalysis:
    """Dispatch on cell kind; non-executable kinds have no defines or uses."""

    if kind == KIND_CODE:
        return analyze_code(source)
    if kind == KIND_HTML:
        return analyze_template(source)
    return CellAnalysis(pragmas=parse_pragmas(source))


def annotate_cell(cell) -> CellAnalysis:
    """Analyse *cell* and copy the results onto it."""

    result = analyze_cell(cell.source, cell.kind)
    cell.defines = result.defines
    cell.uses = result.uses
    cell.mutable = result.mutable
    cell.builtin_refs = result.builtin_refs
    cell.analysis_error = result.error
    cell.manual = result.manual
    cell.norun = result.norun
    cell.hidden = PRAGMA_HIDE in result.pragmas
    cell.collapsed = PRAGMA_COLLAPSED in result.pragmas
    cell.label = result.label
    cell.goto = result.goto
    return result


def render_template(source: str, namespace: dict[str, Any]) -> str:
    """Substitute every ``${expr}`` with its value; errors render inline."""

    def substitute(match):
        expr = match.group("expr").strip()
        try:
            value = eval(compile(expr, "<template>", "eval"), {"__builtins__": builtins}, dict(namespace))
        except Exception as exc:
            return f"[Error: {exc}]"
        return "" if value is None else str(value)

    return TEMPLATE_PATTERN.sub(substitute, source or "")


def compile_cell(source: str, params: Iterable[str], exports: Iterable[str], goto: str | None = None, filename: str = "<cell>"):
    """Build the coroutine function that executes a code cell.

    The cell body runs inside ``async def __cell__(<params>)`` and returns a
    mapping of those *exports* that ended up bound.
    """

    python_source, _ = transform_source(source)
    tree = ast.parse(python_source, filename=filename)
    body = list(tree.body)
    if goto:
        body.insert(0, ast.parse(f"{GOTO_NAME} = {goto!r}").body[0])

    names = tuple(sorted(set(exports) | {GOTO_NAME}))
    template = ast.parse(
        f"async def {CELL_FUNCTION}({', '.join(sorted(set(params)))}):\n"
        f"    pass\n"
        f"    {CELL_LOCALS} = locals()\n"
        f"    return {{__k: {CELL_LOCALS}[__k] for __k in {names!r} if __k in {CELL_LOCALS}}}\n",
        filename=filename,
    )
    function = template.body[0]
    function.body = body + function.body[1:]
    ast.fix_missing_locations(template)

    namespace = {"__builtins__": builtins, "__name__": "auditable.cell"}
    exec(compile(template, filename, "exec"), namespace)
    return namespace[CELL_FUNCTION]


def dag_layers(graph) -> dict[Any, int]:
    """Layer index (longest path from a root) for every node of *graph*."""

    if nx is None:
        raise RuntimeError("Graph layout requires networkx to be installed")
    layers = {}
    for depth, generation in enumerate(nx.topological_generations(graph)):
        for node in generation:
            layers[node] = depth
    return layers


def _node_label(cell) -> str:
    head = f"#{cell.id}" + (f" {cell.label}" if cell.label else "")
    if cell.defines:
        head += "\\n" + ", ".join(sorted(cell.defines))
    return head


def visualize_dag(cells, dag, output_path=None):  # pragma: no cover
    """Draw the dependency graph, coloured by cell state, with matplotlib."""

    if nx is None or plt is None:
        raise RuntimeError("Visualization requires networkx and matplotlib to be installed")

    graph = dag.graph.copy()
    by_id = {cell.id: cell for cell in cells}
    for node, layer in dag_layers(graph).items():
        graph.nodes[node]["layer"] = layer
    pos = nx.multipartite_layout(graph, subset_key="layer", align="horizontal")
    colors = [STATE_COLORS.get(by_id[n].state, "#B0BEC5") for n in graph.nodes]
    labels = {n: _node_label(by_id[n]).replace("\\n", "\n") for n in graph.nodes}

    fig, ax = plt.subplots(figsize=(8, 6))
    nx.draw_networkx(graph, pos, ax=ax, labels=labels, node_color=colors, node_size=1600, font_size=8, arrows=True)
    edge_labels = {(u, v): ", ".join(sorted(d.get("names", ()))) for u, v, d in graph.edges(data=True)}
    nx.draw_networkx_edge_labels(graph, pos, edge_labels=edge_labels, ax=ax, font_size=7)
    ax.set_axis_off()
    if output_path:
        fig.savefig(output_path, bbox_inches="tight")
        plt.close(fig)
        print(f"  ✓ DAG rendered → {output_path}")
    else:
        plt.show()


def export_graphviz(cells, dag, output_path):
    """Export the dependency graph as a Graphviz SVG."""

    if pydot is None:
        raise RuntimeError("Graphviz export requires pydot to be installed")

    graph = build_graphviz(cells, dag)
    output_path = Path(output_path)
    if output_path.parent and not output_path.parent.exists():
        output_path.parent.mkdir(parents=True, exist_ok=True)
    graph.write_svg(str(output_path))
    print(f"  ✓ Graphviz DAG exported → {output_path}")


def build_graphviz(cells, dag):
    """Return a ``pydot.Dot`` for the dependency graph."""

    if pydot is None:
        raise RuntimeError("Graphviz export requires pydot to be installed")

    graph = pydot.Dot(
        "auditable_cells",
        graph_type="digraph",
        rankdir="TB",
        splines="spline",
        fontname="Helvetica",
    )
    by_id = {cell.id: cell for cell in cells}
    for node in dag.order:
        cell = by_id[node]
        graph.add_node(
            pydot.Node(
                f"cell_{node}",
                label=f'"{_node_label(cell)}"',
                shape="box",
                style="filled,dashed" if cell.manual else "filled",
                fillcolor=STATE_COLORS.get(cell.state, "#B0BEC5"),
                color="#34495e",
                fontname="Helvetica",
            )
        )
    for src, dst, data in dag.graph.edges(data=True):
        graph.add_edge(
            pydot.Edge(
                f"cell_{src}",
                f"cell_{dst}",
                label=f'"{", ".join(sorted(data.get("names", ())))}"',
                color="#7f8c8d",
                fontsize="9",
            )
        )
    return graph


__all__ = [
    "CellAnalysis",
    "parse_pragmas",
    "transform_source",
    "free_names",
    "analyze_code",
    "analyze_template",
    "analyze_cell",
    "annotate_cell",
    "template_expressions",
    "render_template",
    "compile_cell",
    "dag_layers",
    "visualize_dag",
    "export_graphviz",
    "build_graphviz",
]
