"""Pretty-printer that renders an ATRA AST back into source text.

The output is fully parenthesised so that re-parsing it yields an equal AST.
"""

from __future__ import annotations

from ..constants import HOST_MODULE, INTERP_PREFIX
from . import nodes as ast

INDENT = "  "


def _name(name: str, interp: int | None) -> str:
    if interp is not None:
        return f"{INTERP_PREFIX}{interp}__"
    return name


def format_expr(expr) -> str:
    """Render a single expression."""

    if isinstance(expr, ast.Number):
        return f"{expr.raw}_{expr.suffix}" if expr.suffix else expr.raw
    if isinstance(expr, ast.Name):
        return _name(expr.name, expr.interp)
    if isinstance(expr, ast.Unary):
        sep = " " if expr.op == "not" else ""
        return f"{expr.op}{sep}({format_expr(expr.operand)})"
    if isinstance(expr, ast.Binary):
        return f"({format_expr(expr.left)} {expr.op} {format_expr(expr.right)})"
    if isinstance(expr, ast.FuncCall):
        args = ", ".join(format_expr(a) for a in expr.args)
        return f"{_name(expr.name, expr.interp)}({args})"
    if isinstance(expr, ast.Index):
        indices = ", ".join(format_expr(i) for i in expr.indices)
        return f"{expr.name}[{indices}]"
    if isinstance(expr, ast.IfExpr):
        return (
            f"(if {format_expr(expr.cond)} then {format_expr(expr.then)} "
            f"else {format_expr(expr.orelse)})"
        )
    raise TypeError(f"Cannot format expression {expr!r}")


def _format_block(stmts, depth, out):
    for stmt in stmts:
        _format_stmt(stmt, depth, out)


def _format_if(stmt, depth, out, chained=False):
    pad = INDENT * depth
    head = f"if {format_expr(stmt.cond)} then"
    if chained:
        out[-1] += head
    else:
        out.append(pad + head)
    _format_block(stmt.body, depth + 1, out)
    if stmt.orelse:
        if len(stmt.orelse) == 1 and isinstance(stmt.orelse[0], ast.If):
            out.append(pad + "else ")
            _format_if(stmt.orelse[0], depth, out, chained=True)
        else:
            out.append(pad + "else")
            _format_block(stmt.orelse, depth + 1, out)
    if not chained:
        out.append(pad + "end if")


def _format_stmt(stmt, depth, out):
    pad = INDENT * depth
    if isinstance(stmt, ast.Assign):
        out.append(f"{pad}{stmt.target} := {format_expr(stmt.value)}")
    elif isinstance(stmt, ast.ArrayStore):
        indices = ", ".join(format_expr(i) for i in stmt.indices)
        out.append(f"{pad}{stmt.name}[{indices}] := {format_expr(stmt.value)}")
    elif isinstance(stmt, ast.If):
        _format_if(stmt, depth, out)
    elif isinstance(stmt, ast.For):
        bounds = f"{format_expr(stmt.start)}, {format_expr(stmt.stop)}"
        if stmt.step is not None:
            bounds += f", {format_expr(stmt.step)}"
        out.append(f"{pad}for {stmt.var} := {bounds}")
        _format_block(stmt.body, depth + 1, out)
        out.append(pad + "end for")
    elif isinstance(stmt, ast.While):
        out.append(f"{pad}while {format_expr(stmt.cond)}")
        _format_block(stmt.body, depth + 1, out)
        out.append(pad + "end while")
    elif isinstance(stmt, ast.DoWhile):
        out.append(pad + "do")
        _format_block(stmt.body, depth + 1, out)
        out.append(f"{pad}while {format_expr(stmt.cond)}")
    elif isinstance(stmt, ast.Break):
        out.append(pad + "break")
    elif isinstance(stmt, ast.Call):
        args = ", ".join(format_expr(a) for a in stmt.args)
        out.append(f"{pad}call {_name(stmt.name, stmt.interp)}({args})")
    elif isinstance(stmt, ast.Return):
        value = "" if stmt.value is None else format_expr(stmt.value)
        out.append(f"{pad}call return({value})")
    else:
        raise TypeError(f"Cannot format statement {stmt!r}")


def _format_params(params) -> str:
    parts = []
    for param in params:
        if param.is_array:
            dims = ""
            if param.dims:
                dims = "(" + ", ".join(format_expr(d) for d in param.dims) + ")"
            parts.append(f"{param.name}: array{dims} {param.type}")
        else:
            parts.append(f"{param.name}: {param.type}")
    return ", ".join(parts)


def _format_item(item, out):
    if isinstance(item, ast.GlobalDecl):
        line = f"{item.kind} {item.name}: {item.type}"
        if item.init is not None:
            line += f" = {format_expr(item.init)}"
        out.append(line)
    elif isinstance(item, ast.ImportDecl):
        line = f"import {item.name}({_format_params(item.params)})"
        if item.ret_type:
            line += f": {item.ret_type}"
        if item.interp is not None:
            line += f" = {INTERP_PREFIX}{item.interp}__"
        elif item.module != HOST_MODULE:
            line += f" from {item.module}"
        out.append(line)
    elif isinstance(item, ast.Routine):
        kind = "function" if item.is_function else "subroutine"
        prefix = "export " if item.exported else ""
        line = f"{prefix}{kind} {item.name}({_format_params(item.params)})"
        if item.is_function:
            line += f": {item.ret_type}"
        out.append(line)
        if item.locals:
            out.append("var")
            for local in item.locals:
                out.append(f"{INDENT}{local.name}: {local.type}")
        out.append("begin")
        _format_block(item.body, 1, out)
        out.append("end")
    else:
        raise TypeError(f"Cannot format declaration {item!r}")


def format_program(program: ast.Program) -> str:
    """Render a whole program, one declaration after another."""

    items = program.items or [*program.imports, *program.globals, *program.routines]
    out: list[str] = []
    for item in items:
        _format_item(item, out)
        out.append("")
    return "\n".join(out)


__all__ = ["format_expr", "format_program"]
