"""AST node types produced by the ATRA parser.

Source positions are carried on every node but excluded from equality so that
two parses of equivalent text compare equal.
"""

from __future__ import annotations

from dataclasses import dataclass, field


def _pos():
    return field(default=0, compare=False, repr=False)


# Expressions


@dataclass
class Number:
    raw: str
    is_float: bool = False
    suffix: str | None = None
    line: int = _pos()
    col: int = _pos()


@dataclass
class Name:
    name: str
    interp: int | None = None
    line: int = _pos()
    col: int = _pos()


@dataclass
class Unary:
    op: str
    operand: object
    line: int = _pos()
    col: int = _pos()


@dataclass
class Binary:
    op: str
    left: object
    right: object
    line: int = _pos()
    col: int = _pos()


@dataclass
class FuncCall:
    name: str
    args: list
    interp: int | None = None
    line: int = _pos()
    col: int = _pos()


@dataclass
class Index:
    name: str
    indices: list
    line: int = _pos()
    col: int = _pos()


@dataclass
class IfExpr:
    cond: object
    then: object
    orelse: object
    line: int = _pos()
    col: int = _pos()


# Statements


@dataclass
class Assign:
    target: str
    value: object
    line: int = _pos()
    col: int = _pos()


@dataclass
class ArrayStore:
    name: str
    indices: list
    value: object
    line: int = _pos()
    col: int = _pos()


@dataclass
class If:
    cond: object
    body: list
    orelse: list = field(default_factory=list)
    line: int = _pos()
    col: int = _pos()


@dataclass
class For:
    var: str
    start: object
    stop: object
    step: object | None
    body: list
    line: int = _pos()
    col: int = _pos()


@dataclass
class While:
    cond: object
    body: list
    line: int = _pos()
    col: int = _pos()


@dataclass
class DoWhile:
    body: list
    cond: object
    line: int = _pos()
    col: int = _pos()


@dataclass
class Break:
    line: int = _pos()
    col: int = _pos()


@dataclass
class Call:
    name: str
    args: list
    interp: int | None = None
    line: int = _pos()
    col: int = _pos()


@dataclass
class Return:
    value: object | None = None
    line: int = _pos()
    col: int = _pos()


# Declarations


@dataclass
class Param:
    name: str
    type: str
    is_array: bool = False
    dims: list = field(default_factory=list)


@dataclass
class Local:
    name: str
    type: str


@dataclass
class Routine:
    """A function (``ret_type`` set) or a subroutine (``ret_type`` is None)."""

    name: str
    params: list
    ret_type: str | None
    locals: list
    body: list
    exported: bool = False
    line: int = _pos()
    col: int = _pos()

    @property
    def is_function(self) -> bool:
        return self.ret_type is not None


@dataclass
class GlobalDecl:
    kind: str
    name: str
    type: str
    init: object | None = None
    line: int = _pos()
    col: int = _pos()

    @property
    def mutable(self) -> bool:
        return self.kind == "var"


@dataclass
class ImportDecl:
    name: str
    params: list
    ret_type: str | None
    module: str = "host"
    interp: int | None = None
    line: int = _pos()
    col: int = _pos()


@dataclass
class Program:
    imports: list = field(default_factory=list)
    globals: list = field(default_factory=list)
    routines: list = field(default_factory=list)
    items: list = field(default_factory=list, compare=False, repr=False)


__all__ = [
    "Number",
    "Name",
    "Unary",
    "Binary",
    "FuncCall",
    "Index",
    "IfExpr",
    "Assign",
    "ArrayStore",
    "If",
    "For",
    "While",
    "DoWhile",
    "Break",
    "Call",
    "Return",
    "Param",
    "Local",
    "Routine",
    "GlobalDecl",
    "ImportDecl",
    "Program",
]
