"""Single-pass WebAssembly 1.0 code generator for ATRA programs."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Iterable

from ..constants import (
    ATRA_TYPES,
    ENV_MODULE,
    FLOAT_TYPES,
    HOST_MODULE,
    INT_TYPES,
    INTERP_PREFIX,
    MATH_BUILTINS,
    MATH_MODULE,
    MEMORY_EXPORT,
    NATIVE_BUILTINS,
    TYPE_SIZES,
    WASM_ESCAPES,
)
from ..ffi import HostImport, flatten_imports, resolve_host_import
from . import nodes as ast
from . import opcodes as op
from .bytewriter import ByteWriter
from .errors import AtraCompileError

logger = logging.getLogger(__name__)

FLOAT_UNARY_BUILTINS = frozenset(["sqrt", "abs", "floor", "ceil", "trunc", "nearest"])
INT_UNARY_BUILTINS = frozenset(["clz", "ctz", "popcnt"])
INT_BINARY_BUILTINS = frozenset(["rotl", "rotr"])
UNSIGNED_ARITH = frozenset(["div_u", "rem_u", "shr_u"])
UNSIGNED_COMPARE = frozenset(["lt_u", "gt_u", "le_u", "ge_u"])

BUILTIN_ARITY = {
    **{name: 1 for name in FLOAT_UNARY_BUILTINS | INT_UNARY_BUILTINS},
    **{name: 2 for name in INT_BINARY_BUILTINS},
    "copysign": 2,
    "min": 2,
    "max": 2,
    "select": 3,
    "memory_size": 0,
    "memory_grow": 1,
}

INT_RANGES = {"i32": (-(2**31), 2**31 - 1), "i64": (-(2**63), 2**63 - 1)}
F32_MAX = 3.4028234663852886e38


@dataclass
class CompiledModule:
    """Bytes of an emitted module plus the tables needed to instantiate it."""

    binary: bytes
    imports: list = field(default_factory=list)
    exports: dict = field(default_factory=dict)
    memory: str | None = None
    globals: dict = field(default_factory=dict)

    @property
    def owns_memory(self) -> bool:
        return self.memory == "owned"

    @property
    def imports_memory(self) -> bool:
        return self.memory == "imported"

    def hex(self) -> str:
        return self.binary.hex()


def _error(message: str, node=None) -> AtraCompileError:
    line = getattr(node, "line", None) or None
    col = getattr(node, "col", None) if line else None
    return AtraCompileError(message, line, col)


def _is_float(t: str | None) -> bool:
    return t in FLOAT_TYPES


def _is_int(t: str | None) -> bool:
    return t in INT_TYPES


def _literal_value(number: ast.Number, t: str):
    if _is_float(t):
        return float(number.raw)
    return int(float(number.raw)) if number.is_float else int(number.raw)


def _wrap_int(value: int, t: str) -> int:
    bits = 32 if t == "i32" else 64
    value &= (1 << bits) - 1
    if value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def _is_half(expr) -> bool:
    return isinstance(expr, ast.Number) and expr.is_float and not expr.suffix and float(expr.raw) == 0.5


def _is_negative_literal(expr) -> bool:
    if isinstance(expr, ast.Unary) and expr.op == "-" and isinstance(expr.operand, ast.Number):
        return float(expr.operand.raw) != 0
    return False


def _is_untyped_literal(expr) -> bool:
    return isinstance(expr, ast.Number) and expr.suffix is None


def _interp_name(index: int) -> str:
    return f"{INTERP_PREFIX}{index}__"


def iter_nodes(node) -> Iterable:
    """Yield *node* and every statement/expression nested below it."""

    stack = [node]
    while stack:
        current = stack.pop()
        if isinstance(current, list):
            stack.extend(reversed(current))
            continue
        if current is None:
            continue
        yield current
        if isinstance(current, ast.Routine):
            stack.append(current.body)
            stack.append([d for p in current.params for d in p.dims])
        elif isinstance(current, ast.Unary):
            stack.append(current.operand)
        elif isinstance(current, ast.Binary):
            stack.append([current.left, current.right])
        elif isinstance(current, (ast.FuncCall, ast.Call)):
            stack.append(current.args)
        elif isinstance(current, ast.Index):
            stack.append(current.indices)
        elif isinstance(current, ast.IfExpr):
            stack.append([current.cond, current.then, current.orelse])
        elif isinstance(current, ast.Assign):
            stack.append(current.value)
        elif isinstance(current, ast.ArrayStore):
            stack.append([*current.indices, current.value])
        elif isinstance(current, ast.If):
            stack.append([current.cond, current.body, current.orelse])
        elif isinstance(current, ast.For):
            stack.append([current.start, current.stop, current.step, current.body])
        elif isinstance(current, ast.While):
            stack.append([current.cond, current.body])
        elif isinstance(current, ast.DoWhile):
            stack.append([current.body, current.cond])
        elif isinstance(current, ast.Return):
            stack.append(current.value)


class CodeGenerator:
    """Emit a complete module for *program*.

    ``imports`` is the caller's host namespace (nested mappings allowed),
    ``interp_values`` maps interpolation indices to callables, and
    ``import_memory`` switches the module to an ``env.memory`` import.
    """

    def __init__(self, program: ast.Program, imports: Any = None, interp_values=None, import_memory: bool = False):
        self.program = program
        self.host = flatten_imports(imports)
        self.interp_values = dict(interp_values or {})
        self.import_memory = import_memory

        self.routines: dict[str, ast.Routine] = {}
        self.globals: dict[str, tuple[int, str, bool]] = {}
        self.imports: list[HostImport] = []
        self.import_by_name: dict[str, HostImport] = {}
        self.func_index: dict[str, int] = {}
        self.types: dict[tuple, int] = {}
        self.needs_memory = False

    # Discovery

    def _collect_routines(self):
        for routine in self.program.routines:
            if routine.name in self.routines:
                raise _error(f"Duplicate routine {routine.name}", routine)
            self.routines[routine.name] = routine

    def _discover_calls(self) -> dict[str, list]:
        """Return called names in first-use order with every call node."""

        used: dict[str, list] = {}
        for routine in self.program.routines:
            for node in iter_nodes(routine):
                if isinstance(node, (ast.FuncCall, ast.Call)):
                    name = node.name if node.interp is None else _interp_name(node.interp)
                    used.setdefault(name, []).append(node)
                elif isinstance(node, ast.Binary) and node.op == "**" and not _is_half(node.right):
                    used.setdefault("pow", []).append(node)
                elif isinstance(node, (ast.Index, ast.ArrayStore)):
                    self.needs_memory = True
            if any(p.is_array for p in routine.params):
                self.needs_memory = True
        if "memory_size" in used or "memory_grow" in used:
            self.needs_memory = True
        return used

    def _resolve_imports(self, used: dict[str, list]):
        declared = {}
        for decl in self.program.imports:
            if decl.name in declared:
                raise _error(f"Duplicate import {decl.name}", decl)
            declared[decl.name] = decl

        math_imports = []
        host_imports = []
        for name, call_nodes in used.items():
            first = call_nodes[0]
            if name in self.routines or name in ATRA_TYPES or name in NATIVE_BUILTINS:
                continue
            if name.startswith("wasm."):
                if name[5:] not in WASM_ESCAPES:
                    raise _error(f"Unknown wasm escape {name}", first)
                continue
            if name in declared:
                continue
            if name in MATH_BUILTINS:
                arity = MATH_BUILTINS[name]
                math_imports.append(HostImport(name, ["f64"] * arity, "f64", module=MATH_MODULE))
                continue
            arities = {len(n.args) for n in call_nodes if not isinstance(n, ast.Binary)}
            if name.startswith(INTERP_PREFIX):
                index = int(name[len(INTERP_PREFIX) : -2])
                func = self.interp_values.get(index)
                if not callable(func):
                    raise _error(f"Interpolation {index} is not a callable", first)
                spec = HostImport(name, None, "f64", func, interp=index)
            else:
                spec = resolve_host_import(self.host, name)
                if spec is None:
                    raise _error(f"Undefined function {name}", first)
            if spec.params is None:
                if len(arities) > 1:
                    raise _error(f"Inconsistent argument count for host function {name}", first)
                arity = arities.pop() if arities else 0
                spec = HostImport(spec.name, ["f64"] * arity, spec.result, spec.func, spec.module, spec.interp)
            host_imports.append(spec)

        explicit = []
        for decl in self.program.imports:
            params = [p.type for p in decl.params]
            if decl.interp is not None:
                func = self.interp_values.get(decl.interp)
                if not callable(func):
                    raise _error(f"Interpolation {decl.interp} is not a callable", decl)
                explicit.append(
                    HostImport(decl.name, params, decl.ret_type, func, HOST_MODULE, decl.interp,
                               field_name=_interp_name(decl.interp))
                )
            else:
                key = decl.name if decl.module == HOST_MODULE else f"{decl.module}.{decl.name}"
                entry = resolve_host_import(self.host, key)
                func = entry.func if entry else None
                explicit.append(HostImport(decl.name, params, decl.ret_type, func, decl.module))

        for spec in [*math_imports, *explicit, *host_imports]:
            self.import_by_name[spec.name] = spec
            self.func_index[spec.name] = len(self.imports)
            self.imports.append(spec)

    def _intern(self, params, result) -> int:
        key = (tuple(params), result)
        if key not in self.types:
            self.types[key] = len(self.types)
        return self.types[key]

    def routine_signature(self, routine: ast.Routine):
        params = ["i32" if p.is_array else p.type for p in routine.params]
        return params, routine.ret_type

    def _constant(self, decl: ast.GlobalDecl):
        init = decl.init
        if init is None:
            return 0.0 if _is_float(decl.type) else 0
        negate = False
        if isinstance(init, ast.Unary) and init.op == "-" and isinstance(init.operand, ast.Number):
            negate = True
            init = init.operand
        if not isinstance(init, ast.Number):
            raise _error("Global initializer must be a constant expression", decl)
        value = _literal_value(init, decl.type)
        if negate:
            value = -value
        if decl.type in INT_RANGES:
            low, high = INT_RANGES[decl.type]
            if not low <= value <= high:
                raise _error(f"Constant {value} out of range for {decl.type}", decl)
        elif decl.type == "f32" and abs(value) > F32_MAX:
            raise _error(f"Constant {value} out of range for f32", decl)
        return value

    # Emission

    def generate(self) -> CompiledModule:
        self._collect_routines()
        used = self._discover_calls()
        self._resolve_imports(used)

        for index, decl in enumerate(self.program.globals):
            if decl.name in self.globals:
                raise _error(f"Duplicate global {decl.name}", decl)
            self.globals[decl.name] = (index, decl.type, decl.mutable)

        import_types = [self._intern(spec.params, spec.result) for spec in self.imports]
        routine_types = []
        for offset, routine in enumerate(self.program.routines):
            self.func_index[routine.name] = len(self.imports) + offset
            routine_types.append(self._intern(*self.routine_signature(routine)))

        bodies = [FunctionEmitter(self, routine).emit() for routine in self.program.routines]

        memory = None
        if self.import_memory:
            memory = "imported"
        elif self.needs_memory:
            memory = "owned"

        out = ByteWriter()
        out.bytes(op.MAGIC)
        out.bytes(op.VERSION)

        section = ByteWriter()
        section.u32(len(self.types))
        for params, result in self.types:
            section.byte(op.FUNC_TYPE)
            section.vector(params, lambda w, t: w.byte(op.TYPE_CODES[t]))
            section.vector([result] if result else [], lambda w, t: w.byte(op.TYPE_CODES[t]))
        out.section(op.SECTION_TYPE, section)

        if self.imports or memory == "imported":
            section = ByteWriter()
            section.u32(len(self.imports) + (1 if memory == "imported" else 0))
            for spec, type_index in zip(self.imports, import_types):
                section.name(spec.module)
                section.name(spec.field_name)
                section.byte(op.EXTERNAL_FUNC)
                section.u32(type_index)
            if memory == "imported":
                section.name(ENV_MODULE)
                section.name(MEMORY_EXPORT)
                section.byte(op.EXTERNAL_MEMORY)
                section.byte(op.LIMITS_MIN_ONLY)
                section.u32(1)
            out.section(op.SECTION_IMPORT, section)

        section = ByteWriter()
        section.vector(routine_types, lambda w, idx: w.u32(idx))
        out.section(op.SECTION_FUNCTION, section)

        if memory == "owned":
            section = ByteWriter()
            section.u32(1)
            section.byte(op.LIMITS_MIN_ONLY)
            section.u32(1)
            out.section(op.SECTION_MEMORY, section)

        if self.program.globals:
            section = ByteWriter()
            section.u32(len(self.program.globals))
            for decl in self.program.globals:
                value = self._constant(decl)
                section.byte(op.TYPE_CODES[decl.type])
                section.byte(1 if decl.mutable else 0)
                _emit_const(section, decl.type, value)
                section.byte(op.END)
            out.section(op.SECTION_GLOBAL, section)

        exports = {}
        section = ByteWriter()
        section.u32(len(self.program.routines) + (1 if memory == "owned" else 0))
        for routine in self.program.routines:
            section.name(routine.name)
            section.byte(op.EXTERNAL_FUNC)
            section.u32(self.func_index[routine.name])
            exports[routine.name] = self.routine_signature(routine)
        if memory == "owned":
            section.name(MEMORY_EXPORT)
            section.byte(op.EXTERNAL_MEMORY)
            section.u32(0)
        out.section(op.SECTION_EXPORT, section)

        section = ByteWriter()
        section.u32(len(bodies))
        for body in bodies:
            section.u32(len(body))
            section.bytes(body)
        out.section(op.SECTION_CODE, section)

        binary = out.getvalue()
        logger.debug(
            "compiled %d routines, %d imports, %d bytes",
            len(self.program.routines),
            len(self.imports),
            len(binary),
        )
        return CompiledModule(
            binary,
            list(self.imports),
            exports,
            memory,
            {name: (t, mutable) for name, (_, t, mutable) in self.globals.items()},
        )


def _emit_const(writer: ByteWriter, t: str, value) -> None:
    writer.byte(op.CONST[t])
    if t == "i32" or t == "i64":
        writer.sleb(_wrap_int(int(value), t))
    elif t == "f32":
        writer.f32(float(value))
    else:
        writer.f64(float(value))


class FunctionEmitter:
    """Lower one routine into a code-section body."""

    def __init__(self, gen: CodeGenerator, routine: ast.Routine):
        self.gen = gen
        self.routine = routine
        self.code = ByteWriter()
        self.locals: dict[str, tuple[int, str]] = {}
        self.arrays: dict[str, ast.Param] = {}
        self.local_types: list[str] = []
        self.return_local: int | None = None
        self.depth = 0
        self.loops: list[int] = []

        for index, param in enumerate(routine.params):
            if param.name in self.locals:
                raise _error(f"Duplicate parameter {param.name}", routine)
            self.locals[param.name] = (index, "i32" if param.is_array else param.type)
            if param.is_array:
                self.arrays[param.name] = param
        next_index = len(routine.params)
        for local in routine.locals:
            if local.name in self.locals:
                raise _error(f"Duplicate local {local.name}", routine)
            self.locals[local.name] = (next_index, local.type)
            self.local_types.append(local.type)
            next_index += 1
        if routine.is_function:
            self.return_local = next_index
            self.local_types.append(routine.ret_type)

    def emit(self) -> bytes:
        for stmt in self.routine.body:
            self.emit_stmt(stmt)
        if self.return_local is not None:
            self.code.byte(op.LOCAL_GET)
            self.code.u32(self.return_local)
        self.code.byte(op.END)

        # scratch locals are allocated while emitting, so declare them afterwards
        body = ByteWriter()
        runs: list[list] = []
        for t in self.local_types:
            if runs and runs[-1][1] == t:
                runs[-1][0] += 1
            else:
                runs.append([1, t])
        body.u32(len(runs))
        for count, t in runs:
            body.u32(count)
            body.byte(op.TYPE_CODES[t])
        body.bytes(self.code.buf)
        return body.getvalue()

    def scratch(self, t: str) -> int:
        """Allocate an anonymous local of type *t* and return its index."""

        index = len(self.routine.params) + len(self.local_types)
        self.local_types.append(t)
        return index

    # Name resolution

    def lookup(self, name: str, node=None):
        """Return ``(kind, index, type)`` for a scalar binding."""

        if name in self.locals:
            index, t = self.locals[name]
            return "local", index, t
        if self.return_local is not None and name == self.routine.name:
            return "local", self.return_local, self.routine.ret_type
        if name in self.gen.globals:
            index, t, _ = self.gen.globals[name]
            return "global", index, t
        raise _error(f"Undefined variable {name}", node)

    def array(self, name: str, node) -> ast.Param:
        if name not in self.arrays:
            raise _error(f"{name} is not an array parameter", node)
        return self.arrays[name]

    # Statements

    def emit_block(self, stmts):
        for stmt in stmts:
            self.emit_stmt(stmt)

    def emit_stmt(self, stmt):
        code = self.code
        if isinstance(stmt, ast.Assign):
            kind, index, t = self.lookup(stmt.target, stmt)
            if kind == "global" and not self.gen.globals[stmt.target][2]:
                raise _error(f"Cannot assign to constant {stmt.target}", stmt)
            self.emit_expr(stmt.value, t)
            code.byte(op.LOCAL_SET if kind == "local" else op.GLOBAL_SET)
            code.u32(index)
        elif isinstance(stmt, ast.ArrayStore):
            param = self.array(stmt.name, stmt)
            self.emit_address(param, stmt.indices, stmt)
            self.emit_expr(stmt.value, param.type)
            code.byte(op.STORE[param.type])
            code.u32(op.ALIGN[param.type])
            code.u32(0)
        elif isinstance(stmt, ast.If):
            self.emit_expr(stmt.cond, "i32")
            code.byte(op.IF)
            code.byte(op.BLOCK_VOID)
            self.depth += 1
            self.emit_block(stmt.body)
            if stmt.orelse:
                code.byte(op.ELSE)
                self.emit_block(stmt.orelse)
            code.byte(op.END)
            self.depth -= 1
        elif isinstance(stmt, ast.For):
            self.emit_for(stmt)
        elif isinstance(stmt, ast.While):
            block = self._open_loop()
            self.emit_expr(stmt.cond, "i32")
            code.byte(op.EQZ["i32"])
            self._branch(op.BR_IF, block)
            self.emit_block(stmt.body)
            self._branch(op.BR, block + 1)
            self._close_loop()
        elif isinstance(stmt, ast.DoWhile):
            block = self._open_loop()
            self.emit_block(stmt.body)
            self.emit_expr(stmt.cond, "i32")
            self._branch(op.BR_IF, block + 1)
            self._close_loop()
        elif isinstance(stmt, ast.Break):
            if not self.loops:
                raise _error("break outside of a loop", stmt)
            self._branch(op.BR, self.loops[-1])
        elif isinstance(stmt, ast.Call):
            result = self.emit_call(stmt, None)
            if result is not None:
                code.byte(op.DROP)
        elif isinstance(stmt, ast.Return):
            if self.routine.is_function:
                if stmt.value is None:
                    code.byte(op.LOCAL_GET)
                    code.u32(self.return_local)
                else:
                    self.emit_expr(stmt.value, self.routine.ret_type)
            elif stmt.value is not None:
                raise _error(f"Subroutine {self.routine.name} cannot return a value", stmt)
            code.byte(op.RETURN)
        else:
            raise _error(f"Unsupported statement {type(stmt).__name__}", stmt)

    def _open_loop(self) -> int:
        """Open ``block`` + ``loop``; return the label depth of the block."""

        self.code.byte(op.BLOCK)
        self.code.byte(op.BLOCK_VOID)
        self.depth += 1
        block = self.depth
        self.code.byte(op.LOOP)
        self.code.byte(op.BLOCK_VOID)
        self.depth += 1
        self.loops.append(block)
        return block

    def _close_loop(self):
        self.code.byte(op.END)
        self.code.byte(op.END)
        self.depth -= 2
        self.loops.pop()

    def _branch(self, opcode: int, label: int):
        self.code.byte(opcode)
        self.code.u32(self.depth - label)

    def emit_for(self, stmt: ast.For):
        code = self.code
        kind, index, t = self.lookup(stmt.var, stmt)
        if kind != "local":
            raise _error(f"Loop variable {stmt.var} must be a local", stmt)
        self.emit_expr(stmt.start, t)
        code.byte(op.LOCAL_SET)
        code.u32(index)

        block = self._open_loop()
        code.byte(op.LOCAL_GET)
        code.u32(index)
        self.emit_expr(stmt.stop, t)
        code.byte(op.BINARY[t]["<=" if _is_negative_literal(stmt.step) else ">="])
        self._branch(op.BR_IF, block)

        self.emit_block(stmt.body)

        code.byte(op.LOCAL_GET)
        code.u32(index)
        if stmt.step is None:
            _emit_const(code, t, 1)
        else:
            self.emit_expr(stmt.step, t)
        code.byte(op.BINARY[t]["+"])
        code.byte(op.LOCAL_SET)
        code.u32(index)
        self._branch(op.BR, block + 1)
        self._close_loop()

    def emit_address(self, param: ast.Param, indices: list, node):
        code = self.code
        size = TYPE_SIZES[param.type]
        base_index = self.locals[param.name][0]
        code.byte(op.LOCAL_GET)
        code.u32(base_index)
        if len(indices) == 1:
            self.emit_expr(indices[0], "i32")
        elif len(indices) == 3 and not param.dims:
            self.emit_expr(indices[0], "i32")
            self.emit_expr(indices[1], "i32")
            code.byte(op.BINARY["i32"]["*"])
            self.emit_expr(indices[2], "i32")
            code.byte(op.BINARY["i32"]["+"])
        elif len(indices) == 2 and len(param.dims) == 2:
            self.emit_expr(indices[0], "i32")
            self.emit_expr(param.dims[1], "i32")
            code.byte(op.BINARY["i32"]["*"])
            self.emit_expr(indices[1], "i32")
            code.byte(op.BINARY["i32"]["+"])
        else:
            raise _error(f"Unsupported index pattern for {param.name}", node)
        _emit_const(code, "i32", size)
        code.byte(op.BINARY["i32"]["*"])
        code.byte(op.BINARY["i32"]["+"])

    # Types

    def convert(self, source: str | None, target: str, node=None):
        if source is None:
            raise _error("Subroutine call used as a value", node)
        if source == target:
            return
        self.code.byte(op.CONVERSIONS[(source, target)])

    def _operand_type(self, left, right) -> str:
        if _is_untyped_literal(left) and not _is_untyped_literal(right):
            return self.infer(right)
        return self.infer(left)

    def infer(self, expr) -> str | None:
        if isinstance(expr, ast.Number):
            return expr.suffix or ("f64" if expr.is_float else "i32")
        if isinstance(expr, ast.Name):
            if expr.name in self.arrays:
                return "i32"
            return self.lookup(expr.name, expr)[2]
        if isinstance(expr, ast.Unary):
            return "i32" if expr.op == "not" else self.infer(expr.operand)
        if isinstance(expr, ast.Binary):
            if expr.op in op.COMPARISONS or expr.op in ("and", "or"):
                return "i32"
            return self.infer(expr.left)
        if isinstance(expr, ast.FuncCall):
            return self._infer_call(expr)
        if isinstance(expr, ast.Index):
            return self.array(expr.name, expr).type
        if isinstance(expr, ast.IfExpr):
            return self.infer(expr.then)
        raise _error(f"Unsupported expression {type(expr).__name__}", expr)

    def _infer_call(self, call) -> str | None:
        name = call.name if call.interp is None else _interp_name(call.interp)
        first = self.infer(call.args[0]) if call.args else None
        if name in self.gen.routines:
            return self.gen.routines[name].ret_type
        if name in ATRA_TYPES:
            return name
        if name in FLOAT_UNARY_BUILTINS or name == "copysign":
            return first if _is_float(first) else "f64"
        if name in ("min", "max", "select"):
            return first
        if name in INT_UNARY_BUILTINS or name in INT_BINARY_BUILTINS:
            return first if _is_int(first) else "i32"
        if name in ("memory_size", "memory_grow"):
            return "i32"
        if name.startswith("wasm."):
            escape = name[5:]
            if escape in op.REINTERPRET:
                return op.REINTERPRET[escape][1]
            if escape in UNSIGNED_COMPARE or escape.startswith("trunc_sat"):
                return "i32"
            return first if _is_int(first) else "i32"
        spec = self.gen.import_by_name.get(name)
        return spec.result if spec else "f64"

    # Expressions

    def emit_expr(self, expr, expected: str | None = None) -> str:
        """Emit *expr* leaving a value of type *expected* on the stack."""

        code = self.code
        t = expected or self.infer(expr)
        if t is None:
            raise _error("Subroutine call used as a value", expr)

        if isinstance(expr, ast.Number):
            _emit_const(code, t, _literal_value(expr, t))
        elif isinstance(expr, ast.Name):
            if expr.name in self.arrays:
                code.byte(op.LOCAL_GET)
                code.u32(self.locals[expr.name][0])
                self.convert("i32", t, expr)
            else:
                kind, index, actual = self.lookup(expr.name, expr)
                code.byte(op.LOCAL_GET if kind == "local" else op.GLOBAL_GET)
                code.u32(index)
                self.convert(actual, t, expr)
        elif isinstance(expr, ast.Unary):
            self.emit_unary(expr, t)
        elif isinstance(expr, ast.Binary):
            self.emit_binary(expr, t)
        elif isinstance(expr, ast.FuncCall):
            actual = self.emit_call(expr, t)
            self.convert(actual, t, expr)
        elif isinstance(expr, ast.Index):
            param = self.array(expr.name, expr)
            self.emit_address(param, expr.indices, expr)
            code.byte(op.LOAD[param.type])
            code.u32(op.ALIGN[param.type])
            code.u32(0)
            self.convert(param.type, t, expr)
        elif isinstance(expr, ast.IfExpr):
            self.emit_expr(expr.cond, "i32")
            code.byte(op.IF)
            code.byte(op.TYPE_CODES[t])
            self.depth += 1
            self.emit_expr(expr.then, t)
            code.byte(op.ELSE)
            self.emit_expr(expr.orelse, t)
            code.byte(op.END)
            self.depth -= 1
        else:
            raise _error(f"Unsupported expression {type(expr).__name__}", expr)
        return t

    def emit_unary(self, expr: ast.Unary, t: str):
        code = self.code
        if expr.op == "-":
            if isinstance(expr.operand, ast.Number):
                _emit_const(code, t, -_literal_value(expr.operand, t))
            elif _is_float(t):
                self.emit_expr(expr.operand, t)
                code.byte(op.FLOAT_UNARY[t]["neg"])
            else:
                _emit_const(code, t, 0)
                self.emit_expr(expr.operand, t)
                code.byte(op.BINARY[t]["-"])
        elif expr.op == "not":
            self.emit_expr(expr.operand, "i32")
            code.byte(op.EQZ["i32"])
            self.convert("i32", t, expr)
        elif expr.op == "~":
            it = t if _is_int(t) else self.infer(expr.operand)
            if not _is_int(it):
                raise _error("Operator ~ requires an integer operand", expr)
            self.emit_expr(expr.operand, it)
            _emit_const(code, it, -1)
            code.byte(op.BINARY[it]["^"])
            self.convert(it, t, expr)
        else:
            raise _error(f"Unknown unary operator {expr.op}", expr)

    def emit_binary(self, expr: ast.Binary, t: str):
        code = self.code
        if expr.op in op.COMPARISONS:
            operand = self._operand_type(expr.left, expr.right)
            self.emit_expr(expr.left, operand)
            self.emit_expr(expr.right, operand)
            code.byte(op.BINARY[operand][expr.op])
            self.convert("i32", t, expr)
        elif expr.op in ("and", "or"):
            self.emit_expr(expr.left, "i32")
            self.emit_expr(expr.right, "i32")
            code.byte(op.BINARY["i32"]["&" if expr.op == "and" else "|"])
            self.convert("i32", t, expr)
        elif expr.op == "**":
            if _is_half(expr.right):
                st = t if _is_float(t) else "f64"
                self.emit_expr(expr.left, st)
                code.byte(op.FLOAT_UNARY[st]["sqrt"])
                self.convert(st, t, expr)
            else:
                self.emit_expr(expr.left, "f64")
                self.emit_expr(expr.right, "f64")
                code.byte(op.CALL)
                code.u32(self.gen.func_index["pow"])
                self.convert("f64", t, expr)
        elif expr.op in op.INT_ONLY_OPS and not _is_int(t):
            # integer operators run in the operand type, then widen to the context
            it = self._operand_type(expr.left, expr.right)
            if not _is_int(it):
                raise _error(f"Operator {expr.op} requires integer operands", expr)
            self.emit_expr(expr.left, it)
            self.emit_expr(expr.right, it)
            code.byte(op.BINARY[it][expr.op])
            self.convert(it, t, expr)
        else:
            self.emit_expr(expr.left, t)
            self.emit_expr(expr.right, t)
            code.byte(op.BINARY[t][expr.op])

    def _check_arity(self, call, expected: int, name: str):
        if len(call.args) != expected:
            raise _error(f"{name} expects {expected} argument(s), got {len(call.args)}", call)

    def emit_call(self, call, expected: str | None) -> str | None:
        """Emit a call and return the type of the value it leaves (None for void)."""

        code = self.code
        name = call.name if call.interp is None else _interp_name(call.interp)
        args = call.args

        if name in self.gen.routines:
            routine = self.gen.routines[name]
            self._check_arity(call, len(routine.params), name)
            for arg, param in zip(args, routine.params):
                self.emit_expr(arg, "i32" if param.is_array else param.type)
            code.byte(op.CALL)
            code.u32(self.gen.func_index[name])
            return routine.ret_type

        if name in ATRA_TYPES:
            self._check_arity(call, 1, name)
            source = self.infer(args[0])
            self.emit_expr(args[0], source)
            self.convert(source, name, call)
            return name

        if name in NATIVE_BUILTINS:
            self._check_arity(call, BUILTIN_ARITY[name], name)
            return self._emit_builtin(name, call, expected)

        if name.startswith("wasm."):
            return self._emit_escape(name[5:], call, expected)

        spec = self.gen.import_by_name.get(name)
        if spec is None:
            raise _error(f"Undefined function {name}", call)
        self._check_arity(call, len(spec.params), name)
        for arg, ptype in zip(args, spec.params):
            self.emit_expr(arg, ptype)
        code.byte(op.CALL)
        code.u32(self.gen.func_index[name])
        return spec.result

    def _emit_builtin(self, name: str, call, expected: str | None) -> str:
        code = self.code
        args = call.args
        first = self.infer(args[0]) if args else None

        if name in FLOAT_UNARY_BUILTINS or name == "copysign":
            t = expected if _is_float(expected) else (first if _is_float(first) else "f64")
            for arg in args:
                self.emit_expr(arg, t)
            table = op.FLOAT_UNARY if name != "copysign" else op.FLOAT_BINARY
            code.byte(table[t][name])
            return t
        if name in ("min", "max"):
            t = expected or first
            if _is_float(t):
                self.emit_expr(args[0], t)
                self.emit_expr(args[1], t)
                code.byte(op.FLOAT_BINARY[t][name])
            else:
                a, b = self.scratch(t), self.scratch(t)
                self.emit_expr(args[0], t)
                code.byte(op.LOCAL_TEE)
                code.u32(a)
                self.emit_expr(args[1], t)
                code.byte(op.LOCAL_TEE)
                code.u32(b)
                for index in (a, b):
                    code.byte(op.LOCAL_GET)
                    code.u32(index)
                code.byte(op.BINARY[t]["<" if name == "min" else ">"])
                code.byte(op.SELECT)
            return t
        if name == "select":
            t = expected or first
            self.emit_expr(args[0], t)
            self.emit_expr(args[1], t)
            self.emit_expr(args[2], "i32")
            code.byte(op.SELECT)
            return t
        if name in INT_UNARY_BUILTINS or name in INT_BINARY_BUILTINS:
            t = expected if _is_int(expected) else (first if _is_int(first) else "i32")
            for arg in args:
                self.emit_expr(arg, t)
            table = op.INT_UNARY if name in INT_UNARY_BUILTINS else op.INT_ROTATE
            code.byte(table[t][name])
            return t
        if name == "memory_size":
            code.byte(op.MEMORY_SIZE)
            code.byte(0x00)
            return "i32"
        if name == "memory_grow":
            self.emit_expr(args[0], "i32")
            code.byte(op.MEMORY_GROW)
            code.byte(0x00)
            return "i32"
        raise _error(f"Unknown builtin {name}", call)

    def _emit_escape(self, escape: str, call, expected: str | None) -> str:
        code = self.code
        args = call.args
        first = self.infer(args[0]) if args else None
        label = f"wasm.{escape}"

        if escape in UNSIGNED_ARITH:
            self._check_arity(call, 2, label)
            t = expected if _is_int(expected) else (first if _is_int(first) else "i32")
            self.emit_expr(args[0], t)
            self.emit_expr(args[1], t)
            code.byte(op.UNSIGNED[t][escape])
            return t
        if escape in UNSIGNED_COMPARE:
            self._check_arity(call, 2, label)
            t = self._operand_type(args[0], args[1])
            if not _is_int(t):
                t = "i32"
            self.emit_expr(args[0], t)
            self.emit_expr(args[1], t)
            code.byte(op.UNSIGNED[t][escape])
            return "i32"
        if escape in op.REINTERPRET:
            self._check_arity(call, 1, label)
            source, target, opcode = op.REINTERPRET[escape]
            self.emit_expr(args[0], source)
            code.byte(opcode)
            return target
        if escape.startswith("extend"):
            self._check_arity(call, 1, label)
            t = expected if _is_int(expected) else (first if _is_int(first) else "i32")
            if escape not in op.SIGN_EXTEND[t]:
                raise _error(f"{label} is not available for {t}", call)
            self.emit_expr(args[0], t)
            code.byte(op.SIGN_EXTEND[t][escape])
            return t
        if escape in ("trunc_sat_s", "trunc_sat_u"):
            self._check_arity(call, 1, label)
            target = expected if _is_int(expected) else "i32"
            source = first if _is_float(first) else "f64"
            self.emit_expr(args[0], source)
            code.byte(op.PREFIX_FC)
            code.u32(op.TRUNC_SAT[(target, source, escape.endswith("_s"))])
            return target
        raise _error(f"Unknown wasm escape {label}", call)


def generate(program: ast.Program, imports=None, interp_values=None, import_memory: bool = False) -> CompiledModule:
    """Compile a parsed program into a :class:`CompiledModule`."""

    return CodeGenerator(program, imports, interp_values, import_memory).generate()


__all__ = ["CompiledModule", "CodeGenerator", "FunctionEmitter", "generate", "iter_nodes"]
