"""Compile-and-instantiate front-end for ATRA on top of wasmtime.

The entry point :func:`atra` mirrors a tagged template: it accepts either a
single source string or a sequence of string fragments followed by the
values that sit between them.  Numbers and strings are spliced into the
source; callables become host imports under reserved ``__INTERP_N__`` names.

    >>> kernel = atra("function sqr(x: f64): f64 begin sqr := x*x end")
    >>> kernel.sqr(3)
    9.0
"""

from __future__ import annotations

import logging
import math
import struct
from types import SimpleNamespace
from typing import Any, Callable, Sequence

try:
    import wasmtime
except ModuleNotFoundError:  # pragma: no cover
    wasmtime = None

from ..constants import FLOAT_TYPES, HOST_MODULE, INTERP_PREFIX, MATH_MODULE, PAGE_SIZE
from ..ffi import HostImport, flatten_imports, resolve_host_import
from .codegen import CompiledModule, generate
from .errors import AtraLinkError, AtraMemoryError
from .parser import parse

logger = logging.getLogger(__name__)

STRUCT_CODES = {"i32": "i", "i64": "q", "f32": "f", "f64": "d"}


def _require_wasmtime():
    if wasmtime is None:
        raise RuntimeError("Instantiating ATRA modules requires wasmtime to be installed")


def _ieee(fn: Callable[..., float]) -> Callable[..., float]:
    """Give a :mod:`math` function IEEE results instead of exceptions."""

    def wrapper(*args):
        try:
            return fn(*args)
        except ValueError:
            return math.nan
        except OverflowError:
            return math.inf

    wrapper.__name__ = fn.__name__
    return wrapper


def _ln(x: float) -> float:
    if x == 0:
        return -math.inf
    return math.log(x)


MATH_FUNCTIONS = {
    "sin": _ieee(math.sin),
    "cos": _ieee(math.cos),
    "ln": _ieee(_ln),
    "exp": _ieee(math.exp),
    "pow": _ieee(math.pow),
    "atan2": _ieee(math.atan2),
}


def _val_type(t: str):
    return getattr(wasmtime.ValType, t)()


def _func_type(spec: HostImport):
    results = [_val_type(spec.result)] if spec.result else []
    return wasmtime.FuncType([_val_type(t) for t in spec.params], results)


def _coerce(value, t: str):
    return float(value) if t in FLOAT_TYPES else int(value)


def _host_adapter(fn: Callable, spec: HostImport) -> Callable:
    result = spec.result

    def call(*args):
        value = fn(*args)
        if result is None:
            return None
        return _coerce(value, result)

    call.__name__ = getattr(fn, "__name__", spec.name)
    return call


class LinearMemory:
    """A wasmtime linear memory together with the store that owns it.

    Pass one to :func:`atra` (``memory=``) to share memory with a module, or
    read the one a module exports through ``exports.memory``.
    """

    def __init__(self, pages: int = 1, maximum: int | None = None, *, store=None, memory=None, engine=None):
        _require_wasmtime()
        if store is None:
            engine = engine or wasmtime.Engine()
            store = wasmtime.Store(engine)
        self.engine = engine
        if memory is None:
            memory = wasmtime.Memory(store, wasmtime.MemoryType(wasmtime.Limits(pages, maximum)))
        self.store = store
        self.memory = memory

    @property
    def pages(self) -> int:
        return self.memory.size(self.store)

    @property
    def size(self) -> int:
        return self.memory.data_len(self.store)

    def grow(self, pages: int) -> int:
        """Grow by *pages*; return the previous size in pages."""

        try:
            return self.memory.grow(self.store, pages)
        except wasmtime.WasmtimeError as exc:
            raise AtraMemoryError(f"Cannot grow memory by {pages} page(s): {exc}") from exc

    def ensure(self, nbytes: int) -> None:
        missing = nbytes - self.size
        if missing > 0:
            self.grow(-(-missing // PAGE_SIZE))

    def read(self, offset: int, length: int) -> bytes:
        return bytes(self.memory.read(self.store, offset, offset + length))

    def write(self, offset: int, data: bytes) -> None:
        self.memory.write(self.store, bytes(data), offset)

    def read_array(self, t: str, offset: int, count: int) -> list:
        fmt = f"<{count}{STRUCT_CODES[t]}"
        return list(struct.unpack(fmt, self.read(offset, struct.calcsize(fmt))))

    def write_array(self, t: str, offset: int, values: Sequence) -> int:
        """Write *values* as packed elements of type *t*; return the byte count."""

        values = [_coerce(v, t) for v in values]
        data = struct.pack(f"<{len(values)}{STRUCT_CODES[t]}", *values)
        self.ensure(offset + len(data))
        self.write(offset, data)
        return len(data)


class ExportedFunction:
    """Callable wrapper that coerces Python arguments to the export's types."""

    def __init__(self, name: str, func, store, params: list, result: str | None):
        self.name = name
        self.func = func
        self.store = store
        self.params = list(params)
        self.result = result

    def __call__(self, *args):
        if len(args) != len(self.params):
            raise TypeError(f"{self.name}() takes {len(self.params)} argument(s), got {len(args)}")
        values = [_coerce(a, t) for a, t in zip(args, self.params)]
        return self.func(self.store, *values)

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        sig = ", ".join(self.params)
        return f"<atra export {self.name}({sig}) -> {self.result or 'void'}>"


class Exports:
    """Exported routines and memory of an instantiated module.

    Routines are reachable as attributes or items; dotted export names are
    exposed as nested namespaces (``exports.physics.drag``).
    """

    def __init__(self, functions: dict, memory: LinearMemory | None = None, compiled: CompiledModule | None = None):
        self._functions = dict(functions)
        self.memory = memory
        self.compiled = compiled
        self._tree: dict[str, Any] = {}
        for name, fn in self._functions.items():
            if "." not in name:
                continue
            head, *rest = name.split(".")
            node = self._tree.setdefault(head, SimpleNamespace())
            for part in rest[:-1]:
                if not hasattr(node, part):
                    setattr(node, part, SimpleNamespace())
                node = getattr(node, part)
            setattr(node, rest[-1], fn)

    def __getattr__(self, name: str):
        functions = self.__dict__.get("_functions", {})
        if name in functions:
            return functions[name]
        tree = self.__dict__.get("_tree", {})
        if name in tree:
            return tree[name]
        raise AttributeError(name)

    def __getitem__(self, name: str):
        return self._functions[name]

    def __contains__(self, name: str) -> bool:
        return name in self._functions

    def __iter__(self):
        return iter(self._functions)

    def names(self) -> list[str]:
        return list(self._functions)


def splice(strings: Sequence[str], values: Sequence[Any]) -> tuple[str, dict[int, Callable]]:
    """Join template fragments and values into source plus interpolated callables."""

    strings = list(strings)
    if len(strings) != len(values) + 1:
        raise ValueError("Template needs exactly one more string fragment than values")
    parts = [strings[0]]
    interp: dict[int, Callable] = {}
    for index, value in enumerate(values):
        if callable(value):
            parts.append(f"{INTERP_PREFIX}{index}__")
            interp[index] = value
        elif isinstance(value, bool):
            parts.append("1" if value else "0")
        elif isinstance(value, int):
            parts.append(str(value))
        elif isinstance(value, float):
            if not math.isfinite(value):
                raise ValueError(f"Cannot splice non-finite number {value!r} into ATRA source")
            parts.append(repr(value))
        elif isinstance(value, str):
            parts.append(value)
        else:
            raise TypeError(f"Unsupported interpolation value of type {type(value).__name__}")
        parts.append(strings[index + 1])
    return "".join(parts), interp


def compile_module(source: str, imports=None, interp_values=None, import_memory: bool = False) -> CompiledModule:
    """Parse and compile *source* into a :class:`CompiledModule`."""

    return generate(parse(source), imports, interp_values, import_memory)


def compile_source(source: str, imports=None) -> bytes:
    """Compile *source* and return the raw module bytes."""

    return compile_module(source, imports).binary


def parse_source(source: str):
    """Return the AST of *source* without generating code."""

    return parse(source)


def dump(source: str, imports=None) -> str:
    """Compile *source* and return the module bytes as a hex string."""

    return compile_module(source, imports).hex()


def validate(binary: bytes) -> bool:
    """Return True when *binary* is a well-formed, type-correct module."""

    _require_wasmtime()
    try:
        wasmtime.Module.validate(wasmtime.Engine(), binary)
    except wasmtime.WasmtimeError:
        return False
    return True


def _resolve_callable(spec: HostImport, flat: dict) -> Callable | None:
    if spec.func is not None:
        return spec.func
    if spec.module == MATH_MODULE:
        return MATH_FUNCTIONS.get(spec.name)
    key = spec.name if spec.module == HOST_MODULE else f"{spec.module}.{spec.name}"
    entry = resolve_host_import(flat, key)
    return entry.func if entry else None


def instantiate(compiled: CompiledModule, imports=None, memory: LinearMemory | None = None) -> Exports:
    """Instantiate a compiled module against host imports and optional memory."""

    _require_wasmtime()
    if memory is not None and not isinstance(memory, LinearMemory):
        raise TypeError("memory must be a LinearMemory (it carries the store that owns it)")
    if compiled.imports_memory and memory is None:
        raise AtraLinkError("Module imports env.memory but no memory was supplied")

    if memory is not None:
        engine, store = memory.engine, memory.store
    else:
        engine = wasmtime.Engine()
        store = wasmtime.Store(engine)
    flat = flatten_imports(imports)
    try:
        module = wasmtime.Module(engine, compiled.binary)
    except wasmtime.WasmtimeError as exc:
        raise AtraLinkError(f"Invalid module: {exc}") from exc

    externs = []
    for spec in compiled.imports:
        fn = _resolve_callable(spec, flat)
        if fn is None:
            raise AtraLinkError(f"Missing import {spec.key}")
        externs.append(wasmtime.Func(store, _func_type(spec), _host_adapter(fn, spec)))
    if compiled.imports_memory:
        externs.append(memory.memory)

    try:
        instance = wasmtime.Instance(store, module, externs)
    except (wasmtime.WasmtimeError, wasmtime.Trap) as exc:
        raise AtraLinkError(f"Instantiation failed: {exc}") from exc

    raw = instance.exports(store)
    functions = {
        name: ExportedFunction(name, raw[name], store, params, result)
        for name, (params, result) in compiled.exports.items()
    }
    exported_memory = memory
    if compiled.owns_memory:
        exported_memory = LinearMemory(store=store, memory=raw["memory"], engine=engine)
    logger.debug("instantiated module with exports %s", ", ".join(functions))
    return Exports(functions, exported_memory, compiled)


def run(source: str, imports=None, memory: LinearMemory | None = None) -> Exports:
    """Compile *source* and instantiate it in one step."""

    compiled = compile_module(source, imports, import_memory=memory is not None)
    return instantiate(compiled, imports, memory)


def atra(source=None, *values, imports=None, memory: LinearMemory | None = None):
    """Compile and instantiate ATRA source.

    ``atra(source)`` and ``atra(strings, *values)`` return :class:`Exports`.
    ``atra(imports=..., memory=...)`` (or ``atra({"imports": ..., "memory": ...})``)
    returns a compiler bound to those options.
    """

    if source is None or isinstance(source, dict):
        options = dict(source or {})
        unknown = set(options) - {"imports", "memory"}
        if unknown:
            raise ValueError(f"Unknown atra option(s): {', '.join(sorted(unknown))}")
        bound_imports = options.get("imports", imports)
        bound_memory = options.get("memory", memory)

        def bound(strings, *vals):
            return atra(strings, *vals, imports=bound_imports, memory=bound_memory)

        return bound

    strings = [source] if isinstance(source, str) else list(source)
    text, interp = splice(strings, values)
    compiled = compile_module(text, imports, interp, import_memory=memory is not None)
    return instantiate(compiled, imports, memory)


__all__ = [
    "LinearMemory",
    "ExportedFunction",
    "Exports",
    "MATH_FUNCTIONS",
    "atra",
    "splice",
    "compile_module",
    "compile_source",
    "parse_source",
    "dump",
    "validate",
    "instantiate",
    "run",
]
