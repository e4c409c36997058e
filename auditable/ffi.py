"""Host function declarations for ATRA modules.

Callers hand the compiler a mapping of host functions.  Nested mappings are
flattened into dotted names (``{"physics": {"drag": fn}}`` becomes
``physics.drag``).  Plain callables are imported with ``f64`` parameters and an
``f64`` result; :class:`HostImport` records carry an explicit signature.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import re
from types import SimpleNamespace
from typing import Any, Callable

from .constants import ATRA_TYPES, HOST_MODULE


@dataclass
class HostImport:
    """A host function imported into an ATRA module."""

    name: str
    params: list | None = None
    result: str | None = "f64"
    func: Callable | None = None
    module: str = HOST_MODULE
    interp: int | None = None
    field_name: str | None = field(default=None, compare=False)

    def __post_init__(self):
        self.name = (self.name or "").strip()
        if not self.name:
            raise ValueError("Host import requires a name")
        self.module = (self.module or "").strip() or HOST_MODULE
        if self.params is not None:
            self.params = [p.strip() for p in self.params if p.strip()]
            for ptype in self.params:
                if ptype not in ATRA_TYPES:
                    raise ValueError(f"Host import {self.name} has unknown parameter type: {ptype}")
        if self.result is not None:
            self.result = self.result.strip() or None
            if self.result == "void":
                self.result = None
        if self.result is not None and self.result not in ATRA_TYPES:
            raise ValueError(f"Host import {self.name} has unknown result type: {self.result}")
        if self.field_name is None:
            self.field_name = self.name

    @property
    def arity(self) -> int | None:
        return None if self.params is None else len(self.params)

    @property
    def key(self) -> str:
        return f"{self.module}.{self.field_name}"

    def to_dict(self):
        return {
            "module": self.module,
            "name": self.name,
            "field": self.field_name,
            "params": list(self.params or []),
            "result": self.result,
            "interp": self.interp,
        }

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise TypeError("Host import must be built from a mapping")
        return cls(
            name=data.get("name"),
            params=data.get("params"),
            result=data.get("result", "f64"),
            module=data.get("module") or HOST_MODULE,
            interp=data.get("interp"),
            field_name=data.get("field"),
        )


SIGNATURE_PATTERN = re.compile(
    r"^\s*\((?P<params>[^)]*)\)\s*(?::\s*(?P<result>[a-z0-9]+))?\s*$"
)


def parse_signature(signature: str) -> tuple[list[str], str | None]:
    """Parse ``"(f64, i32): f64"`` into parameter and result types."""

    match = SIGNATURE_PATTERN.match(signature or "")
    if not match:
        raise ValueError(f"Invalid host signature: {signature!r}")
    params_text = match.group("params").strip()
    params = [p.strip() for p in params_text.split(",") if p.strip()] if params_text else []
    return params, match.group("result")


def host_import(func: Callable, signature: str | None = None, name: str | None = None) -> HostImport:
    """Wrap *func* with an explicit signature for use in an imports map."""

    params, result = (None, "f64") if signature is None else parse_signature(signature)
    return HostImport(name or getattr(func, "__name__", "host"), params, result, func)


def flatten_imports(imports: Any, prefix: str = "") -> dict[str, Any]:
    """Flatten nested import namespaces into a ``dotted.name -> entry`` mapping."""

    if imports is None:
        return {}
    if isinstance(imports, SimpleNamespace):
        imports = vars(imports)
    if not isinstance(imports, dict):
        raise TypeError(f"Unsupported imports type: {type(imports)!r}")
    flat: dict[str, Any] = {}
    for key, value in imports.items():
        name = f"{prefix}{key}"
        if isinstance(value, (dict, SimpleNamespace)):
            flat.update(flatten_imports(value, prefix=f"{name}."))
        elif callable(value) or isinstance(value, HostImport):
            flat[name] = value
        else:
            raise TypeError(f"Import {name} must be callable, got {type(value).__name__}")
    return flat


def resolve_host_import(flat: dict[str, Any], name: str) -> HostImport | None:
    """Return the declaration for *name*, or None when the map lacks it."""

    entry = flat.get(name)
    if entry is None:
        return None
    if isinstance(entry, HostImport):
        if entry.name != name:
            return HostImport(name, entry.params, entry.result, entry.func, entry.module, entry.interp)
        return entry
    return HostImport(name, None, "f64", entry)


__all__ = [
    "HostImport",
    "parse_signature",
    "host_import",
    "flatten_imports",
    "resolve_host_import",
]
