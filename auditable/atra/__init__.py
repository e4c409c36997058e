"""ATRA: a small Fortran/Pascal-flavoured arithmetic language compiled to WebAssembly."""

from . import codegen as _codegen
from . import errors as _errors
from . import instance as _instance
from .codegen import *  # noqa: F401,F403
from .errors import *  # noqa: F401,F403
from .instance import *  # noqa: F401,F403
from .lexer import Token, tokenize
from .parser import parse, parse_expression
from .printer import format_expr, format_program

__all__ = []
for _module in (_codegen, _errors, _instance):
    __all__.extend(getattr(_module, "__all__", []))
__all__ += ["Token", "tokenize", "parse", "parse_expression", "format_expr", "format_program"]
__all__ = list(dict.fromkeys(__all__))
