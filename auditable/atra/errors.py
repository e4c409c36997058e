"""Exception types raised by the ATRA compiler and instantiator."""

from __future__ import annotations


class AtraError(Exception):
    """Base class for ATRA failures; carries an optional source position."""

    def __init__(self, message: str, line: int | None = None, col: int | None = None):
        self.message = message
        self.line = line
        self.col = col
        if line is not None:
            message = f"{message} at {line}:{col}"
        super().__init__(message)


class AtraSyntaxError(AtraError):
    """Lexical or syntactic error."""


class AtraCompileError(AtraError):
    """Semantic, resolution or constant-expression error during codegen."""


class AtraLinkError(AtraError):
    """The module could not be instantiated against the supplied imports."""


class AtraMemoryError(AtraError):
    """Linear memory could not be grown."""


__all__ = [
    "AtraError",
    "AtraSyntaxError",
    "AtraCompileError",
    "AtraLinkError",
    "AtraMemoryError",
]
