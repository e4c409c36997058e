"""Tokenizer for ATRA source text."""

from __future__ import annotations

from dataclasses import dataclass
import re

from ..constants import ATRA_TYPES, INTERP_PREFIX
from .errors import AtraSyntaxError

KEYWORDS = frozenset(
    [
        "function",
        "subroutine",
        "begin",
        "end",
        "var",
        "const",
        "if",
        "then",
        "else",
        "for",
        "while",
        "do",
        "break",
        "and",
        "or",
        "not",
        "mod",
        "import",
        "export",
        "call",
        "array",
        "true",
        "false",
        "from",
        "return",
        *ATRA_TYPES,
    ]
)

TWO_CHAR_OPS = frozenset(["**", ":=", "+=", "-=", "*=", "==", "<=", ">=", "<<", ">>", "/="])
ONE_CHAR_OPS = frozenset("+-*/<>=&|^~")
PUNCTUATION = frozenset("()[],:")

NUMBER_PATTERN = re.compile(
    r"(?:\d+(?P<frac>\.\d*)?|(?P<lead>\.\d+))(?P<exp>[eE][+-]?\d+)?(?:_(?P<suffix>i32|i64|f32|f64)\b)?"
)
IDENT_PATTERN = re.compile(r"[A-Za-z_][\w.]*")
INTERP_PATTERN = re.compile(rf"^{INTERP_PREFIX}(\d+)__$")

NUM = "num"
IDENT = "ident"
KEYWORD = "kw"
OP = "op"
PUNCT = "punct"
INTERP = "interp"
EOF = "eof"


@dataclass(frozen=True)
class Token:
    """A lexical token with its 1-based source position."""

    type: str
    value: str
    line: int
    col: int
    is_float: bool = False
    suffix: str | None = None
    interp: int | None = None

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"Token({self.type}, {self.value!r}, {self.line}:{self.col})"


def tokenize(src: str) -> list[Token]:
    """Split *src* into tokens, ending with a single EOF token."""

    tokens: list[Token] = []
    pos = 0
    line = 1
    line_start = 0
    length = len(src)

    while pos < length:
        ch = src[pos]
        col = pos - line_start + 1

        if ch == "\n":
            pos += 1
            line += 1
            line_start = pos
            continue
        if ch.isspace() or ch == ";":
            pos += 1
            continue
        if ch == "!":
            end = src.find("\n", pos)
            pos = length if end < 0 else end
            continue

        if ch.isdigit() or (ch == "." and pos + 1 < length and src[pos + 1].isdigit()):
            match = NUMBER_PATTERN.match(src, pos)
            text = match.group(0)
            suffix = match.group("suffix")
            raw = text[: -(len(suffix) + 1)] if suffix else text
            is_float = bool(match.group("frac") or match.group("lead") or match.group("exp"))
            tokens.append(Token(NUM, raw, line, col, is_float=is_float, suffix=suffix))
            pos = match.end()
            continue

        if ch.isalpha() or ch == "_":
            match = IDENT_PATTERN.match(src, pos)
            word = match.group(0).rstrip(".")
            pos += len(word)
            if word in KEYWORDS:
                tokens.append(Token(KEYWORD, word, line, col))
                continue
            interp = INTERP_PATTERN.match(word)
            if interp:
                tokens.append(Token(INTERP, word, line, col, interp=int(interp.group(1))))
                continue
            tokens.append(Token(IDENT, word, line, col))
            continue

        pair = src[pos : pos + 2]
        if pair in TWO_CHAR_OPS:
            tokens.append(Token(OP, pair, line, col))
            pos += 2
            continue
        if ch in ONE_CHAR_OPS:
            tokens.append(Token(OP, ch, line, col))
            pos += 1
            continue
        if ch in PUNCTUATION:
            tokens.append(Token(PUNCT, ch, line, col))
            pos += 1
            continue

        raise AtraSyntaxError(f"Unexpected character {ch!r}", line, col)

    tokens.append(Token(EOF, "", line, pos - line_start + 1))
    return tokens


__all__ = [
    "Token",
    "tokenize",
    "KEYWORDS",
    "NUM",
    "IDENT",
    "KEYWORD",
    "OP",
    "PUNCT",
    "INTERP",
    "EOF",
]
