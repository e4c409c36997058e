"""Recursive-descent parser for ATRA with a Pratt expression core."""

from __future__ import annotations

from ..constants import ATRA_TYPES, HOST_MODULE
from . import nodes as ast
from .errors import AtraSyntaxError
from .lexer import EOF, IDENT, INTERP, KEYWORD, NUM, OP, PUNCT, Token, tokenize

# Binding powers; higher binds tighter.
BINARY_POWER = {
    "or": 2,
    "and": 4,
    "==": 6,
    "/=": 6,
    "<": 6,
    ">": 6,
    "<=": 6,
    ">=": 6,
    "|": 8,
    "^": 10,
    "&": 12,
    "<<": 14,
    ">>": 14,
    "+": 16,
    "-": 16,
    "*": 18,
    "/": 18,
    "mod": 18,
    "**": 22,
}
PREFIX_POWER = 21
RIGHT_ASSOC = frozenset(["**"])

COMPOUND_OPS = {"+=": "+", "-=": "-", "*=": "*", "/=": "/"}


def _describe(tok: Token) -> str:
    return "end of input" if tok.type == EOF else f'"{tok.value}"'


class Parser:
    """Turn a token list into an :class:`~auditable.atra.nodes.Program`."""

    def __init__(self, tokens: list[Token]):
        self.tokens = tokens
        self.pos = 0

    # Token helpers

    def peek(self, offset: int = 0) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def at(self, type_: str, value: str | None = None, offset: int = 0) -> bool:
        tok = self.peek(offset)
        return tok.type == type_ and (value is None or tok.value == value)

    def advance(self) -> Token:
        tok = self.peek()
        if tok.type != EOF:
            self.pos += 1
        return tok

    def maybe(self, type_: str, value: str | None = None) -> Token | None:
        if self.at(type_, value):
            return self.advance()
        return None

    def expect(self, type_: str, value: str | None = None) -> Token:
        tok = self.peek()
        if tok.type != type_ or (value is not None and tok.value != value):
            wanted = value if value is not None else type_
            raise AtraSyntaxError(
                f"Expected {wanted} but got {_describe(tok)}", tok.line, tok.col
            )
        return self.advance()

    def unexpected(self, tok: Token | None = None):
        tok = tok or self.peek()
        raise AtraSyntaxError(f"Unexpected {_describe(tok)}", tok.line, tok.col)

    def expect_type(self) -> str:
        tok = self.peek()
        if tok.type != KEYWORD or tok.value not in ATRA_TYPES:
            raise AtraSyntaxError(
                f"Expected type but got {_describe(tok)}", tok.line, tok.col
            )
        return self.advance().value

    def _end_marker(self, end_tok: Token, *words: str):
        """Consume an optional ``end if``-style trailer on the same line."""

        nxt = self.peek()
        if nxt.type in (KEYWORD, IDENT) and nxt.line == end_tok.line and nxt.value in words:
            self.advance()

    # Program structure

    def parse_program(self) -> ast.Program:
        program = ast.Program()
        while not self.at(EOF):
            tok = self.peek()
            if tok.type == KEYWORD and tok.value in ("const", "var"):
                item = self.parse_global()
                program.globals.append(item)
            elif tok.type == KEYWORD and tok.value == "export":
                self.advance()
                item = self.parse_routine(exported=True)
                program.routines.append(item)
            elif tok.type == KEYWORD and tok.value in ("function", "subroutine"):
                item = self.parse_routine()
                program.routines.append(item)
            elif tok.type == KEYWORD and tok.value == "import":
                item = self.parse_import()
                program.imports.append(item)
            else:
                self.unexpected(tok)
            program.items.append(item)
        return program

    def parse_global(self) -> ast.GlobalDecl:
        kw = self.advance()
        name = self.expect(IDENT).value
        self.expect(PUNCT, ":")
        vtype = self.expect_type()
        init = None
        if self.maybe(OP, "=") or self.maybe(OP, ":="):
            init = self.parse_expr()
        elif kw.value == "const":
            tok = self.peek()
            raise AtraSyntaxError(f"Constant {name} requires an initializer", tok.line, tok.col)
        return ast.GlobalDecl(kw.value, name, vtype, init, line=kw.line, col=kw.col)

    def parse_import(self) -> ast.ImportDecl:
        kw = self.expect(KEYWORD, "import")
        self.maybe(KEYWORD, "function")
        name = self.expect(IDENT).value
        params = []
        if self.at(PUNCT, "("):
            self.advance()
            params = self.parse_params(allow_arrays=False)
            self.expect(PUNCT, ")")
        ret_type = None
        if self.maybe(PUNCT, ":"):
            ret_type = self.expect_type()
        module = HOST_MODULE
        interp = None
        if self.maybe(OP, "="):
            tok = self.expect(INTERP)
            interp = tok.interp
        elif self.maybe(KEYWORD, "from"):
            module = self.expect(IDENT).value
        return ast.ImportDecl(name, params, ret_type, module, interp, line=kw.line, col=kw.col)

    def parse_params(self, allow_arrays: bool = True) -> list[ast.Param]:
        params: list[ast.Param] = []
        while self.at(IDENT):
            names = [self.advance().value]
            while (
                self.at(PUNCT, ",")
                and self.at(IDENT, offset=1)
                and (self.at(PUNCT, ",", offset=2) or self.at(PUNCT, ":", offset=2))
            ):
                self.advance()
                names.append(self.advance().value)
            self.expect(PUNCT, ":")
            is_array = False
            dims: list = []
            if allow_arrays and self.maybe(KEYWORD, "array"):
                is_array = True
                if self.maybe(PUNCT, "("):
                    dims.append(self.parse_expr())
                    while self.maybe(PUNCT, ","):
                        dims.append(self.parse_expr())
                    self.expect(PUNCT, ")")
            vtype = self.expect_type()
            for name in names:
                params.append(ast.Param(name, vtype, is_array, list(dims)))
            self.maybe(PUNCT, ",")
        return params

    def parse_locals(self) -> list[ast.Local]:
        result: list[ast.Local] = []
        while self.at(IDENT):
            names = [self.advance().value]
            while self.maybe(PUNCT, ","):
                names.append(self.expect(IDENT).value)
            self.expect(PUNCT, ":")
            vtype = self.expect_type()
            result.extend(ast.Local(name, vtype) for name in names)
        return result

    def parse_routine(self, exported: bool = False) -> ast.Routine:
        tok = self.peek()
        if not (tok.type == KEYWORD and tok.value in ("function", "subroutine")):
            raise AtraSyntaxError(
                f"Expected function or subroutine but got {_describe(tok)}", tok.line, tok.col
            )
        kw = self.advance()
        name = self.expect(IDENT).value
        self.expect(PUNCT, "(")
        params = self.parse_params()
        self.expect(PUNCT, ")")
        ret_type = None
        if kw.value == "function":
            self.expect(PUNCT, ":")
            ret_type = self.expect_type()
        local_vars: list[ast.Local] = []
        if self.maybe(KEYWORD, "var"):
            local_vars = self.parse_locals()
        self.expect(KEYWORD, "begin")
        body = self.parse_block("end")
        end = self.expect(KEYWORD, "end")
        self._end_marker(end, kw.value, name)
        return ast.Routine(
            name, params, ret_type, local_vars, body, exported, line=kw.line, col=kw.col
        )

    # Statements

    def parse_block(self, *terminators: str) -> list:
        stmts = []
        while not self.at(EOF):
            tok = self.peek()
            if tok.type == KEYWORD and tok.value in terminators:
                break
            stmts.append(self.parse_statement())
        return stmts

    def parse_statement(self):
        tok = self.peek()
        if tok.type == KEYWORD:
            if tok.value == "if":
                return self.parse_if()
            if tok.value == "for":
                return self.parse_for()
            if tok.value == "while":
                return self.parse_while()
            if tok.value == "do":
                return self.parse_do()
            if tok.value == "break":
                self.advance()
                return ast.Break(line=tok.line, col=tok.col)
            if tok.value == "call":
                return self.parse_call()
            self.unexpected(tok)
        if tok.type in (IDENT, INTERP):
            return self.parse_assignment_or_call()
        self.unexpected(tok)

    def parse_if(self, chained: bool = False) -> ast.If:
        kw = self.expect(KEYWORD, "if")
        cond = self.parse_expr()
        self.expect(KEYWORD, "then")
        body = self.parse_block("else", "end")
        orelse = []
        if self.maybe(KEYWORD, "else"):
            if self.at(KEYWORD, "if"):
                orelse = [self.parse_if(chained=True)]
            else:
                orelse = self.parse_block("end")
        if not chained:
            end = self.expect(KEYWORD, "end")
            self._end_marker(end, "if")
        return ast.If(cond, body, orelse, line=kw.line, col=kw.col)

    def parse_for(self) -> ast.For:
        kw = self.expect(KEYWORD, "for")
        var = self.expect(IDENT).value
        self.expect(OP, ":=")
        start = self.parse_expr()
        self.expect(PUNCT, ",")
        stop = self.parse_expr()
        step = None
        if self.maybe(PUNCT, ","):
            step = self.parse_expr()
        body = self.parse_block("end")
        end = self.expect(KEYWORD, "end")
        self._end_marker(end, "for")
        return ast.For(var, start, stop, step, body, line=kw.line, col=kw.col)

    def parse_while(self) -> ast.While:
        kw = self.expect(KEYWORD, "while")
        cond = self.parse_expr()
        body = self.parse_block("end")
        end = self.expect(KEYWORD, "end")
        self._end_marker(end, "while")
        return ast.While(cond, body, line=kw.line, col=kw.col)

    def parse_do(self) -> ast.DoWhile:
        kw = self.expect(KEYWORD, "do")
        body = self.parse_block("while")
        self.expect(KEYWORD, "while")
        cond = self.parse_expr()
        return ast.DoWhile(body, cond, line=kw.line, col=kw.col)

    def parse_call(self):
        kw = self.expect(KEYWORD, "call")
        if self.maybe(KEYWORD, "return"):
            self.expect(PUNCT, "(")
            value = None
            if not self.at(PUNCT, ")"):
                value = self.parse_expr()
            self.expect(PUNCT, ")")
            return ast.Return(value, line=kw.line, col=kw.col)
        tok = self.peek()
        if tok.type not in (IDENT, INTERP):
            raise AtraSyntaxError(
                f"Expected routine name but got {_describe(tok)}", tok.line, tok.col
            )
        self.advance()
        args = self.parse_args()
        return ast.Call(tok.value, args, tok.interp, line=kw.line, col=kw.col)

    def parse_assignment_or_call(self):
        tok = self.advance()
        name = tok.value
        if self.at(PUNCT, "("):
            args = self.parse_args()
            return ast.Call(name, args, tok.interp, line=tok.line, col=tok.col)
        if self.at(PUNCT, "["):
            indices = self.parse_indices()
            op = self.peek()
            if op.type == OP and op.value == ":=":
                self.advance()
                value = self.parse_expr()
            elif op.type == OP and op.value in COMPOUND_OPS:
                self.advance()
                current = ast.Index(name, indices, line=tok.line, col=tok.col)
                value = ast.Binary(COMPOUND_OPS[op.value], current, self.parse_expr(), line=op.line, col=op.col)
            else:
                raise AtraSyntaxError(
                    f"Expected := or compound assignment but got {_describe(op)}", op.line, op.col
                )
            return ast.ArrayStore(name, indices, value, line=tok.line, col=tok.col)
        op = self.peek()
        if op.type == OP and op.value == ":=":
            self.advance()
            return ast.Assign(name, self.parse_expr(), line=tok.line, col=tok.col)
        if op.type == OP and op.value in COMPOUND_OPS:
            self.advance()
            current = ast.Name(name, line=tok.line, col=tok.col)
            value = ast.Binary(COMPOUND_OPS[op.value], current, self.parse_expr(), line=op.line, col=op.col)
            return ast.Assign(name, value, line=tok.line, col=tok.col)
        raise AtraSyntaxError(f"Expected := but got {_describe(op)}", op.line, op.col)

    def parse_args(self) -> list:
        self.expect(PUNCT, "(")
        args = []
        if not self.at(PUNCT, ")"):
            args.append(self.parse_expr())
            while self.maybe(PUNCT, ","):
                args.append(self.parse_expr())
        self.expect(PUNCT, ")")
        return args

    def parse_indices(self) -> list:
        self.expect(PUNCT, "[")
        indices = [self.parse_expr()]
        while self.maybe(PUNCT, ","):
            indices.append(self.parse_expr())
        self.expect(PUNCT, "]")
        return indices

    # Expressions

    def _binary_op(self) -> str | None:
        tok = self.peek()
        if tok.type == OP and tok.value in BINARY_POWER:
            return tok.value
        if tok.type == KEYWORD and tok.value in ("and", "or", "mod"):
            return tok.value
        return None

    def parse_expr(self, min_power: int = 0):
        left = self.parse_prefix()
        while True:
            op = self._binary_op()
            if op is None:
                break
            power = BINARY_POWER[op]
            if power <= min_power:
                break
            tok = self.advance()
            right_power = power - 1 if op in RIGHT_ASSOC else power
            right = self.parse_expr(right_power)
            left = ast.Binary(op, left, right, line=tok.line, col=tok.col)
        return left

    def parse_prefix(self):
        tok = self.peek()
        if (tok.type == OP and tok.value in ("-", "~")) or (tok.type == KEYWORD and tok.value == "not"):
            self.advance()
            operand = self.parse_expr(PREFIX_POWER)
            return ast.Unary(tok.value, operand, line=tok.line, col=tok.col)
        return self.parse_primary()

    def parse_primary(self):
        tok = self.peek()
        if tok.type == PUNCT and tok.value == "(":
            self.advance()
            expr = self.parse_expr()
            self.expect(PUNCT, ")")
            return expr
        if tok.type == NUM:
            self.advance()
            return ast.Number(tok.value, tok.is_float, tok.suffix, line=tok.line, col=tok.col)
        if tok.type == KEYWORD:
            if tok.value == "if":
                self.advance()
                cond = self.parse_expr()
                self.expect(KEYWORD, "then")
                then = self.parse_expr()
                self.expect(KEYWORD, "else")
                orelse = self.parse_expr()
                return ast.IfExpr(cond, then, orelse, line=tok.line, col=tok.col)
            if tok.value in ("true", "false"):
                self.advance()
                raw = "1" if tok.value == "true" else "0"
                return ast.Number(raw, line=tok.line, col=tok.col)
            if tok.value in ATRA_TYPES and self.at(PUNCT, "(", offset=1):
                self.advance()
                args = self.parse_args()
                return ast.FuncCall(tok.value, args, line=tok.line, col=tok.col)
            self.unexpected(tok)
        if tok.type in (IDENT, INTERP):
            self.advance()
            if self.at(PUNCT, "("):
                args = self.parse_args()
                return ast.FuncCall(tok.value, args, tok.interp, line=tok.line, col=tok.col)
            if self.at(PUNCT, "["):
                indices = self.parse_indices()
                return ast.Index(tok.value, indices, line=tok.line, col=tok.col)
            return ast.Name(tok.value, tok.interp, line=tok.line, col=tok.col)
        self.unexpected(tok)


def parse(src: str) -> ast.Program:
    """Parse ATRA source text into a program AST."""

    return Parser(tokenize(src)).parse_program()


def parse_expression(src: str):
    """Parse a single ATRA expression (used by tooling and tests)."""

    parser = Parser(tokenize(src))
    expr = parser.parse_expr()
    if not parser.at(EOF):
        parser.unexpected()
    return expr


__all__ = ["Parser", "parse", "parse_expression", "BINARY_POWER", "PREFIX_POWER"]
