import math
import random

import pytest

from auditable.atra import (
    AtraCompileError,
    AtraLinkError,
    LinearMemory,
    atra,
    compile_module,
    compile_source,
    dump,
    instantiate,
    parse_expression,
    run,
    splice,
    validate,
)
from auditable.atra import nodes as ast
from auditable.atra.bytewriter import encode_sleb, encode_u32
from auditable.ffi import host_import

SQR = "function sqr(x: f64): f64 begin sqr := x*x end"


@pytest.mark.parametrize(
    "value, expected",
    [(0, b"\x00"), (127, b"\x7f"), (128, b"\x80\x01"), (624485, b"\xe5\x8e\x26")],
)
def test_encode_u32(value, expected):
    assert encode_u32(value) == expected


@pytest.mark.parametrize(
    "value, expected",
    [(0, b"\x00"), (63, b"\x3f"), (64, b"\xc0\x00"), (-1, b"\x7f"), (-64, b"\x40"), (-123456, b"\xc0\xbb\x78")],
)
def test_encode_sleb(value, expected):
    assert encode_sleb(value) == expected


def test_encode_u32_rejects_negative():
    with pytest.raises(ValueError):
        encode_u32(-1)


def test_module_header_and_type_section():
    binary = compile_source(SQR)
    assert binary[:8] == b"\x00asm\x01\x00\x00\x00"
    # one func type (f64) -> f64
    assert binary[8:16] == bytes([0x01, 0x06, 0x01, 0x60, 0x01, 0x7C, 0x01, 0x7C])
    body = bytes([0x20, 0x00, 0x20, 0x00, 0xA2, 0x21, 0x01, 0x20, 0x01, 0x0B])
    assert body in binary


def test_compiled_module_tables():
    compiled = compile_module(SQR)
    assert compiled.exports == {"sqr": (["f64"], "f64")}
    assert compiled.imports == []
    assert compiled.memory is None
    assert dump(SQR) == compiled.hex()
    assert compiled.hex().startswith("0061736d01000000")


def test_validate_accepts_generated_and_rejects_garbage():
    assert validate(compile_source(SQR))
    assert validate(b"\x00asm\x01\x00\x00\x00")
    assert not validate(b"not a module")


def test_square_function_runs():
    exports = atra(SQR)
    assert exports.sqr(3) == 9.0
    assert exports["sqr"](1.5) == 2.25
    assert "sqr" in exports
    assert exports.names() == ["sqr"]


def test_half_power_lowers_to_sqrt_without_pow_import():
    src = "function r(x: f64): f64 begin r := x ** 0.5 end"
    compiled = compile_module(src)
    assert compiled.imports == []
    assert 0x9F in compiled.binary
    assert run(src).r(16) == 4.0


def test_general_power_imports_math_pow():
    src = "function p(x: f64): f64 begin p := x ** 3.0 end"
    compiled = compile_module(src)
    assert [spec.key for spec in compiled.imports] == ["math.pow"]
    assert run(src).p(2) == 8.0


def test_math_builtins_are_imported_on_use():
    src = """
    function wave(x: f64): f64
    begin
      wave := sin(x) + cos(x) + exp(0.0) + ln(1.0) + atan2(0.0, 1.0)
    end
    """
    compiled = compile_module(src)
    assert sorted(spec.key for spec in compiled.imports) == [
        "math.atan2", "math.cos", "math.exp", "math.ln", "math.sin",
    ]
    assert run(src).wave(0) == pytest.approx(2.0)


def test_native_builtins_emit_inline():
    src = """
    function f(x: f64): f64
    begin
      f := sqrt(abs(x)) + floor(2.7) + min(x, 1.0) + copysign(1.0, x)
    end
    """
    compiled = compile_module(src)
    assert compiled.imports == []
    assert run(src).f(-4) == pytest.approx(2.0 + 2.0 - 4.0 - 1.0)


def test_for_loop_stop_is_exclusive():
    src = """
    function total(n: i32): i32
    var
      i: i32
    begin
      total := 0
      for i := 0, n
        total += i
      end for
    end
    """
    assert run(src).total(5) == 10


def test_for_loop_with_negative_step_counts_down():
    src = """
    function count(n: i32): i32
    var
      i: i32
    begin
      count := 0
      for i := n, 0, -1
        count := count * 10 + i
      end for
    end
    """
    assert run(src).count(3) == 321


def test_while_do_and_break():
    src = """
    function fact(n: i32): i64
    var
      k: i32
    begin
      fact := 1
      k := n
      while k > 1
        fact := fact * i64(k)
        k -= 1
      end while
    end
    function first_square_over(limit: i32): i32
    var
      k: i32
    begin
      k := 0
      do
        k += 1
        if k * k > limit then break end if
      while 1
      first_square_over := k
    end
    """
    exports = run(src)
    assert exports.fact(20) == math.factorial(20)
    assert exports.first_square_over(50) == 8


def test_if_expression_and_comparison_with_literal_on_left():
    src = """
    function clamp01(x: f64): f64
    begin
      clamp01 := if 0 > x then 0.0 else if (x > 1) then 1.0 else x
    end
    function positive(x: f64): i32
    begin
      positive := 0 < x
    end
    """
    exports = run(src)
    assert [exports.clamp01(v) for v in (-2, 0.25, 3)] == [0.0, 0.25, 1.0]
    assert exports.positive(0.5) == 1
    assert exports.positive(-0.5) == 0


def test_conversions_and_unsigned_escapes():
    src = """
    function tr(x: f64): i32 begin tr := i32(x) end
    function half_u(a: i32): i32 begin half_u := wasm.div_u(a, 2) end
    function triple(a: i64): i64 begin triple := a * 3 end
    """
    exports = run(src)
    assert exports.tr(3.7) == 3
    assert exports.tr(-3.7) == -3
    assert exports.half_u(-2) == 2147483647
    assert exports.triple(2**40) == 3 * 2**40


@pytest.mark.parametrize(
    "body, expected",
    [
        ("f := i & 3", 2.0),
        ("f := i | 1", 7.0),
        ("f := i ^ 5", 3.0),
        ("f := i << 2", 24.0),
        ("f := i >> 1", 3.0),
        ("f := i mod 4", 2.0),
        ("f := ~i", -7.0),
        ("f := 3 & i", 2.0),
    ],
)
def test_integer_operators_in_float_context(body, expected):
    exports = run(f"function f(i: i32): f64 begin {body} end")
    assert exports.f(6) == expected


def test_integer_operator_keeps_i64_operand_type():
    exports = run("function low(v: i64): f64 begin low := v & 255 end")
    assert exports.low(2**40 + 7) == 7.0


def test_integer_min_max_evaluate_arguments_once():
    src = """
    var calls: i32 = 0
    function tick(): i32
    begin
      calls += 1
      tick := calls * 10
    end
    function lo(x: i32): i32 begin lo := min(tick(), x) end
    function hi(x: i32): i32 begin hi := max(x, tick()) end
    function count(): i32 begin count := calls end
    """
    exports = run(src)
    assert exports.lo(15) == 10
    assert exports.count() == 1
    assert exports.hi(5) == 20
    assert exports.count() == 2
    assert exports.lo(3) == 3


def test_globals_persist_between_calls():
    src = """
    const step: i32 = 2
    var counter: i32 = 0
    function bump(): i32
    begin
      counter += step
      bump := counter
    end
    """
    exports = run(src)
    assert [exports.bump(), exports.bump()] == [2, 4]


def test_arrays_use_owned_memory():
    src = """
    function total(a: array f64, n: i32): f64
    var
      i: i32
    begin
      total := 0.0
      for i := 0, n
        total += a[i]
      end for
    end
    subroutine scale(a: array f64, n: i32, k: f64)
    var
      i: i32
    begin
      for i := 0, n
        a[i] := a[i] * k
      end for
    end
    """
    exports = run(src)
    assert exports.compiled.memory == "owned"
    memory = exports.memory
    memory.write_array("f64", 0, [1, 2, 3])
    assert exports.total(0, 3) == 6.0
    assert exports.scale(0, 3, 2.0) is None
    assert memory.read_array("f64", 0, 3) == [2.0, 4.0, 6.0]


def test_two_dimensional_index_uses_declared_dims():
    src = """
    function at(m: array(3, 3) i32, i: i32, j: i32): i32
    begin
      at := m[i, j]
    end
    """
    exports = run(src)
    exports.memory.write_array("i32", 0, list(range(9)))
    assert exports.at(0, 2, 1) == 7


def test_imported_memory_is_shared():
    memory = LinearMemory(1)
    memory.write_array("i32", 16, [5, 6, 7])
    src = """
    function get(a: array i32, i: i32): i32
    begin
      get := a[i]
    end
    """
    exports = atra(src, memory=memory)
    assert exports.compiled.memory == "imported"
    assert exports.memory is memory
    assert exports.get(16, 2) == 7


def test_memory_grow_and_size():
    src = """
    function grow(n: i32): i32 begin grow := memory_grow(n) end
    function size(): i32 begin size := memory_size() end
    """
    exports = run(src)
    assert exports.size() == 1
    assert exports.grow(2) == 1
    assert exports.size() == 3
    assert exports.memory.pages == 3


def test_host_imports_default_to_f64():
    src = "function f(x: f64): f64 begin f := twice(x) + 1.0 end"
    imports = {"twice": lambda x: 2 * x}
    compiled = compile_module(src, imports)
    assert [spec.key for spec in compiled.imports] == ["host.twice"]
    assert run(src, imports).f(3) == 7.0


def test_nested_import_namespaces_flatten_to_dotted_names():
    src = "function f(v: f64): f64 begin f := physics.drag(v) end"
    exports = run(src, {"physics": {"drag": lambda v: -0.5 * v}})
    assert exports.f(4) == -2.0


def test_host_import_with_explicit_signature():
    src = "function f(x: f64): f64 begin f := scale(x, 3) end"
    seen = []

    def scale(x, n):
        seen.append(n)
        return x * n

    exports = run(src, {"scale": host_import(scale, "(f64, i32): f64")})
    assert exports.f(1.5) == 4.5
    assert seen == [3] and isinstance(seen[0], int)


def test_declared_import_resolves_by_module_at_instantiation():
    src = """
    import drag(v: f64): f64 from physics
    function f(v: f64): f64 begin f := drag(v) end
    """
    compiled = compile_module(src)
    assert [spec.key for spec in compiled.imports] == ["physics.drag"]
    imports = {"drag": lambda v: 100.0, "physics": {"drag": lambda v: -0.5 * v}}
    assert instantiate(compiled, imports).f(4) == -2.0


def test_declared_import_must_be_supplied():
    src = """
    import ext(x: f64): f64
    function f(x: f64): f64 begin f := ext(x) end
    """
    compiled = compile_module(src)
    assert [spec.key for spec in compiled.imports] == ["host.ext"]
    with pytest.raises(AtraLinkError, match="Missing import host.ext"):
        run(src)
    assert run(src, {"ext": lambda x: x + 1}).f(1) == 2.0


def test_interpolated_callables_and_numbers():
    exports = atra(
        ["function f(x: f64): f64 begin f := ", "(x) + ", " end"],
        lambda v: v * 10,
        0.5,
    )
    assert exports.f(2) == 20.5


def test_bound_compiler_carries_imports():
    kernel = atra(imports={"twice": lambda x: 2 * x})
    exports = kernel("function g(x: f64): f64 begin g := twice(x) end")
    assert exports.g(4) == 8.0
    with pytest.raises(ValueError, match="Unknown atra option"):
        atra({"bogus": 1})


def test_splice_rejects_bad_values():
    with pytest.raises(ValueError):
        splice(["a", "b"], [])
    with pytest.raises(TypeError):
        splice(["a", "b"], [object()])
    with pytest.raises(ValueError):
        splice(["a", "b"], [math.nan])
    assert splice(["x := ", ""], [True]) == ("x := 1", {})


def test_exported_function_checks_arity():
    exports = atra(SQR)
    with pytest.raises(TypeError, match="takes 1 argument"):
        exports.sqr(1, 2)


@pytest.mark.parametrize(
    "src, message",
    [
        ("const k: i32 = 1\nsubroutine s() begin k := 2 end", "Cannot assign to constant k"),
        ("function f(): f64 begin f := y end", "Undefined variable y"),
        ("function f(): f64 begin f := nope(1.0) end", "Undefined function nope"),
        ("function f(x: f64): f64 begin f := x & x end", "requires integer operands"),
        ("subroutine s() begin break end", "break outside of a loop"),
        ("function f(x: f64): f64 begin f := wasm.bogus(x) end", "Unknown wasm escape"),
        ("const k: i32 = 3000000000", "out of range for i32"),
        ("function f(): f64 begin end\nfunction f(): f64 begin end", "Duplicate routine f"),
        ("subroutine s(x: f64) begin call return(x) end", "cannot return a value"),
    ],
)
def test_compile_errors(src, message):
    with pytest.raises(AtraCompileError, match=message):
        compile_module(src)


# Reference evaluation of i32 expressions against the compiled module.

def _wrap32(value):
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value >= 1 << 31 else value


def reference_i32(node, env):
    if isinstance(node, ast.Number):
        return int(node.raw)
    if isinstance(node, ast.Name):
        return env[node.name]
    if isinstance(node, ast.Unary):
        return _wrap32(-reference_i32(node.operand, env))
    a = reference_i32(node.left, env)
    b = reference_i32(node.right, env)
    return _wrap32({
        "+": lambda: a + b,
        "-": lambda: a - b,
        "*": lambda: a * b,
        "&": lambda: a & b,
        "|": lambda: a | b,
        "^": lambda: a ^ b,
        "and": lambda: a & b,
        "or": lambda: a | b,
        "==": lambda: int(a == b),
        "/=": lambda: int(a != b),
        "<": lambda: int(a < b),
        ">": lambda: int(a > b),
        "<=": lambda: int(a <= b),
        ">=": lambda: int(a >= b),
    }[node.op]())


def random_i32_expression(rng, depth=0):
    if depth > 3 or rng.random() < 0.3:
        return rng.choice(["a", "b", str(rng.randint(0, 9))])
    if rng.random() < 0.1:
        return f"-({random_i32_expression(rng, depth + 1)})"
    op = rng.choice(["+", "-", "*", "&", "|", "^", "and", "or", "==", "/=", "<", ">", "<=", ">="])
    left = random_i32_expression(rng, depth + 1)
    right = random_i32_expression(rng, depth + 1)
    return f"({left} {op} {right})"


def test_compiled_i32_arithmetic_matches_reference():
    rng = random.Random(7)
    expressions = [random_i32_expression(rng) for _ in range(60)]
    src = "\n".join(
        f"function kernel_{i}(a: i32, b: i32): i32 begin kernel_{i} := {expr} end"
        for i, expr in enumerate(expressions)
    )
    exports = run(src)
    for i, expr in enumerate(expressions):
        tree = parse_expression(expr)
        for _ in range(4):
            env = {"a": rng.randint(-(2**31), 2**31 - 1), "b": rng.randint(-1000, 1000)}
            assert exports[f"kernel_{i}"](env["a"], env["b"]) == reference_i32(tree, env), expr
