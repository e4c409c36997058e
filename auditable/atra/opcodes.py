"""WebAssembly 1.0 encoding tables used by the ATRA code generator."""

MAGIC = b"\x00asm"
VERSION = b"\x01\x00\x00\x00"

TYPE_CODES = {"i32": 0x7F, "i64": 0x7E, "f32": 0x7D, "f64": 0x7C}
BLOCK_VOID = 0x40
FUNC_TYPE = 0x60

SECTION_TYPE = 1
SECTION_IMPORT = 2
SECTION_FUNCTION = 3
SECTION_MEMORY = 5
SECTION_GLOBAL = 6
SECTION_EXPORT = 7
SECTION_CODE = 10

EXTERNAL_FUNC = 0x00
EXTERNAL_MEMORY = 0x02

LIMITS_MIN_ONLY = 0x00

# Control
UNREACHABLE = 0x00
NOP = 0x01
BLOCK = 0x02
LOOP = 0x03
IF = 0x04
ELSE = 0x05
END = 0x0B
BR = 0x0C
BR_IF = 0x0D
RETURN = 0x0F
CALL = 0x10
DROP = 0x1A
SELECT = 0x1B

# Variables
LOCAL_GET = 0x20
LOCAL_SET = 0x21
LOCAL_TEE = 0x22
GLOBAL_GET = 0x23
GLOBAL_SET = 0x24

# Memory
LOAD = {"i32": 0x28, "i64": 0x29, "f32": 0x2A, "f64": 0x2B}
STORE = {"i32": 0x36, "i64": 0x37, "f32": 0x38, "f64": 0x39}
MEMORY_SIZE = 0x3F
MEMORY_GROW = 0x40

CONST = {"i32": 0x41, "i64": 0x42, "f32": 0x43, "f64": 0x44}

EQZ = {"i32": 0x45, "i64": 0x50}

BINARY = {
    "i32": {
        "==": 0x46,
        "/=": 0x47,
        "<": 0x48,
        ">": 0x4A,
        "<=": 0x4C,
        ">=": 0x4E,
        "+": 0x6A,
        "-": 0x6B,
        "*": 0x6C,
        "/": 0x6D,
        "mod": 0x6F,
        "&": 0x71,
        "|": 0x72,
        "^": 0x73,
        "<<": 0x74,
        ">>": 0x75,
    },
    "i64": {
        "==": 0x51,
        "/=": 0x52,
        "<": 0x53,
        ">": 0x55,
        "<=": 0x57,
        ">=": 0x59,
        "+": 0x7C,
        "-": 0x7D,
        "*": 0x7E,
        "/": 0x7F,
        "mod": 0x81,
        "&": 0x83,
        "|": 0x84,
        "^": 0x85,
        "<<": 0x86,
        ">>": 0x87,
    },
    "f32": {
        "==": 0x5B,
        "/=": 0x5C,
        "<": 0x5D,
        ">": 0x5E,
        "<=": 0x5F,
        ">=": 0x60,
        "+": 0x92,
        "-": 0x93,
        "*": 0x94,
        "/": 0x95,
    },
    "f64": {
        "==": 0x61,
        "/=": 0x62,
        "<": 0x63,
        ">": 0x64,
        "<=": 0x65,
        ">=": 0x66,
        "+": 0xA0,
        "-": 0xA1,
        "*": 0xA2,
        "/": 0xA3,
    },
}

COMPARISONS = frozenset(["==", "/=", "<", ">", "<=", ">="])
INT_ONLY_OPS = frozenset(["mod", "&", "|", "^", "<<", ">>"])

# Unsigned integer forms reachable through ``wasm.*``
UNSIGNED = {
    "i32": {"div_u": 0x6E, "rem_u": 0x70, "shr_u": 0x76, "lt_u": 0x49, "gt_u": 0x4B, "le_u": 0x4D, "ge_u": 0x4F},
    "i64": {"div_u": 0x80, "rem_u": 0x82, "shr_u": 0x88, "lt_u": 0x54, "gt_u": 0x56, "le_u": 0x58, "ge_u": 0x5A},
}

INT_UNARY = {
    "i32": {"clz": 0x67, "ctz": 0x68, "popcnt": 0x69},
    "i64": {"clz": 0x79, "ctz": 0x7A, "popcnt": 0x7B},
}
INT_ROTATE = {
    "i32": {"rotl": 0x77, "rotr": 0x78},
    "i64": {"rotl": 0x89, "rotr": 0x8A},
}

FLOAT_UNARY = {
    "f32": {"abs": 0x8B, "neg": 0x8C, "ceil": 0x8D, "floor": 0x8E, "trunc": 0x8F, "nearest": 0x90, "sqrt": 0x91},
    "f64": {"abs": 0x99, "neg": 0x9A, "ceil": 0x9B, "floor": 0x9C, "trunc": 0x9D, "nearest": 0x9E, "sqrt": 0x9F},
}
FLOAT_BINARY = {
    "f32": {"min": 0x96, "max": 0x97, "copysign": 0x98},
    "f64": {"min": 0xA4, "max": 0xA5, "copysign": 0xA6},
}

# (from, to) -> opcode; sign-extending widening, truncating float -> int
CONVERSIONS = {
    ("i64", "i32"): 0xA7,
    ("f32", "i32"): 0xA8,
    ("f64", "i32"): 0xAA,
    ("i32", "i64"): 0xAC,
    ("f32", "i64"): 0xAE,
    ("f64", "i64"): 0xB0,
    ("i32", "f32"): 0xB2,
    ("i64", "f32"): 0xB4,
    ("f64", "f32"): 0xB6,
    ("i32", "f64"): 0xB7,
    ("i64", "f64"): 0xB9,
    ("f32", "f64"): 0xBB,
}

# wasm.reinterpret_<from>: (from, to, opcode)
REINTERPRET = {
    "reinterpret_f32": ("f32", "i32", 0xBC),
    "reinterpret_f64": ("f64", "i64", 0xBD),
    "reinterpret_i32": ("i32", "f32", 0xBE),
    "reinterpret_i64": ("i64", "f64", 0xBF),
}

SIGN_EXTEND = {
    "i32": {"extend8_s": 0xC0, "extend16_s": 0xC1},
    "i64": {"extend8_s": 0xC2, "extend16_s": 0xC3, "extend32_s": 0xC4},
}

# Saturating truncation lives under the 0xFC prefix: (to, from, signed) -> sub-opcode
PREFIX_FC = 0xFC
TRUNC_SAT = {
    ("i32", "f32", True): 0,
    ("i32", "f32", False): 1,
    ("i32", "f64", True): 2,
    ("i32", "f64", False): 3,
    ("i64", "f32", True): 4,
    ("i64", "f32", False): 5,
    ("i64", "f64", True): 6,
    ("i64", "f64", False): 7,
}

# log2 of the natural alignment for loads/stores
ALIGN = {"i32": 2, "i64": 3, "f32": 2, "f64": 3}
