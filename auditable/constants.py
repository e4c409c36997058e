"""Shared constant values for the auditable runtime and the ATRA compiler."""

# Cell kinds
KIND_CODE = "code"
KIND_MARKUP = "markup"
KIND_STYLE = "style"
KIND_HTML = "html"
CELL_KINDS = [KIND_CODE, KIND_MARKUP, KIND_STYLE, KIND_HTML]

# Cell states
STATE_IDLE = "idle"
STATE_SCHEDULED = "scheduled"
STATE_RUNNING = "running"
STATE_OK = "ok"
STATE_FAILED = "failed"
STATE_CANCELED = "canceled"
STATE_SKIPPED = "skipped"
TERMINAL_STATES = [STATE_OK, STATE_FAILED, STATE_CANCELED, STATE_SKIPPED]

STATE_COLORS = {
    STATE_IDLE: "#B0BEC5",
    STATE_SCHEDULED: "#FFF59D",
    STATE_RUNNING: "#90CAF9",
    STATE_OK: "#8BC34A",
    STATE_FAILED: "#FF7043",
    STATE_CANCELED: "#FFB74D",
    STATE_SKIPPED: "#CFD8DC",
}

# Observer event kinds that are not state transitions
EVENT_SHADOW = "shadow"
EVENT_ANALYSIS_WARNING = "analysis-warning"
EVENT_CYCLE_DETECTED = "cycle-detected"
EVENT_LOOP_LIMIT = "loop-limit-reached"
EVENT_GOTO_MISSING = "goto-target-missing"
DIAGNOSTIC_EVENTS = [
    EVENT_SHADOW,
    EVENT_ANALYSIS_WARNING,
    EVENT_CYCLE_DETECTED,
    EVENT_LOOP_LIMIT,
    EVENT_GOTO_MISSING,
]

# Trigger sources
TRIGGER_EDIT = "edit"
TRIGGER_RUN = "run"
TRIGGER_RUN_ALL = "run-all"
TRIGGER_WIDGET = "widget"
PREEMPTING_TRIGGERS = [TRIGGER_EDIT, TRIGGER_RUN, TRIGGER_RUN_ALL]

# Pragmas recognised in cell sources (``// %name`` or ``# %name``)
PRAGMA_MANUAL = "manual"
PRAGMA_NAME = "name"
PRAGMA_GOTO = "goto"
PRAGMA_HIDE = "hide"
PRAGMA_NORUN = "norun"
PRAGMA_COLLAPSED = "collapsed"

GOTO_NAME = "__goto"
GOTO_LIMIT = 1000

BINDING_CONST = "const"
BINDING_MUTABLE = ("let", "var")

WIDGET_NAMES = ["slider", "dropdown", "checkbox", "text_input"]

RESERVED_NAMES = [
    "io",
    "cancel",
    "invalidation",
    "std",
    "load",
    "install",
    "install_binary",
    *WIDGET_NAMES,
]

# ATRA
ATRA_TYPES = ["i32", "i64", "f32", "f64"]
INT_TYPES = ["i32", "i64"]
FLOAT_TYPES = ["f32", "f64"]

TYPE_SIZES = {"i32": 4, "i64": 8, "f32": 4, "f64": 8}

MATH_BUILTINS = {"sin": 1, "cos": 1, "ln": 1, "exp": 1, "pow": 2, "atan2": 2}

NATIVE_BUILTINS = [
    "sqrt",
    "abs",
    "floor",
    "ceil",
    "trunc",
    "nearest",
    "copysign",
    "min",
    "max",
    "select",
    "clz",
    "ctz",
    "popcnt",
    "rotl",
    "rotr",
    "memory_size",
    "memory_grow",
]

WASM_ESCAPES = [
    "div_u",
    "rem_u",
    "shr_u",
    "lt_u",
    "gt_u",
    "le_u",
    "ge_u",
    "reinterpret_f64",
    "reinterpret_f32",
    "reinterpret_i64",
    "reinterpret_i32",
    "extend8_s",
    "extend16_s",
    "extend32_s",
    "trunc_sat_s",
    "trunc_sat_u",
]

INTERP_PREFIX = "__INTERP_"
HOST_MODULE = "host"
MATH_MODULE = "math"
ENV_MODULE = "env"
MEMORY_EXPORT = "memory"
PAGE_SIZE = 65536

__all__ = [
    "KIND_CODE",
    "KIND_MARKUP",
    "KIND_STYLE",
    "KIND_HTML",
    "CELL_KINDS",
    "STATE_IDLE",
    "STATE_SCHEDULED",
    "STATE_RUNNING",
    "STATE_OK",
    "STATE_FAILED",
    "STATE_CANCELED",
    "STATE_SKIPPED",
    "TERMINAL_STATES",
    "STATE_COLORS",
    "EVENT_SHADOW",
    "EVENT_ANALYSIS_WARNING",
    "EVENT_CYCLE_DETECTED",
    "EVENT_LOOP_LIMIT",
    "EVENT_GOTO_MISSING",
    "DIAGNOSTIC_EVENTS",
    "TRIGGER_EDIT",
    "TRIGGER_RUN",
    "TRIGGER_RUN_ALL",
    "TRIGGER_WIDGET",
    "PREEMPTING_TRIGGERS",
    "PRAGMA_MANUAL",
    "PRAGMA_NAME",
    "PRAGMA_GOTO",
    "PRAGMA_HIDE",
    "PRAGMA_NORUN",
    "PRAGMA_COLLAPSED",
    "GOTO_NAME",
    "GOTO_LIMIT",
    "BINDING_CONST",
    "BINDING_MUTABLE",
    "WIDGET_NAMES",
    "RESERVED_NAMES",
    "ATRA_TYPES",
    "INT_TYPES",
    "FLOAT_TYPES",
    "TYPE_SIZES",
    "MATH_BUILTINS",
    "NATIVE_BUILTINS",
    "WASM_ESCAPES",
    "INTERP_PREFIX",
    "HOST_MODULE",
    "MATH_MODULE",
    "ENV_MODULE",
    "MEMORY_EXPORT",
    "PAGE_SIZE",
]
