"""
auditable: a reactive notebook runtime with an arithmetic-to-WebAssembly compiler.

| Layer                     | Purpose                                         |
<-------------------------- + ----------------------------------------------- >
| **Cell analyzer**         | defines/uses of each cell, pragmas, templates   |
| **Dependency graph**      | const bindings → topological schedule           |
| **Reactive executor**     | cooperative runs, cancellation, goto transfers  |
| **Widgets**               | reactive and callback controls                  |
| **ATRA compiler**         | Fortran/Pascal-style kernels → WebAssembly 1.0  |
| **Instantiator**          | wasmtime host imports, linear memory, exports   |

The compiler lives in :mod:`auditable.atra`; its template front-end is
``auditable.atra.atra``.
"""

from . import atra
from . import constants as _constants
from . import ffi as _ffi
from . import runtime as _runtime
from .constants import *  # noqa: F401,F403
from .ffi import *  # noqa: F401,F403
from .runtime import *  # noqa: F401,F403

__all__ = ["atra"]
__all__ += getattr(_constants, "__all__", [])
__all__ += getattr(_ffi, "__all__", [])
__all__ += getattr(_runtime, "__all__", [])
