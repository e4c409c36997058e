"""Reactive notebook runtime: cell analysis, dependency graph and executor."""

from . import core as _core
from . import analysis as _analysis
from . import dag as _dag
from . import executor as _executor
from . import widgets as _widgets
from . import stdlib as _stdlib
from . import modules as _modules
from . import notebook as _notebook
from .cli import main, parse_args

from .core import *
from .analysis import *
from .dag import *
from .executor import *
from .widgets import *
from .stdlib import *
from .modules import *
from .notebook import *

__all__ = []
for module in (_core, _analysis, _dag, _executor, _widgets, _stdlib, _modules, _notebook):
    __all__.extend(getattr(module, '__all__', []))
__all__ += ['main', 'parse_args']
__all__ = list(dict.fromkeys(__all__))
