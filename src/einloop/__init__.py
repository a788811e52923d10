from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _load_version

from .core.directives import neutral_element
from .core.exceptions import (
    AmbiguityError,
    AxisMismatchError,
    BindingError,
    CompletenessError,
    EinloopError,
    ParseError,
    ShapeError,
)
from .core.executor import ExecutionConfig
from .core.kernel import Kernel, run
from .core.plan import LoopPlan

try:
    __version__ = _load_version("einloop")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "Kernel",
    "run",
    "ExecutionConfig",
    "LoopPlan",
    "neutral_element",
    "EinloopError",
    "ParseError",
    "ShapeError",
    "AxisMismatchError",
    "CompletenessError",
    "AmbiguityError",
    "BindingError",
    "__version__",
]
