from __future__ import annotations

import logging
from typing import Any, List, Optional

from .ast import Name, Number, lhs_source, to_source
from .collect import collect_output, collect_references
from .context import CompileContext
from .directives import read_reduction, read_tiling
from .exceptions import ParseError
from .executor import ExecutionConfig, execute
from .normalize import normalize
from .parser import parse_expression
from .plan import LoopPlan, build_plan

logger = logging.getLogger(__name__)


class Kernel:
    """An index-notation assignment compiled to a loop plan.

    >>> k = Kernel("A[i] := B[i,j] * C[k]  (+, j, k)")
    >>> k.reduction_indices
    ['j', 'k']

    Calling the kernel with the referenced arrays as keyword arguments runs
    the plan and returns the output array (new for ``:=``, the supplied one
    updated in place for ``=``, ``+=``, ``-=`` and ``*=``).
    """

    def __init__(self, source: str, *, config: Optional[ExecutionConfig] = None):
        self.source = source
        self.config = (config or ExecutionConfig()).normalized()
        stmt = normalize(parse_expression(source))
        self._check_lhs(stmt)
        self.ctx = CompileContext(stmt=stmt)
        # Explicit bounds from the reduction clause are bound before any array
        # derivation, which then only adds agreement checks.
        read_reduction(stmt.reduction, self.ctx)
        read_tiling(stmt.tiling, self.ctx)
        collect_references(stmt.rhs, self.ctx)
        if not stmt.allocates:
            collect_output(stmt.lhs, self.ctx)
        self.plan: LoopPlan = build_plan(self.ctx, parallel=self.config.parallel)

    @staticmethod
    def _check_lhs(stmt) -> None:
        lines = stmt.source.splitlines()
        for idx in stmt.lhs.indices:
            if isinstance(idx, Name):
                continue
            if not isinstance(idx, Number) or not isinstance(idx.value, int):
                message = f"can't understand LHS {lhs_source(stmt.lhs)}: {to_source(idx)} is not an index"
            elif stmt.allocates and idx.value != 0:
                message = f"only '_' may fix a position of a new array, got {to_source(idx)} in {lhs_source(stmt.lhs)}"
            else:
                continue
            line_text = lines[idx.line - 1] if idx.line and idx.line <= len(lines) else None
            raise ParseError(message, line=idx.line, column=idx.column, line_text=line_text)

    # Introspection ------------------------------------------------------------
    @property
    def output(self) -> Optional[str]:
        return self.ctx.stmt.lhs.name

    @property
    def output_indices(self) -> List[str]:
        return list(self.plan.output_indices)

    @property
    def reduction_indices(self) -> List[str]:
        return list(self.plan.reduction_indices)

    @property
    def arrays(self) -> List[str]:
        return list(self.ctx.arrays)

    def explain(self) -> str:
        return self.plan.describe()

    # Execution ----------------------------------------------------------------
    def __call__(self, **arrays: Any) -> Any:
        return execute(self.plan, self.ctx, arrays, self.config)

    def __repr__(self) -> str:
        return f"Kernel({self.source!r})"


def run(source: str, config: Optional[ExecutionConfig] = None, **arrays: Any) -> Any:
    """Compile ``source`` and evaluate it once against ``arrays``."""
    return Kernel(source, config=config)(**arrays)
