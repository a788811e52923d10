from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .ast import Expr, Statement, symbol_names, to_source

logger = logging.getLogger(__name__)


class Role(Enum):
    OUTPUT = "output"
    REDUCTION = "reduction"


@dataclass(frozen=True)
class ArrayAxis:
    """Valid index range of dimension ``dim`` of the value of ``source``."""

    source: Expr
    dim: int

    def describe(self) -> str:
        return f"axes({to_source(self.source)}, {self.dim})"


@dataclass(frozen=True)
class ExplicitAxis:
    """Inclusive range ``lower..upper``; ``lower=None`` starts at 0."""

    upper: Expr
    lower: Optional[Expr] = None

    def describe(self) -> str:
        lower = "0" if self.lower is None else to_source(self.lower)
        return f"{lower}:{to_source(self.upper)}"


AxisExpr = Union[ArrayAxis, ExplicitAxis]


@dataclass(frozen=True)
class AxisCheck:
    index: str
    expected: AxisExpr
    actual: AxisExpr


@dataclass
class IndexSymbol:
    name: str
    role: Role
    bound: Optional[ExplicitAxis] = None
    unroll: Optional[int] = None  # None: plain loop, 0: full unroll, N: width N
    tiled: bool = False


class AxisCatalog:
    """Index symbol -> axis range expression, plus deferred agreement checks."""

    def __init__(self):
        self._axes: Dict[str, AxisExpr] = {}
        self.checks: List[AxisCheck] = []

    def __contains__(self, index: str) -> bool:
        return index in self._axes

    def __getitem__(self, index: str) -> AxisExpr:
        return self._axes[index]

    def get(self, index: str) -> Optional[AxisExpr]:
        return self._axes.get(index)

    def items(self):
        return self._axes.items()

    def bind(self, index: str, candidate: AxisExpr) -> None:
        existing = self._axes.get(index)
        if existing is None:
            self._axes[index] = candidate
            logger.debug("bound index %s to %s", index, candidate.describe())
            return
        if existing == candidate:
            return
        check = AxisCheck(index=index, expected=existing, actual=candidate)
        if check not in self.checks:
            self.checks.append(check)
            logger.debug(
                "index %s derived again from %s; deferring agreement check against %s",
                index,
                candidate.describe(),
                existing.describe(),
            )


@dataclass
class ReductionSpec:
    op: str = "+"
    init: Optional[Expr] = None
    loop: List[str] = field(default_factory=list)
    unroll: List[str] = field(default_factory=list)
    widths: Dict[str, int] = field(default_factory=dict)
    explicit: bool = False

    @property
    def order(self) -> List[str]:
        return self.loop + self.unroll


@dataclass
class TileSpec:
    indices: List[str] = field(default_factory=list)
    size: int = 512

    @property
    def width(self) -> int:
        return tile_width(self.size, len(self.indices))


def tile_width(size: int, group: int) -> int:
    """``floor(size ** (1 / group))`` without floating-point round-off."""
    if group <= 0:
        return size
    width = max(int(round(size ** (1.0 / group))), 1)
    while width ** group > size:
        width -= 1
    while (width + 1) ** group <= size:
        width += 1
    return max(width, 1)


@dataclass
class CompileContext:
    """State threaded through every compiler pass for one expression."""

    stmt: Statement
    catalog: AxisCatalog = field(default_factory=AxisCatalog)
    arrays: List[str] = field(default_factory=list)
    references: List[Any] = field(default_factory=list)
    rhs_indices: List[str] = field(default_factory=list)
    reduction: ReductionSpec = field(default_factory=ReductionSpec)
    tile: Optional[TileSpec] = None
    symbols: Dict[str, IndexSymbol] = field(default_factory=dict)

    def add_array(self, name: str) -> None:
        if name not in self.arrays:
            self.arrays.append(name)

    @property
    def output_indices(self) -> List[str]:
        return list(dict.fromkeys(symbol_names(list(self.stmt.lhs.indices))))

    @property
    def reduction_indices(self) -> List[str]:
        """Right-hand indices absent from the left, in first-occurrence order."""
        lhs = set(self.output_indices)
        return [i for i in dict.fromkeys(self.rhs_indices) if i not in lhs]

    @property
    def index_names(self) -> List[str]:
        return list(dict.fromkeys(self.output_indices + list(self.rhs_indices)))
