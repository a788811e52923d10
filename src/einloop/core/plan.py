from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .ast import Statement, lhs_source, to_source
from .context import (
    AxisExpr,
    CompileContext,
    ExplicitAxis,
    IndexSymbol,
    ReductionSpec,
    Role,
    TileSpec,
)
from .exceptions import AmbiguityError, CompletenessError, ShapeError

logger = logging.getLogger(__name__)


# Plan nodes ------------------------------------------------------------------


@dataclass
class Store:
    """``Z[out...] = element(indices)``."""


@dataclass
class Accumulate:
    """``acc = op(acc, element(indices))``."""


@dataclass
class Reduce:
    """Initialise the accumulator, run ``body``, then store it to the output cell.

    With ``resume`` the accumulator starts from the output cell instead, so
    that tiles over a reduction index add up to a single pass.
    """

    op: str
    body: "PlanNode"
    resume: bool = False


@dataclass
class RangeLoop:
    index: str
    axis: AxisExpr
    body: "PlanNode"
    parallel: bool = False


@dataclass
class UnrolledLoop:
    index: str
    axis: AxisExpr
    width: int  # 0 unrolls the whole range
    body: "PlanNode"


@dataclass
class TileLoop:
    """Iterates blocks of the grouped axes, rebinding each index to its block."""

    indices: Tuple[str, ...]
    widths: Tuple[int, ...]
    body: "PlanNode"


PlanNode = Union[Store, Accumulate, Reduce, RangeLoop, UnrolledLoop, TileLoop]


@dataclass
class LoopPlan:
    stmt: Statement
    root: PlanNode
    output_indices: List[str]
    reduction: Optional[ReductionSpec] = None
    tile: Optional[TileSpec] = None
    symbols: Dict[str, IndexSymbol] = field(default_factory=dict)

    @property
    def reduction_indices(self) -> List[str]:
        return self.reduction.order if self.reduction is not None else []

    def nodes(self) -> Iterator[PlanNode]:
        node: Any = self.root
        while node is not None:
            yield node
            node = getattr(node, "body", None)

    def loop_order(self) -> List[str]:
        """Loop indices from outermost to innermost."""
        return [n.index for n in self.nodes() if isinstance(n, (RangeLoop, UnrolledLoop))]

    def describe(self) -> str:
        lines: List[str] = []
        target = lhs_source(self.stmt.lhs)
        element = to_source(self.stmt.rhs)
        depth = 0
        for node in self.nodes():
            pad = "  " * depth
            if isinstance(node, TileLoop):
                lines.append(
                    f"{pad}for tile in tiles({', '.join(node.indices)}; width={node.widths[0]})"
                )
            elif isinstance(node, RangeLoop):
                prefix = "parallel " if node.parallel else ""
                lines.append(f"{pad}{prefix}for {node.index} in {node.axis.describe()}")
            elif isinstance(node, UnrolledLoop):
                width = f"({node.width})" if node.width else ""
                lines.append(f"{pad}@unroll{width} for {node.index} in {node.axis.describe()}")
            elif isinstance(node, Reduce):
                start = target if node.resume else f"init({node.op})"
                lines.append(f"{pad}acc = {start}")
                self._describe_reduction(lines, node, depth, element)
                lines.append(f"{pad}{target} = acc")
                break
            elif isinstance(node, Store):
                lines.append(f"{pad}{target} = {element}")
            depth += 1
        return "\n".join(lines)

    def _describe_reduction(self, lines: List[str], node: Reduce, depth: int, element: str) -> None:
        inner: Any = node.body
        while not isinstance(inner, Accumulate):
            pad = "  " * depth
            if isinstance(inner, UnrolledLoop):
                width = f"({inner.width})" if inner.width else ""
                lines.append(f"{pad}@unroll{width} for {inner.index} in {inner.axis.describe()}")
            else:
                lines.append(f"{pad}for {inner.index} in {inner.axis.describe()}")
            inner = inner.body
            depth += 1
        pad = "  " * depth
        if node.op in ("+", "*"):
            lines.append(f"{pad}acc = acc {node.op} {element}")
        else:
            lines.append(f"{pad}acc = {node.op}(acc, {element})")


# Builder ---------------------------------------------------------------------


class PlanBuilder:
    """Turns the finished compilation context into a ``LoopPlan``."""

    def __init__(self, ctx: CompileContext, *, parallel: bool = False):
        self.ctx = ctx
        self.parallel = parallel

    def build(self) -> LoopPlan:
        reduction = self._reconcile()
        self._register_symbols()
        self._check_directives()

        body: PlanNode
        if reduction:
            body = self._reduction_body()
        else:
            body = Store()

        # Leftmost output index innermost, rightmost outermost.
        outputs = self.ctx.output_indices
        for n, index in enumerate(outputs):
            outermost = n == len(outputs) - 1
            body = RangeLoop(
                index=index,
                axis=self.ctx.catalog[index],
                body=body,
                parallel=self.parallel and outermost,
            )

        tile = self.ctx.tile
        if tile is not None:
            width = tile.width
            body = TileLoop(indices=tuple(tile.indices), widths=(width,) * len(tile.indices), body=body)

        plan = LoopPlan(
            stmt=self.ctx.stmt,
            root=body,
            output_indices=outputs,
            reduction=self.ctx.reduction if reduction else None,
            tile=tile,
            symbols=self.ctx.symbols,
        )
        logger.debug("loop plan for %s:\n%s", self.ctx.stmt.source, plan.describe())
        return plan

    # Reduction set --------------------------------------------------------------
    def _reconcile(self) -> List[str]:
        spec = self.ctx.reduction
        implicit = self.ctx.reduction_indices
        if spec.explicit:
            given = spec.order
            if sorted(given) != sorted(implicit):
                missing = sorted(set(implicit) - set(given))
                extra = sorted(set(given) - set(implicit))
                details = []
                if missing:
                    details.append(f"missing {', '.join(missing)}")
                if extra:
                    details.append(f"not reduction indices: {', '.join(extra)}")
                raise CompletenessError(
                    "if you give any reduction indices, you must give them all: "
                    f"expected {{{', '.join(implicit)}}} ({'; '.join(details)}) in {self.ctx.stmt.source}"
                )
        else:
            spec.loop = list(implicit)
        return spec.order

    def _register_symbols(self) -> None:
        spec = self.ctx.reduction
        tiled = set(self.ctx.tile.indices) if self.ctx.tile is not None else set()
        for index in self.ctx.output_indices + spec.order:
            axis = self.ctx.catalog.get(index)
            if axis is None:
                raise ShapeError(
                    f"cannot infer the range of index {index}: it indexes no array in {self.ctx.stmt.source}"
                )
            role = Role.OUTPUT if index in self.ctx.output_indices else Role.REDUCTION
            self.ctx.symbols[index] = IndexSymbol(
                name=index,
                role=role,
                bound=axis if isinstance(axis, ExplicitAxis) else None,
                unroll=spec.widths.get(index) if index in spec.unroll else None,
                tiled=index in tiled,
            )

    def _check_directives(self) -> None:
        tile = self.ctx.tile
        if tile is None:
            return
        unrolled = [i for i in tile.indices if i in self.ctx.reduction.unroll]
        if unrolled:
            raise AmbiguityError(
                f"index {', '.join(unrolled)} cannot be both tiled and unrolled in {self.ctx.stmt.source}"
            )
        unknown = [i for i in tile.indices if i not in self.ctx.symbols]
        if unknown:
            raise ShapeError(f"tiled index {', '.join(unknown)} does not appear in {self.ctx.stmt.source}")

    def _reduction_body(self) -> Reduce:
        spec = self.ctx.reduction
        catalog = self.ctx.catalog
        inner: PlanNode = Accumulate()
        # The last unrolled index ends up innermost; plain loops wrap all unrolled ones.
        for index in reversed(spec.unroll):
            inner = UnrolledLoop(index=index, axis=catalog[index], width=spec.widths[index], body=inner)
        for index in reversed(spec.loop):
            inner = RangeLoop(index=index, axis=catalog[index], body=inner)
        tile = self.ctx.tile
        resume = tile is not None and any(i in spec.order for i in tile.indices)
        return Reduce(op=spec.op, body=inner, resume=resume)


def build_plan(ctx: CompileContext, *, parallel: bool = False) -> LoopPlan:
    return PlanBuilder(ctx, parallel=parallel).build()
