from __future__ import annotations

import logging
import operator
from typing import Any, Callable, Optional

import numpy as np

from .ast import Call, Compare, Keyword, Name, Number, ReductionClause, TilingClause, to_source
from .context import CompileContext, ExplicitAxis, ReductionSpec, TileSpec
from .exceptions import ParseError
from .normalize import canonical_index

logger = logging.getLogger(__name__)

DEFAULT_TILE_SIZE = 512

BUILTIN_REDUCERS = {
    "+": operator.add,
    "*": operator.mul,
    "max": max,
    "min": min,
}

# Operators the grammar accepts in the first slot but that do not commute.
REJECTED_REDUCERS = {"-", "/", "//", "%"}


def _error(ctx: CompileContext, node: Any, message: str) -> ParseError:
    line = getattr(node, "line", None)
    lines = ctx.stmt.source.splitlines()
    line_text = lines[line - 1] if line is not None and 1 <= line <= len(lines) else None
    return ParseError(message, line=line, column=getattr(node, "column", None), line_text=line_text)


# Reduction -------------------------------------------------------------------


class ReductionReader:
    """Reads ``(op, j, unroll(4), k <= 9, init=1)`` into ``ctx.reduction``."""

    def __init__(self, ctx: CompileContext):
        self.ctx = ctx
        self.spec: ReductionSpec = ctx.reduction
        self.unrolling = False
        self.width = 0

    def read(self, clause: Optional[ReductionClause]) -> ReductionSpec:
        if clause is None:
            return self.spec
        if clause.op in REJECTED_REDUCERS:
            raise _error(
                self.ctx,
                clause,
                f"reduction operator must be associative and commutative, got {clause.op!r} in {clause.source}",
            )
        self.spec.op = clause.op
        for item in clause.items:
            self._token(item, clause)
        self.spec.explicit = bool(self.spec.order)
        if self.spec.op == "min" and self.spec.init is None:
            logger.warning(
                "min reduction starts from the element type's minimum in %s; pass init= to override",
                clause.source,
            )
        logger.debug(
            "reduction %s: loop order %s, unrolled %s",
            self.spec.op,
            self.spec.loop,
            self.spec.unroll,
        )
        return self.spec

    def _token(self, item: Any, clause: ReductionClause) -> None:
        if isinstance(item, Name):
            if item.id == "unroll":
                self.unrolling = True
                self.width = 0
            else:
                self._push(canonical_index(item.id), item, clause)
            return
        if isinstance(item, Call) and item.func == "unroll":
            if len(item.args) != 1 or not _is_int(item.args[0]) or item.args[0].value < 1:
                raise _error(self.ctx, item, f"unroll width must be a positive integer, got {to_source(item)}")
            self.unrolling = True
            self.width = item.args[0].value
            return
        if isinstance(item, Compare):
            self._bound(item, clause)
            return
        if isinstance(item, Keyword) and item.name == "init":
            self.spec.init = item.value
            return
        raise _error(
            self.ctx,
            item,
            f"expected something like (+, i, j, unroll, k) but got {to_source(item)!r} in {clause.source}",
        )

    def _bound(self, item: Compare, clause: ReductionClause) -> None:
        operands = item.operands
        if len(operands) == 2 and isinstance(operands[0], Name):
            name, axis = operands[0], ExplicitAxis(upper=operands[1])
        elif len(operands) == 3 and isinstance(operands[1], Name):
            name, axis = operands[1], ExplicitAxis(upper=operands[2], lower=operands[0])
        else:
            raise _error(
                self.ctx,
                item,
                f"expected 'j <= M' or 'N <= j <= M' but got {to_source(item)!r} in {clause.source}",
            )
        index = canonical_index(name.id)
        self.ctx.catalog.bind(index, axis)
        self._push(index, item, clause)

    def _push(self, index: str, node: Any, clause: ReductionClause) -> None:
        if index in self.spec.order:
            raise _error(self.ctx, node, f"reduction index {index} listed twice in {clause.source}")
        if self.unrolling:
            self.spec.unroll.append(index)
            self.spec.widths[index] = self.width
        else:
            self.spec.loop.append(index)


def _is_int(node: Any) -> bool:
    return isinstance(node, Number) and isinstance(node.value, int) and not isinstance(node.value, bool)


def _is_real(node: Any) -> bool:
    return isinstance(node, Number) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool)


def read_reduction(clause: Optional[ReductionClause], ctx: CompileContext) -> ReductionSpec:
    return ReductionReader(ctx).read(clause)


def reducer_for(op: str, lookup: Callable[[str], Any]) -> Callable[[Any, Any], Any]:
    fn = BUILTIN_REDUCERS.get(op)
    if fn is not None:
        return fn
    return lookup(op)


def type_min(dtype: np.dtype) -> Any:
    if dtype.kind == "f" or dtype.kind == "c":
        return dtype.type(-np.inf)
    if dtype.kind in "iu":
        return dtype.type(np.iinfo(dtype).min)
    if dtype.kind == "b":
        return dtype.type(False)
    return -np.inf


def neutral_element(op: str, dtype: np.dtype) -> Any:
    """Default accumulator start for ``op`` at element type ``dtype``.

    ``min`` starts from the type's minimum, same as ``max``. That value is not
    neutral for ``min``; pass ``init=`` (e.g. ``init=inf``) to override.
    """
    dtype = np.dtype(dtype)
    if op == "*":
        return dtype.type(1)
    if op in ("max", "min"):
        return type_min(dtype)
    return dtype.type(0)


def initial_value(spec: ReductionSpec, dtype: np.dtype, evaluate: Callable[[Any], Any]) -> Any:
    """Accumulator start: the explicit ``init=`` if given, else the neutral element.

    Literal ``0`` and ``1`` (``0.0``, ``1.0``) become the element type's zero and one; any other
    expression is evaluated as written.
    """
    dtype = np.dtype(dtype)
    if spec.init is None:
        return neutral_element(spec.op, dtype)
    if _is_real(spec.init) and spec.init.value in (0, 1):
        return dtype.type(spec.init.value)
    return evaluate(spec.init)


# Tiling ----------------------------------------------------------------------


def read_tiling(clause: Optional[TilingClause], ctx: CompileContext) -> Optional[TileSpec]:
    if clause is None:
        return None
    expected = f"expected something like {{tile(128), i, j}} but got {clause.source}"
    head, rest = clause.items[0], clause.items[1:]
    if isinstance(head, Name) and head.id == "tile":
        size = DEFAULT_TILE_SIZE
    elif isinstance(head, Call) and head.func == "tile" and len(head.args) == 1 and _is_int(head.args[0]):
        size = head.args[0].value
    else:
        raise _error(ctx, head, expected)
    if size < 1:
        raise _error(ctx, head, f"tile size must be positive in {clause.source}")
    indices = []
    for item in rest:
        if not isinstance(item, Name):
            raise _error(ctx, item, expected)
        index = canonical_index(item.id)
        if index in indices:
            raise _error(ctx, item, f"index {index} tiled twice in {clause.source}")
        indices.append(index)
    if not indices:
        raise _error(ctx, clause, f"tiling clause names no indices: {clause.source}")
    ctx.tile = TileSpec(indices=indices, size=size)
    logger.debug("tile group %s, size %d, width %d", indices, size, ctx.tile.width)
    return ctx.tile
