from __future__ import annotations

import itertools
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np

from .ast import Name, Number
from .context import CompileContext
from .directives import initial_value, reducer_for
from .evaluator import ElementCompiler, Env, Scope, getindex
from .exceptions import AxisMismatchError, BindingError, ShapeError
from .plan import (
    Accumulate,
    LoopPlan,
    PlanNode,
    RangeLoop,
    Reduce,
    Store,
    TileLoop,
    UnrolledLoop,
)

logger = logging.getLogger(__name__)

Runner = Callable[[Env, Optional[List[Any]]], None]

# Full unrolls longer than this run in chunks of this width.
MAX_STATIC_UNROLL = 64


@dataclass
class ExecutionConfig:
    """
    Execution switches for a compiled kernel.

    * ``mode`` is ``"sequential"`` (default) or ``"threads"``. In thread mode
      the outermost output loop is split into contiguous chunks, one per worker.
    * ``workers`` fixes the pool size; ``None`` means ``os.cpu_count()``.
    """

    mode: str = "sequential"  # "sequential" | "threads"
    workers: Optional[int] = None

    def normalized(self) -> "ExecutionConfig":
        mode = (self.mode or "sequential").lower()
        if mode not in {"sequential", "threads"}:
            raise ValueError(f"Unsupported execution mode: {self.mode}")
        workers = self.workers
        if workers is not None:
            workers = int(workers)
            if workers <= 0:
                raise ValueError("workers must be positive when provided")
        elif mode == "threads":
            workers = os.cpu_count() or 1
        return replace(self, mode=mode, workers=workers)

    @property
    def parallel(self) -> bool:
        return self.mode == "threads"


def partition(values: range, workers: int) -> List[range]:
    """Contiguous, disjoint chunks covering ``values``, at most ``workers`` of them."""
    if len(values) == 0:
        return []
    size = -(-len(values) // max(workers, 1))
    return [values[start : start + size] for start in range(0, len(values), size)]


def tile_blocks(ranges: Sequence[range], widths: Sequence[int]) -> List[tuple]:
    """Cartesian product of per-axis blocks, first axis varying fastest."""
    per_axis = [
        [r[start : start + w] for start in range(0, len(r), w)] for r, w in zip(ranges, widths)
    ]
    return [tuple(reversed(combo)) for combo in itertools.product(*reversed(per_axis))]


def setindex(target: Any, key: Sequence[Any], value: Any) -> None:
    if isinstance(target, np.ndarray):
        target[tuple(key)] = value
        return
    if len(key) > 1:
        target = getindex(target, key[:-1])
    target[key[-1]] = value


class PlanExecutor:
    """Runs one ``LoopPlan`` against concrete arrays."""

    def __init__(
        self,
        plan: LoopPlan,
        ctx: CompileContext,
        bindings: Mapping[str, Any],
        config: ExecutionConfig,
    ):
        self.plan = plan
        self.ctx = ctx
        self.bindings = bindings
        self.config = config
        self.compiler = ElementCompiler(Scope(bindings), ctx.index_names)
        self.ranges: Dict[str, range] = {}
        self.pool: Optional[ThreadPoolExecutor] = None
        # Running accumulators per output cell when tiles split a reduction index.
        self.partial: Optional[Dict[tuple, Any]] = {} if _resumes(plan) else None

    # Public API ---------------------------------------------------------------
    def run(self) -> Any:
        self._resolve_axes()
        element = self.compiler.compile(self.plan.stmt.rhs)
        self.element = element
        out, dtype = self._output(element)
        self.out = out
        self.dtype = dtype
        self._keys = self._output_keys()
        root = self._lower(self.plan.root)

        if self.plan.reduction is not None:
            self.reducer = reducer_for(self.plan.reduction.op, self.compiler.scope.lookup)
            self.init = initial_value(self.plan.reduction, dtype, self.compiler.evaluate)

        logger.debug(
            "running %s: output shape %s, dtype %s, mode %s",
            self.plan.stmt.source,
            np.shape(out),
            dtype,
            self.config.mode,
        )
        if self.config.parallel and (self.config.workers or 1) > 1:
            with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
                self.pool = pool
                root({}, None)
            self.pool = None
        else:
            root({}, None)
        if self.partial is not None:
            self._flush_partial()
        return out

    # Axes ---------------------------------------------------------------------
    def _resolve_axes(self) -> None:
        for index, axis in self.ctx.catalog.items():
            self.ranges[index] = self.compiler.resolve_axis(axis)
        for check in self.ctx.catalog.checks:
            expected = self.compiler.resolve_axis(check.expected)
            actual = self.compiler.resolve_axis(check.actual)
            if expected != actual:
                raise AxisMismatchError(check.index, expected, actual)

    # Output -------------------------------------------------------------------
    def _output(self, element: Callable[[Env], Any]):
        lhs = self.plan.stmt.lhs
        if self.plan.stmt.allocates:
            sample = {}
            for index in self.plan.symbols:
                r = self.ranges[index]
                if len(r) == 0:
                    raise ShapeError(f"cannot infer the element type: range of index {index} is empty")
                sample[index] = r[0]
            dtype = np.asarray(element(sample)).dtype
            shape = tuple(
                len(self.ranges[idx.id]) if isinstance(idx, Name) else 1 for idx in lhs.indices
            )
            return np.empty(shape, dtype=dtype), dtype
        if lhs.name not in self.bindings:
            raise BindingError(f"output array {lhs.name!r} must be passed to update it in place")
        out = self.bindings[lhs.name]
        dtype = getattr(out, "dtype", None)
        if dtype is None:
            dtype = np.asarray(out).dtype
        return out, np.dtype(dtype)

    def _output_keys(self) -> List[Callable[[Env], Any]]:
        keys = []
        for idx in self.plan.stmt.lhs.indices:
            if isinstance(idx, Name):
                keys.append(lambda ix, n=idx.id: ix[n])
            elif isinstance(idx, Number):
                keys.append(lambda ix, v=idx.value: v)
            else:
                keys.append(self.compiler.compile(idx))
        return keys

    def _store(self, ix: Env, value: Any) -> None:
        setindex(self.out, [k(ix) for k in self._keys], value)

    def _cell(self, ix: Env) -> tuple:
        return tuple(ix[n] for n in self.plan.output_indices)

    def _flush_partial(self) -> None:
        names = self.plan.output_indices
        ix: Env = {}
        for cell in itertools.product(*(self.ranges[n] for n in names)):
            ix.update(zip(names, cell))
            self._store(ix, self.partial.get(cell, self.init))

    # Lowering -----------------------------------------------------------------
    def _lower(self, node: PlanNode) -> Runner:
        if isinstance(node, Store):
            element, store = self.element, self._store
            return lambda ix, acc: store(ix, element(ix))
        if isinstance(node, Accumulate):
            element = self.element

            def accumulate(ix, acc):
                acc[0] = self.reducer(acc[0], element(ix))

            return accumulate
        if isinstance(node, Reduce):
            return self._lower_reduce(node)
        if isinstance(node, RangeLoop):
            if node.parallel and self.config.parallel:
                return self._lower_parallel(node)
            return self._lower_range(node)
        if isinstance(node, UnrolledLoop):
            return self._lower_unrolled(node)
        if isinstance(node, TileLoop):
            return self._lower_tiles(node)
        raise TypeError(f"unknown plan node {type(node).__name__}")

    def _lower_reduce(self, node: Reduce) -> Runner:
        body = self._lower(node.body)
        store, cell, partial = self._store, self._cell, self.partial

        if node.resume:

            def resume(ix, _acc):
                key = cell(ix)
                acc = [partial.get(key, self.init)]
                body(ix, acc)
                partial[key] = acc[0]

            return resume

        def reduce(ix, _acc):
            # one accumulator slot per output cell, private to the running worker
            acc = [self.init]
            body(ix, acc)
            store(ix, acc[0])

        return reduce

    def _lower_range(self, node: RangeLoop) -> Runner:
        body, index, ranges = self._lower(node.body), node.index, self.ranges

        def loop(ix, acc):
            for value in ranges[index]:
                ix[index] = value
                body(ix, acc)

        return loop

    def _lower_parallel(self, node: RangeLoop) -> Runner:
        body, index, ranges = self._lower(node.body), node.index, self.ranges

        def work(chunk: range, ix: Env) -> None:
            for value in chunk:
                ix[index] = value
                body(ix, None)

        def loop(ix, acc):
            pool = self.pool
            chunks = partition(ranges[index], self.config.workers or 1)
            if pool is None or len(chunks) <= 1:
                for chunk in chunks:
                    work(chunk, ix)
                return
            futures = [pool.submit(work, chunk, dict(ix)) for chunk in chunks]
            for future in futures:
                future.result()

        return loop

    def _lower_unrolled(self, node: UnrolledLoop) -> Runner:
        body, index, ranges = self._lower(node.body), node.index, self.ranges

        def unrolled(ix, acc):
            r = ranges[index]
            width = node.width or len(r)
            width = min(width, MAX_STATIC_UNROLL) if node.width == 0 else width
            if width == 0:
                return
            offsets = range(width)
            stop = len(r) - len(r) % width
            for start in r[0:stop:width]:
                # fixed-length chunk; the remainder runs below
                for offset in offsets:
                    ix[index] = start + offset
                    body(ix, acc)
            for value in r[stop:]:
                ix[index] = value
                body(ix, acc)

        return unrolled

    def _lower_tiles(self, node: TileLoop) -> Runner:
        body, ranges = self._lower(node.body), self.ranges

        def tiles(ix, acc):
            full = [ranges[i] for i in node.indices]
            try:
                for block in tile_blocks(full, node.widths):
                    ranges.update(zip(node.indices, block))
                    body(ix, acc)
            finally:
                ranges.update(zip(node.indices, full))

        return tiles


def _resumes(plan: LoopPlan) -> bool:
    return any(isinstance(node, Reduce) and node.resume for node in plan.nodes())


def execute(
    plan: LoopPlan,
    ctx: CompileContext,
    bindings: Mapping[str, Any],
    config: Optional[ExecutionConfig] = None,
) -> Any:
    cfg = (config or ExecutionConfig()).normalized()
    return PlanExecutor(plan, ctx, bindings, cfg).run()
