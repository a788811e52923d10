from __future__ import annotations

import math
import operator
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence

import numpy as np

from .ast import Attr, BinOp, Call, Expr, First, Index, Name, Number, UnaryOp, to_source
from .context import ArrayAxis, AxisExpr, ExplicitAxis
from .exceptions import BindingError, ShapeError

Env = Dict[str, int]
Element = Callable[[Env], Any]

BINARY_OPS = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "//": operator.floordiv,
    "%": operator.mod,
    "**": operator.pow,
    "^": operator.pow,
}

UNARY_OPS = {
    "-": operator.neg,
    "+": operator.pos,
}


def first(value: Any) -> Any:
    """First element of an array (flat order) or of any iterable."""
    flat = getattr(value, "flat", None)
    try:
        if flat is not None:
            return flat[0]
        return next(iter(value))
    except (IndexError, StopIteration) as exc:
        raise ShapeError("cannot take the first element of an empty array") from exc


def getindex(value: Any, key: Sequence[Any]) -> Any:
    if isinstance(value, np.ndarray):
        return value[tuple(key)]
    if len(key) == 1:
        return value[key[0]]
    for k in key:
        value = value[k]
    return value


def axis_range(value: Any, dim: int) -> range:
    shape = getattr(value, "shape", None)
    if shape is not None:
        if dim >= len(shape):
            raise ShapeError(f"array of shape {tuple(shape)} has no dimension {dim}")
        return range(int(shape[dim]))
    for _ in range(dim):
        value = first(value)
    try:
        return range(len(value))
    except TypeError as exc:
        raise ShapeError(f"value of type {type(value).__name__} has no dimension {dim}") from exc


class Scope:
    """Name lookup: supplied bindings, then NumPy, then ``math``."""

    def __init__(self, bindings: Mapping[str, Any]):
        self.bindings = bindings

    def lookup(self, name: str) -> Any:
        if name in self.bindings:
            return self.bindings[name]
        for namespace in (np, math):
            if hasattr(namespace, name):
                return getattr(namespace, name)
        raise BindingError(f"name {name!r} is not bound; pass it as a keyword argument")


class ElementCompiler:
    """Lowers an expression tree to a closure over the bound arrays.

    The closure takes the current index values as a dict; names that are
    index symbols read from it, every other name is resolved once, here.
    """

    def __init__(self, scope: Scope, index_names: Iterable[str]):
        self.scope = scope
        self.index_names = set(index_names)

    def compile(self, expr: Expr) -> Element:
        if isinstance(expr, Name):
            name = expr.id
            if name in self.index_names:
                return lambda ix: ix[name]
            value = self.scope.lookup(name)
            return lambda ix: value
        if isinstance(expr, Number):
            const = expr.value
            return lambda ix: const
        if isinstance(expr, Index):
            return self._index(expr)
        if isinstance(expr, Attr):
            base = self.compile(expr.base)
            attr = expr.name
            return lambda ix: getattr(base(ix), attr)
        if isinstance(expr, First):
            inner = self.compile(expr.value)
            return lambda ix: first(inner(ix))
        if isinstance(expr, Call):
            return self._call(expr)
        if isinstance(expr, BinOp):
            fn = BINARY_OPS[expr.op]
            left = self.compile(expr.left)
            right = self.compile(expr.right)
            return lambda ix: fn(left(ix), right(ix))
        if isinstance(expr, UnaryOp):
            fn = UNARY_OPS[expr.op]
            value = self.compile(expr.value)
            return lambda ix: fn(value(ix))
        raise TypeError(f"cannot evaluate {type(expr).__name__}: {to_source(expr)}")

    def evaluate(self, expr: Expr, ix: Optional[Env] = None) -> Any:
        return self.compile(expr)(ix or {})

    def _index(self, expr: Index) -> Element:
        base = self.compile(expr.base)
        keys = [self.compile(idx) for idx in expr.indices]
        if len(keys) == 1:
            key = keys[0]
            return lambda ix: base(ix)[key(ix)]
        if all(isinstance(idx, Name) and idx.id in self.index_names for idx in expr.indices):
            names = [idx.id for idx in expr.indices]
            return lambda ix: getindex(base(ix), [ix[n] for n in names])
        return lambda ix: getindex(base(ix), [k(ix) for k in keys])

    def _call(self, expr: Call) -> Element:
        fn = self.scope.lookup(expr.func)
        if not callable(fn):
            raise BindingError(f"{expr.func!r} is called in the expression but is not callable")
        args = [self.compile(arg) for arg in expr.args]
        if len(args) == 1:
            arg = args[0]
            return lambda ix: fn(arg(ix))
        return lambda ix: fn(*[a(ix) for a in args])

    # Axes ---------------------------------------------------------------------
    def resolve_axis(self, axis: AxisExpr) -> range:
        if isinstance(axis, ArrayAxis):
            return axis_range(self.evaluate(axis.source), axis.dim)
        if isinstance(axis, ExplicitAxis):
            lower = 0 if axis.lower is None else int(self.evaluate(axis.lower))
            upper = int(self.evaluate(axis.upper))
            return range(lower, upper + 1)
        raise TypeError(f"unknown axis expression {axis!r}")
