from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Tuple

from .ast import Attr, BinOp, Call, Expr, First, Index, Lhs, Name, UnaryOp, walk
from .context import ArrayAxis, CompileContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArrayReference:
    bases: Tuple[str, ...]
    indices: Tuple[Expr, ...]
    axis_source: Expr

    @property
    def symbols(self) -> List[str]:
        return [idx.id for idx in self.indices if isinstance(idx, Name)]


def base_names(expr: Expr) -> List[str]:
    """Array identities behind field access, wrapping calls and index-of-index."""
    if isinstance(expr, Name):
        return [expr.id]
    if isinstance(expr, (Attr, Index)):
        return base_names(expr.base)
    if isinstance(expr, Call):
        names: List[str] = []
        for arg in expr.args:
            names.extend(n for n in base_names(arg) if n not in names)
        return names
    return []


def axis_source(expr: Expr) -> Expr:
    """Expression whose shape gives the axes of ``expr[...]``.

    An array of arrays indexed by symbols contributes its first element, so
    ``C[j].vec[k]`` derives ``k`` from ``first(C).vec``.
    """
    if isinstance(expr, Index):
        if any(isinstance(n, Name) for idx in expr.indices for n in walk(idx)):
            return First(value=axis_source(expr.base))
        return Index(base=axis_source(expr.base), indices=expr.indices)
    if isinstance(expr, Attr):
        return Attr(base=axis_source(expr.base), name=expr.name)
    if isinstance(expr, Call):
        return Call(func=expr.func, args=tuple(axis_source(a) for a in expr.args))
    return expr


class ReferenceCollector:
    def __init__(self, ctx: CompileContext):
        self.ctx = ctx

    def visit(self, expr: Any) -> None:
        if isinstance(expr, Index):
            self.visit(expr.base)
            self._record(expr)
            for idx in expr.indices:
                if not isinstance(idx, Name):
                    self.visit(idx)
        elif isinstance(expr, Attr):
            self.visit(expr.base)
        elif isinstance(expr, Call):
            for arg in expr.args:
                self.visit(arg)
        elif isinstance(expr, (list, tuple)):
            for item in expr:
                self.visit(item)
        else:
            for child in _children(expr):
                self.visit(child)

    def _record(self, ref: Index) -> None:
        bases = tuple(base_names(ref.base))
        for name in bases:
            self.ctx.add_array(name)
        source = axis_source(ref.base)
        record = ArrayReference(bases=bases, indices=ref.indices, axis_source=source)
        self.ctx.references.append(record)
        for dim, idx in enumerate(ref.indices):
            if not isinstance(idx, Name):
                continue  # constant positions carry no axis
            self.ctx.rhs_indices.append(idx.id)
            self.ctx.catalog.bind(idx.id, ArrayAxis(source=source, dim=dim))


def _children(expr: Any) -> List[Any]:
    if isinstance(expr, BinOp):
        return [expr.left, expr.right]
    if isinstance(expr, UnaryOp):
        return [expr.value]
    return []


def collect_references(rhs: Expr, ctx: CompileContext) -> None:
    ReferenceCollector(ctx).visit(rhs)
    logger.debug(
        "collected %d references over arrays %s; right-hand indices %s",
        len(ctx.references),
        ctx.arrays,
        list(dict.fromkeys(ctx.rhs_indices)),
    )


def collect_output(lhs: Lhs, ctx: CompileContext) -> None:
    """Derive left-hand axes from an existing output array (``=`` mode)."""
    if lhs.name is None:
        return
    source = Name(id=lhs.name)
    for dim, idx in enumerate(lhs.indices):
        if isinstance(idx, Name):
            ctx.catalog.bind(idx.id, ArrayAxis(source=source, dim=dim))
