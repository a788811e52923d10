from __future__ import annotations

from dataclasses import replace
from typing import Any

from .ast import (
    Attr,
    BinOp,
    Call,
    Index,
    Name,
    Number,
    Statement,
    UnaryOp,
)

PLACEHOLDER = "_"
PRIME = "′"


def canonical_index(name: str) -> str:
    """``i'`` -> ``i′``; the result never collides with the bare ``i``."""
    stem = name.rstrip("'")
    return stem + PRIME * (len(name) - len(stem))


class Normalizer:
    """Rewrites primed and placeholder index tokens into canonical references."""

    # Public API ---------------------------------------------------------------
    def normalize(self, stmt: Statement) -> Statement:
        lhs = replace(stmt.lhs, indices=tuple(self._index_entry(i) for i in stmt.lhs.indices))
        return replace(stmt, lhs=lhs, rhs=self._expr(stmt.rhs))

    # Node rewrites ------------------------------------------------------------
    def _index_entry(self, entry: Any) -> Any:
        if isinstance(entry, Name):
            if entry.id == PLACEHOLDER:
                return Number(value=0, line=entry.line, column=entry.column)
            if entry.id.endswith("'"):
                return replace(entry, id=canonical_index(entry.id))
            return entry
        return self._expr(entry)

    def _expr(self, expr: Any) -> Any:
        if isinstance(expr, Index):
            return replace(
                expr,
                base=self._expr(expr.base),
                indices=tuple(self._index_entry(i) for i in expr.indices),
            )
        if isinstance(expr, Name) and expr.id.endswith("'"):
            # primed index used as a value, e.g. ``B[i'] * i'``
            return replace(expr, id=canonical_index(expr.id))
        if isinstance(expr, Attr):
            return replace(expr, base=self._expr(expr.base))
        if isinstance(expr, Call):
            return replace(expr, args=tuple(self._expr(a) for a in expr.args))
        if isinstance(expr, BinOp):
            return replace(expr, left=self._expr(expr.left), right=self._expr(expr.right))
        if isinstance(expr, UnaryOp):
            return replace(expr, value=self._expr(expr.value))
        return expr


def normalize(stmt: Statement) -> Statement:
    return Normalizer().normalize(stmt)
