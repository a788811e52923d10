from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional, Tuple

# Positions are excluded from equality so that two derivations of the same
# axis written at different places in the source compare equal.


@dataclass(frozen=True)
class Node:
    line: Optional[int] = field(default=None, compare=False, repr=False)
    column: Optional[int] = field(default=None, compare=False, repr=False)


# Expressions -----------------------------------------------------------------


Expr = Any  # Name | Number | Index | Attr | Call | BinOp | UnaryOp


@dataclass(frozen=True)
class Name(Node):
    id: str = ""


@dataclass(frozen=True)
class Number(Node):
    value: Any = 0


@dataclass(frozen=True)
class Index(Node):
    base: Expr = None
    indices: Tuple[Expr, ...] = ()


@dataclass(frozen=True)
class Attr(Node):
    base: Expr = None
    name: str = ""


@dataclass(frozen=True)
class Call(Node):
    func: str = ""
    args: Tuple[Expr, ...] = ()


@dataclass(frozen=True)
class BinOp(Node):
    left: Expr = None
    op: str = ""
    right: Expr = None


@dataclass(frozen=True)
class UnaryOp(Node):
    op: str = ""
    value: Expr = None


@dataclass(frozen=True)
class First(Node):
    """First element of an array of arrays; only produced for axis sources."""

    value: Expr = None


# Directive clauses -----------------------------------------------------------


@dataclass(frozen=True)
class Compare(Node):
    """Chained ``<=`` comparison, e.g. ``1 <= j <= 10``."""

    operands: Tuple[Expr, ...] = ()


@dataclass(frozen=True)
class Keyword(Node):
    name: str = ""
    value: Expr = None


@dataclass(frozen=True)
class ReductionClause(Node):
    op: str = "+"
    items: Tuple[Expr, ...] = ()
    source: str = field(default="", compare=False)


@dataclass(frozen=True)
class TilingClause(Node):
    items: Tuple[Expr, ...] = ()
    source: str = field(default="", compare=False)


# Statement -------------------------------------------------------------------


@dataclass(frozen=True)
class Lhs(Node):
    name: Optional[str] = None
    indices: Tuple[Expr, ...] = ()


@dataclass(frozen=True)
class Statement(Node):
    lhs: Lhs = None  # type: ignore
    op: str = ":="
    rhs: Expr = None
    reduction: Optional[ReductionClause] = None
    tiling: Optional[TilingClause] = None
    source: str = field(default="", compare=False)

    @property
    def allocates(self) -> bool:
        return self.op == ":="


def walk(expr: Expr) -> Iterator[Expr]:
    """Pre-order traversal of an expression tree."""
    yield expr
    if isinstance(expr, Index):
        yield from walk(expr.base)
        for idx in expr.indices:
            yield from walk(idx)
    elif isinstance(expr, Attr):
        yield from walk(expr.base)
    elif isinstance(expr, Call):
        for arg in expr.args:
            yield from walk(arg)
    elif isinstance(expr, BinOp):
        yield from walk(expr.left)
        yield from walk(expr.right)
    elif isinstance(expr, (UnaryOp, First)):
        yield from walk(expr.value)


_PRECEDENCE = {"+": 1, "-": 1, "*": 2, "/": 2, "//": 2, "%": 2, "**": 4}


def to_source(expr: Expr, parent: int = 0) -> str:
    if expr is None:
        return ""
    if isinstance(expr, Name):
        return expr.id
    if isinstance(expr, Number):
        return repr(expr.value)
    if isinstance(expr, Index):
        inner = ", ".join(to_source(idx) for idx in expr.indices)
        return f"{to_source(expr.base, 5)}[{inner}]"
    if isinstance(expr, Attr):
        return f"{to_source(expr.base, 5)}.{expr.name}"
    if isinstance(expr, First):
        return f"first({to_source(expr.value)})"
    if isinstance(expr, Call):
        return f"{expr.func}({', '.join(to_source(arg) for arg in expr.args)})"
    if isinstance(expr, UnaryOp):
        return f"{expr.op}{to_source(expr.value, 3)}"
    if isinstance(expr, BinOp):
        prec = _PRECEDENCE.get(expr.op, 0)
        text = f"{to_source(expr.left, prec)} {expr.op} {to_source(expr.right, prec + 1)}"
        return f"({text})" if prec < parent else text
    if isinstance(expr, Compare):
        return " <= ".join(to_source(op) for op in expr.operands)
    if isinstance(expr, Keyword):
        return f"{expr.name}={to_source(expr.value)}"
    return str(expr)


def lhs_source(lhs: Lhs) -> str:
    inner = ", ".join(to_source(idx) for idx in lhs.indices)
    return f"{lhs.name or ''}[{inner}]"


def symbol_names(indices: List[Expr]) -> List[str]:
    return [idx.id for idx in indices if isinstance(idx, Name)]
