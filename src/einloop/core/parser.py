from __future__ import annotations

import ast as _ast
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Optional

from lark import Lark, Token, Transformer, v_args
from lark.exceptions import LarkError, UnexpectedInput

from .ast import (
    Attr,
    BinOp,
    Call,
    Compare,
    Index,
    Keyword,
    Lhs,
    Name,
    Number,
    ReductionClause,
    Statement,
    TilingClause,
    UnaryOp,
    lhs_source,
)
from .exceptions import ParseError

GRAMMAR_PATH = Path(__file__).with_name("grammar.lark")

# Augmented assignments rewrite to ``Z[...] = Z[...] <op> (rhs)``.
UPDATE_OPS = {
    "+=": "+",
    "-=": "-",
    "*=": "*",
}


@lru_cache(maxsize=1)
def _build_lark() -> Lark:
    grammar = GRAMMAR_PATH.read_text()
    return Lark(
        grammar,
        parser="earley",
        start="start",
        ambiguity="resolve",
        propagate_positions=True,
        maybe_placeholders=False,
    )


def _pos(meta) -> dict:
    if getattr(meta, "empty", True):
        return {}
    return {"line": meta.line, "column": meta.column}


class ExpressionTransformer(Transformer):
    def __init__(self, text: str):
        super().__init__()
        self.text = text
        self.lines = text.splitlines()

    # ------------------------------------------------------------------ helpers
    def _slice(self, meta) -> str:
        if getattr(meta, "empty", True):
            return ""
        return self.text[meta.start_pos : meta.end_pos]

    def _line_text(self, line: int) -> str:
        if 1 <= line <= len(self.lines):
            return self.lines[line - 1]
        return ""

    def _error(self, meta, message: str) -> None:
        raise ParseError(
            message,
            line=meta.line,
            column=meta.column,
            line_text=self._line_text(meta.line),
        )

    def _fold_binop(self, first: Any, rest: List[Any]) -> Any:
        expr = first
        # rest comes as [op_tok, value, op_tok, value, ...]
        for i in range(0, len(rest), 2):
            op_tok: Token = rest[i]
            expr = BinOp(
                left=expr,
                op=op_tok.value,
                right=rest[i + 1],
                line=op_tok.line,
                column=op_tok.column,
            )
        return expr

    # ---------------------------------------------------------------- top level
    @v_args(meta=True)
    def start(self, meta, items) -> Statement:
        stmt: Statement = items[0]
        reduction: Optional[ReductionClause] = None
        tiling: Optional[TilingClause] = None
        for item in items[1:]:
            if isinstance(item, ReductionClause):
                reduction = item
            elif isinstance(item, TilingClause):
                tiling = item
        return Statement(
            lhs=stmt.lhs,
            op=stmt.op,
            rhs=stmt.rhs,
            reduction=reduction,
            tiling=tiling,
            source=self.text.strip(),
            line=stmt.line,
            column=stmt.column,
        )

    @v_args(meta=True)
    def statement(self, meta, items) -> Statement:
        lhs: Lhs = items[0]
        op_tok: Token = items[1]
        rhs = items[2]
        if lhs.name is None and op_tok.value != ":=":
            self._error(meta, f"anonymous output {lhs_source(lhs)} requires ':='")
        return Statement(lhs=lhs, op=op_tok.value, rhs=rhs, **_pos(meta))

    @v_args(meta=True)
    def named_lhs(self, meta, items) -> Lhs:
        name_tok: Token = items[0]
        indices = items[1] if len(items) > 1 else ()
        return Lhs(name=name_tok.value, indices=tuple(indices), **_pos(meta))

    @v_args(meta=True)
    def anon_lhs(self, meta, items) -> Lhs:
        indices = items[0] if items else ()
        return Lhs(name=None, indices=tuple(indices), **_pos(meta))

    def index_list(self, items):
        return tuple(items)

    def call_args(self, items):
        return tuple(items)

    # -------------------------------------------------------------- expressions
    def add_expr(self, items):
        if len(items) == 1:
            return items[0]
        return self._fold_binop(items[0], items[1:])

    def mul_expr(self, items):
        if len(items) == 1:
            return items[0]
        return self._fold_binop(items[0], items[1:])

    def pow_expr(self, items):
        if len(items) == 1:
            return items[0]
        # base ** exponent, right-associative through ``unary``
        op_tok: Token = items[1]
        return BinOp(left=items[0], op="**", right=items[2], line=op_tok.line, column=op_tok.column)

    @v_args(meta=True)
    def unary(self, meta, items):
        op_tok: Token = items[0]
        return UnaryOp(op=op_tok.value, value=items[1], **_pos(meta))

    @v_args(meta=True)
    def number(self, meta, items):
        tok: Token = items[0]
        return Number(value=_ast.literal_eval(tok.value), **_pos(meta))

    @v_args(meta=True)
    def name(self, meta, items):
        tok: Token = items[0]
        return Name(id=tok.value, **_pos(meta))

    @v_args(meta=True)
    def call(self, meta, items):
        name_tok: Token = items[0]
        args = items[1] if len(items) > 1 else ()
        return Call(func=name_tok.value, args=tuple(args), **_pos(meta))

    @v_args(meta=True)
    def index(self, meta, items):
        return Index(base=items[0], indices=tuple(items[1]), **_pos(meta))

    @v_args(meta=True)
    def attr(self, meta, items):
        name_tok: Token = items[1]
        return Attr(base=items[0], name=name_tok.value, **_pos(meta))

    # ---------------------------------------------------------------- directives
    def red_op(self, items):
        tok: Token = items[0]
        return tok.value

    @v_args(meta=True)
    def reduction_clause(self, meta, items):
        return ReductionClause(
            op=items[0],
            items=tuple(items[1:]),
            source=self._slice(meta),
            **_pos(meta),
        )

    @v_args(meta=True)
    def compare(self, meta, items):
        operands = tuple(item for item in items if not isinstance(item, Token))
        return Compare(operands=operands, **_pos(meta))

    @v_args(meta=True)
    def keyword(self, meta, items):
        name_tok: Token = items[0]
        return Keyword(name=name_tok.value, value=items[-1], **_pos(meta))

    @v_args(meta=True)
    def tiling_clause(self, meta, items):
        return TilingClause(items=tuple(items), source=self._slice(meta), **_pos(meta))


def desugar_update(stmt: Statement) -> Statement:
    """Rewrite ``Z[i] += rhs`` into ``Z[i] = Z[i] + (rhs)``."""
    op = UPDATE_OPS.get(stmt.op)
    if op is None:
        return stmt
    current = Index(
        base=Name(id=stmt.lhs.name, line=stmt.lhs.line, column=stmt.lhs.column),
        indices=stmt.lhs.indices,
        line=stmt.lhs.line,
        column=stmt.lhs.column,
    )
    rhs = BinOp(left=current, op=op, right=stmt.rhs, line=stmt.line, column=stmt.column)
    return Statement(
        lhs=stmt.lhs,
        op="=",
        rhs=rhs,
        reduction=stmt.reduction,
        tiling=stmt.tiling,
        source=stmt.source,
        line=stmt.line,
        column=stmt.column,
    )


def parse_expression(text: str) -> Statement:
    parser = _build_lark()
    try:
        tree = parser.parse(text)
    except UnexpectedInput as exc:
        line = getattr(exc, "line", None)
        column = getattr(exc, "column", None)
        # end-of-input errors report -1
        line = line if line and line > 0 else 1
        column = column if column and column > 0 else 1
        lines = text.splitlines()
        line_text = lines[line - 1] if 1 <= line <= len(lines) else None
        raise ParseError(
            f"Syntax error while parsing {text.strip()!r}",
            line=line,
            column=column,
            line_text=line_text,
        ) from exc
    except LarkError as exc:  # pragma: no cover
        raise ParseError(str(exc)) from exc
    try:
        stmt = ExpressionTransformer(text).transform(tree)
    except LarkError as exc:
        # VisitError wraps exceptions raised inside transformer callbacks
        original = getattr(exc, "orig_exc", None)
        if isinstance(original, ParseError):
            raise original from None
        raise ParseError(str(exc)) from exc
    return desugar_update(stmt)
