import logging

import numpy as np
import pytest

from einloop import Kernel
from einloop.core.ast import Number, UnaryOp
from einloop.core.context import CompileContext, ExplicitAxis, ReductionSpec, tile_width
from einloop.core.directives import (
    initial_value,
    neutral_element,
    read_reduction,
    read_tiling,
    reducer_for,
)
from einloop.core.exceptions import ParseError
from einloop.core.normalize import normalize
from einloop.core.parser import parse_expression


def _ctx(src: str) -> CompileContext:
    return CompileContext(stmt=normalize(parse_expression(src)))


def _reduction(src: str):
    ctx = _ctx(src)
    return read_reduction(ctx.stmt.reduction, ctx), ctx


def test_absent_clause_defaults_to_sum():
    spec, _ = _reduction("A[i] := B[i,j]")
    assert spec.op == "+"
    assert not spec.explicit
    assert spec.order == []


def test_reduction_tokens_split_loops_and_unrolled():
    spec, _ = _reduction("A[i] := B[i,j,k,l] (*, j, unroll(4), k, l)")
    assert spec.op == "*"
    assert spec.explicit
    assert spec.loop == ["j"]
    assert spec.unroll == ["k", "l"]
    assert spec.widths == {"k": 4, "l": 4}


def test_bare_unroll_means_whole_range():
    spec, ctx = _reduction("A[i] := B[i,j,k] (+, unroll, j <= 9, k <= 9)")
    assert spec.unroll == ["j", "k"]
    assert spec.widths == {"j": 0, "k": 0}
    assert ctx.catalog["j"] == ExplicitAxis(upper=Number(value=9))


def test_bound_with_lower_limit():
    _, ctx = _reduction("A[i] := B[i,j] (+, 1 <= j <= 4)")
    assert ctx.catalog["j"] == ExplicitAxis(upper=Number(value=4), lower=Number(value=1))


def test_init_keyword():
    spec, _ = _reduction("A[i] := B[i,j] (max, j, init=-1)")
    assert spec.op == "max"
    assert spec.init == UnaryOp(op="-", value=Number(value=1))


def test_unknown_token_rejected():
    with pytest.raises(ParseError, match="expected something like"):
        _reduction("A[i] := B[i,j,k] (+, j, k + 1)")


@pytest.mark.parametrize("op", ["-", "/", "%"])
def test_non_commutative_operator_rejected(op):
    with pytest.raises(ParseError, match="associative and commutative"):
        _reduction(f"A[i] := B[i,j] ({op}, j)")


def test_index_listed_twice():
    with pytest.raises(ParseError, match="listed twice"):
        _reduction("A[i] := B[i,j] (+, j, j)")


def test_unroll_width_must_be_positive_integer():
    with pytest.raises(ParseError, match="positive integer"):
        _reduction("A[i] := B[i,j] (+, unroll(0), j)")


def test_tiling_default_size():
    ctx = _ctx("A[i,j] := B[i] * C[j]  {tile, i, j}")
    tile = read_tiling(ctx.stmt.tiling, ctx)
    assert tile.size == 512
    assert tile.indices == ["i", "j"]
    assert tile.width == 22
    assert ctx.tile is tile


def test_tiling_explicit_size():
    ctx = _ctx("A[i,j] := B[i] * C[j]  {tile(256), i, j}")
    assert read_tiling(ctx.stmt.tiling, ctx).width == 16


@pytest.mark.parametrize(
    "clause, message",
    [
        ("{block(64), i, j}", "expected something like"),
        ("{tile, 3}", "expected something like"),
        ("{tile}", "names no indices"),
        ("{tile, i, i}", "tiled twice"),
        ("{tile(0), i}", "must be positive"),
    ],
)
def test_bad_tiling_clause(clause, message):
    ctx = _ctx(f"A[i,j] := B[i] * C[j]  {clause}")
    with pytest.raises(ParseError, match=message):
        read_tiling(ctx.stmt.tiling, ctx)


def test_absent_tiling_clause():
    ctx = _ctx("A[i] := B[i]")
    assert read_tiling(ctx.stmt.tiling, ctx) is None
    assert ctx.tile is None


@pytest.mark.parametrize(
    "size, group, width",
    [(256, 2, 16), (512, 2, 22), (512, 3, 8), (1000, 3, 10), (7, 1, 7), (3, 4, 1)],
)
def test_tile_width_is_integer_root(size, group, width):
    assert tile_width(size, group) == width


def test_neutral_elements():
    zero = neutral_element("+", np.float64)
    assert zero == 0.0 and isinstance(zero, np.float64)
    assert neutral_element("*", np.int64) == 1
    assert neutral_element("max", np.float64) == -np.inf
    assert neutral_element("max", np.int32) == np.iinfo(np.int32).min
    assert neutral_element("hypot", np.float32) == 0


def test_min_defaults_to_type_minimum():
    # not neutral for min; init= overrides it
    assert neutral_element("min", np.float64) == -np.inf
    assert neutral_element("min", np.int16) == np.iinfo(np.int16).min


def test_min_warning_is_logged_once_per_kernel(caplog):
    B = np.array([[1.0, 2.0], [3.0, 4.0]])
    with caplog.at_level(logging.WARNING, logger="einloop"):
        kernel = Kernel("A[i] := B[i,j] (min, j)")
        kernel(B=B)
        kernel(B=B)
    warnings = [r for r in caplog.records if "min reduction" in r.getMessage()]
    assert len(warnings) == 1
    assert "(min, j)" in warnings[0].getMessage()


def test_min_with_init_does_not_warn(caplog):
    with caplog.at_level(logging.WARNING, logger="einloop"):
        Kernel("A[i] := B[i,j] (min, j, init=inf)")(B=np.ones((2, 2)))
    assert "min reduction" not in caplog.text


def test_initial_value_literals_take_element_type():
    one = initial_value(ReductionSpec(op="max", init=Number(value=1)), np.float32, lambda e: None)
    assert one == 1.0 and isinstance(one, np.float32)


@pytest.mark.parametrize("literal", [0.0, 1.0])
def test_initial_value_float_literals_take_element_type(literal):
    def fail(expr):
        raise AssertionError("literal init should not be evaluated")

    start = initial_value(ReductionSpec(op="+", init=Number(value=literal)), np.int32, fail)
    assert start == literal and isinstance(start, np.int32)


def test_initial_value_evaluates_other_expressions():
    spec = ReductionSpec(op="+", init=Number(value=5))
    assert initial_value(spec, np.float64, lambda expr: expr.value * 2) == 10


def test_reducer_lookup():
    assert reducer_for("+", lambda name: None)(2, 3) == 5
    assert reducer_for("max", lambda name: None)(2, 3) == 3
    assert reducer_for("hypot", {"hypot": np.hypot}.__getitem__)(3.0, 4.0) == 5.0
