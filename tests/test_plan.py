import logging

import pytest

from einloop import ExecutionConfig, Kernel
from einloop.core.exceptions import AmbiguityError, CompletenessError, ShapeError
from einloop.core.plan import Reduce, RangeLoop, Store, TileLoop, UnrolledLoop


def test_output_loops_rightmost_index_outermost():
    plan = Kernel("A[i,j,k] := B[i,j,k]").plan
    assert plan.loop_order() == ["k", "j", "i"]
    assert isinstance(list(plan.nodes())[-1], Store)


def test_explicit_reduction_order_sets_nesting():
    assert Kernel("A[i] := B[i,j] * C[k] (+, j, k)").plan.loop_order() == ["i", "j", "k"]
    assert Kernel("A[i] := B[i,j] * C[k] (+, k, j)").plan.loop_order() == ["i", "k", "j"]


def test_implicit_reduction_follows_first_occurrence():
    kernel = Kernel("A[i] := C[k] * B[i,j]")
    assert kernel.output_indices == ["i"]
    assert kernel.reduction_indices == ["k", "j"]
    assert kernel.arrays == ["C", "B"]


def test_unrolled_loops_nest_inside_plain_loops():
    plan = Kernel("A[i] := B[i,j,k,l] (+, j, unroll(2), k, l)").plan
    assert plan.loop_order() == ["i", "j", "k", "l"]
    unrolled = [n for n in plan.nodes() if isinstance(n, UnrolledLoop)]
    assert [(n.index, n.width) for n in unrolled] == [("k", 2), ("l", 2)]
    assert plan.symbols["k"].unroll == 2
    assert plan.symbols["j"].unroll is None


@pytest.mark.parametrize(
    "clause, message",
    [
        ("(+, j)", "missing k"),
        ("(+, j, k, i)", "not reduction indices: i"),
    ],
)
def test_partial_reduction_list_is_rejected(clause, message):
    with pytest.raises(CompletenessError, match=message):
        Kernel(f"A[i] := B[i,j] * C[k] {clause}")


def test_tile_and_unroll_same_index_is_ambiguous():
    with pytest.raises(AmbiguityError, match="both tiled and unrolled"):
        Kernel("A[i] := B[i,j] (+, unroll(4), j) {tile, i, j}")


def test_output_index_without_axis():
    with pytest.raises(ShapeError, match="index j"):
        Kernel("A[i,j] := B[i]")


def test_unknown_tiled_index():
    with pytest.raises(ShapeError, match="tiled index q"):
        Kernel("A[i] := B[i] {tile, i, q}")


def test_tile_loop_wraps_everything():
    plan = Kernel("A[i,j] := B[i] * C[j] {tile(256), i, j}").plan
    assert isinstance(plan.root, TileLoop)
    assert plan.root.indices == ("i", "j")
    assert plan.root.widths == (16, 16)
    assert isinstance(plan.root.body, RangeLoop)
    assert plan.root.body.index == "j"
    assert plan.symbols["i"].tiled


def test_reduce_resumes_when_tile_covers_reduction_index():
    tiled = Kernel("A[i] := B[i,j] {tile(16), i, j}").plan
    assert [n.resume for n in tiled.nodes() if isinstance(n, Reduce)] == [True]
    outer_only = Kernel("A[i] := B[i,j] {tile(16), i}").plan
    assert [n.resume for n in outer_only.nodes() if isinstance(n, Reduce)] == [False]


def test_parallel_marks_only_outermost_output_loop():
    config = ExecutionConfig(mode="threads", workers=2)
    plan = Kernel("A[i,j] := B[i,j,k]", config=config).plan
    flags = [(n.index, n.parallel) for n in plan.nodes() if isinstance(n, RangeLoop)]
    assert flags == [("j", True), ("i", False), ("k", False)]


def test_sequential_plan_has_no_parallel_loop():
    plan = Kernel("A[i,j] := B[i,j,k]").plan
    assert not any(n.parallel for n in plan.nodes() if isinstance(n, RangeLoop))


def test_explain_reduction():
    text = Kernel("A[i] := B[i,j] * C[k] (+, j, k)").explain()
    assert text.splitlines() == [
        "for i in axes(B, 0)",
        "  acc = init(+)",
        "  for j in axes(B, 1)",
        "    for k in axes(C, 0)",
        "      acc = acc + B[i, j] * C[k]",
        "  A[i] = acc",
    ]


def test_explain_directives():
    text = Kernel(
        "A[i] := B[i,j] (max, j <= 7)  {tile(64), i}",
        config=ExecutionConfig(mode="threads", workers=2),
    ).explain()
    assert text.splitlines() == [
        "for tile in tiles(i; width=64)",
        "  parallel for i in axes(B, 0)",
        "    acc = init(max)",
        "    for j in 0:7",
        "      acc = max(acc, B[i, j])",
        "    A[i] = acc",
    ]


def test_explain_unroll_and_store():
    assert "@unroll(4) for k in axes(C, 0)" in Kernel("A[i] := B[i,j] * C[k] (+, j, unroll(4), k)").explain()
    assert Kernel("A[i,j] := B[i] * C[j]").explain().splitlines() == [
        "for j in axes(C, 0)",
        "  for i in axes(B, 0)",
        "    A[i, j] = B[i] * C[j]",
    ]


def test_compiler_passes_log_at_debug(caplog):
    with caplog.at_level(logging.DEBUG, logger="einloop"):
        Kernel("A[i] := B[i,j] * C[j]  (+, j)")
    assert "loop plan for A[i] := B[i,j] * C[j]  (+, j)" in caplog.text
    assert "bound index j to axes(B, 1)" in caplog.text
