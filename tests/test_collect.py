from einloop.core.ast import Attr, Call, First, Name
from einloop.core.collect import collect_output, collect_references
from einloop.core.context import ArrayAxis, CompileContext
from einloop.core.normalize import normalize
from einloop.core.parser import parse_expression


def _collect(src: str) -> CompileContext:
    stmt = normalize(parse_expression(src))
    ctx = CompileContext(stmt=stmt)
    collect_references(stmt.rhs, ctx)
    return ctx


def test_right_hand_indices_skip_constants():
    ctx = _collect("A[i] := B[i, 2, j] * C[k]")
    assert ctx.rhs_indices == ["i", "j", "k"]
    assert ctx.arrays == ["B", "C"]
    assert ctx.catalog["j"] == ArrayAxis(source=Name(id="B"), dim=2)
    assert ctx.catalog["k"] == ArrayAxis(source=Name(id="C"), dim=0)


def test_reduction_indices_are_right_hand_only_indices():
    ctx = _collect("A[i] := B[i,j] * C[k]")
    assert ctx.output_indices == ["i"]
    assert ctx.reduction_indices == ["j", "k"]


def test_repeated_index_defers_agreement_check():
    ctx = _collect("A[i] := B[i] + C[i]")
    assert ctx.catalog["i"] == ArrayAxis(source=Name(id="B"), dim=0)
    assert len(ctx.catalog.checks) == 1
    check = ctx.catalog.checks[0]
    assert check.index == "i"
    assert check.actual == ArrayAxis(source=Name(id="C"), dim=0)


def test_identical_derivation_adds_no_check():
    ctx = _collect("A[i] := B[i] * B[i]")
    assert ctx.catalog.checks == []


def test_arrays_of_arrays_fields_and_wrapped_calls():
    ctx = _collect("A[i,j,k] := exp(B.data[i]) / C[j].vec[k] + f(D)[i, J[j], 4]")
    assert ctx.arrays == ["B", "C", "D", "J"]
    assert list(dict.fromkeys(ctx.rhs_indices)) == ["i", "j", "k"]
    assert ctx.catalog["i"] == ArrayAxis(source=Attr(base=Name(id="B"), name="data"), dim=0)
    assert ctx.catalog["j"] == ArrayAxis(source=Name(id="C"), dim=0)
    # k is measured on the first inner array, not on C itself
    assert ctx.catalog["k"] == ArrayAxis(source=Attr(base=First(value=Name(id="C")), name="vec"), dim=0)
    assert {check.index for check in ctx.catalog.checks} == {"i", "j"}
    wrapped = [ref for ref in ctx.references if ref.bases == ("D",)]
    assert wrapped[0].axis_source == Call(func="f", args=(Name(id="D"),))
    assert wrapped[0].symbols == ["i"]


def test_output_axes_come_from_existing_array():
    ctx = _collect("A[i,j] = B[i]")
    collect_output(ctx.stmt.lhs, ctx)
    assert ctx.catalog["j"] == ArrayAxis(source=Name(id="A"), dim=1)
    assert [check.index for check in ctx.catalog.checks] == ["i"]
