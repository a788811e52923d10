from einloop.core.ast import Index, Lhs, Name, Number
from einloop.core.normalize import canonical_index, normalize
from einloop.core.parser import parse_expression


def test_placeholder_becomes_first_position():
    stmt = normalize(parse_expression("A[i,_] := B[_, i]"))
    assert stmt.lhs == Lhs(name="A", indices=(Name(id="i"), Number(value=0)))
    assert stmt.rhs == Index(base=Name(id="B"), indices=(Number(value=0), Name(id="i")))


def test_primed_index_is_distinct_from_bare_index():
    stmt = normalize(parse_expression("A[i,i'] := B[i] - B[i'] + i'"))
    assert stmt.lhs.indices == (Name(id="i"), Name(id="i′"))
    assert stmt.rhs.left.right == Index(base=Name(id="B"), indices=(Name(id="i′"),))
    assert stmt.rhs.right == Name(id="i′")


def test_canonical_index():
    assert canonical_index("k") == "k"
    assert canonical_index("k'") == "k′"
    assert canonical_index("k''") == "k′′"
    assert canonical_index("k'") != canonical_index("k")


def test_normalize_leaves_plain_expressions_untouched():
    stmt = parse_expression("A[i] := B[i,j] * exp(C[j])")
    assert normalize(stmt) == stmt
