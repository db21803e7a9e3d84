"""Graph IR tests: builders, connectivity, ordering and mutation."""

import numpy as np
import pytest

from staticshape.ir import (
    Graph, OpType, TensorInfo, format_shape, is_dynamic_shape, is_static_dim,
)


# ---------------------------------------------------------------------------
# Shapes
# ---------------------------------------------------------------------------

def test_static_dims():
    assert is_static_dim(3)
    assert is_static_dim(np.int64(3))
    assert not is_static_dim("?")
    assert not is_static_dim("S")
    assert not is_static_dim(True)
    assert not is_static_dim(-1)
    assert not is_static_dim(np.int64(-1))


def test_dynamic_shapes():
    assert not is_dynamic_shape((4, 3))
    assert not is_dynamic_shape(())
    assert is_dynamic_shape(("?", 3))
    assert is_dynamic_shape((2, "S"))
    assert is_dynamic_shape(None)


def test_format_shape():
    assert format_shape((8, "?", 3)) == "[8,?,3]"
    assert format_shape(()) == "[]"
    assert format_shape(None) == "[...]"


def test_tensor_info_is_dynamic():
    assert TensorInfo("t", ("?", 3)).is_dynamic
    assert not TensorInfo("t", (1, 3)).is_dynamic


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def test_add_input_normalizes_shape_and_bound():
    g = Graph()
    info = g.add_input("x", ["?", np.int64(3)], upper_bound=[8, 3])
    assert info.shape == ("?", 3)
    assert type(info.shape[1]) is int
    assert info.upper_bound == (8, 3)
    assert g.inputs == ["x"]


def test_negative_dimension_rejected():
    g = Graph()
    with pytest.raises(ValueError, match="Negative dimension -1"):
        g.add_input("x", (-1, 3))
    with pytest.raises(ValueError, match="Negative dimension"):
        g.add_tensor("t", [np.int64(-2)])
    assert "x" not in g.tensors


def test_add_constant_keeps_buffer():
    g = Graph()
    info = g.add_constant("c", np.arange(6, dtype=np.int64).reshape(2, 3))
    assert info.shape == (2, 3)
    assert info.dtype == "int64"
    assert info.buffer[1, 2] == 5
    assert g.constants == ["c"]


def test_duplicate_tensor_rejected():
    g = Graph()
    g.add_tensor("t", (1,))
    with pytest.raises(ValueError, match="Duplicate"):
        g.add_tensor("t", (2,))


def test_add_node_requires_registered_tensors():
    g = Graph()
    g.add_tensor("y", (1,))
    with pytest.raises(ValueError, match="not registered"):
        g.add_node(OpType.RELU, ["missing"], "y")
    g.add_input("x", (1,))
    with pytest.raises(ValueError, match="not registered"):
        g.add_node(OpType.RELU, ["x"], "missing")


def test_add_node_rejects_second_producer():
    g = Graph()
    g.add_input("x", (1,))
    g.add_tensor("y", (1,))
    g.add_node(OpType.RELU, ["x"], "y")
    with pytest.raises(ValueError, match="already has a producer"):
        g.add_node(OpType.EXP, ["x"], "y")


def test_default_names_count_per_op():
    g = Graph()
    g.add_input("x", (1,))
    for t in ("a", "b", "c"):
        g.add_tensor(t, (1,))
    n0 = g.add_node(OpType.RELU, ["x"], "a")
    n1 = g.add_node(OpType.EXP, ["a"], "b")
    n2 = g.add_node(OpType.RELU, ["b"], "c")
    assert [n0.name, n1.name, n2.name] == ["RELU_0", "EXP_0", "RELU_1"]
    assert g.find("RELU_1") is n2
    assert g.find("nope") is None


def test_explicit_name():
    g = Graph()
    g.add_input("x", (1,))
    g.add_tensor("y", (1,))
    node = g.add_node(OpType.RELU, ["x"], "y", name="act")
    assert node.name == "act"


def test_multi_output_node():
    g = Graph()
    g.add_input("x", (2, 2))
    g.add_tensor("idx", None, "int64")
    g.add_tensor("n", None, "int64")
    node = g.add_node(OpType.STATIC_NON_ZERO, ["x"], ["idx", "n"])
    assert node.outputs == ["idx", "n"]
    assert node.output == "idx"
    assert g.producer("n") is node


def test_unique_name():
    g = Graph()
    assert g.unique_name("t") == "t"
    g.add_tensor("t", (1,))
    g.add_tensor("t_1", (1,))
    assert g.unique_name("t") == "t_2"


# ---------------------------------------------------------------------------
# Connectivity and ordering
# ---------------------------------------------------------------------------

def _chain():
    """x -> RELU -> a -> EXP -> b, plus a second reader of a."""
    g = Graph()
    g.add_input("x", (4,))
    for t in ("a", "b", "c"):
        g.add_tensor(t, (4,))
    relu = g.add_node(OpType.RELU, ["x"], "a")
    exp = g.add_node(OpType.EXP, ["a"], "b")
    log = g.add_node(OpType.LOG, ["a"], "c")
    return g, relu, exp, log


def test_producer_and_consumers():
    g, relu, exp, log = _chain()
    assert g.producer("a") is relu
    assert g.producer("x") is None
    assert g.consumers("a") == [exp, log]
    assert g.consumers("b") == []


def test_iteration_is_topological():
    g = Graph()
    g.add_input("x", (4,))
    g.add_tensor("a", (4,))
    g.add_tensor("b", (4,))
    # Inserted out of order: the consumer first
    second = g.add_node(OpType.EXP, ["a"], "b")
    first = g.add_node(OpType.RELU, ["x"], "a")
    assert list(g) == [first, second]
    assert len(g) == 2


def test_cycle_detected():
    g = Graph()
    g.add_tensor("a", (1,))
    g.add_tensor("b", (1,))
    g.add_node(OpType.RELU, ["a"], "b")
    g.add_node(OpType.RELU, ["b"], "a")
    with pytest.raises(ValueError, match="cycle"):
        list(g)


def test_summary_and_dump():
    g, *_ = _chain()
    g.outputs.append("b")
    summary = g.summary()
    assert "3 nodes" in summary
    assert "RELU: 1" in summary
    assert "x [4] float32" in summary
    dump = g.dump()
    assert "EXP_0" in dump
    assert "a -> b [4]" in dump


# ---------------------------------------------------------------------------
# Mutation
# ---------------------------------------------------------------------------

def test_rewire_input():
    g, relu, exp, log = _chain()
    g.rewire_input(exp.id, "a", "x")
    assert exp.inputs == ["x"]
    assert g.consumers("a") == [log]
    assert exp in g.consumers("x")


def test_remove_node_keeps_tensors_and_frees_producer():
    g, relu, exp, log = _chain()
    g.remove_node(exp.id)
    assert "b" in g.tensors
    assert g.producer("b") is None
    assert g.consumers("a") == [log]
    # A replacement can take over the same output name
    new = g.add_node(OpType.SQRT, ["a"], "b")
    assert g.producer("b") is new


def test_remove_tensor():
    g, relu, exp, log = _chain()
    g.remove_node(log.id)
    g.remove_tensor("c")
    assert "c" not in g.tensors
    assert g.consumers("c") == []
