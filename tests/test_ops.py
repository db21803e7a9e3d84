"""Shape inference tests: per-op rules on static and dynamic shapes."""

import numpy as np
import pytest

from staticshape.errors import ShapeInferenceError
from staticshape.ir import Graph, OpType
from staticshape.ops import OP_REGISTRY, broadcast_shapes, infer_node, infer_shapes

from conftest import add_result


def _shape(op, *in_shapes, **attrs):
    """Run an op's shape function directly."""
    op_def = OP_REGISTRY[op]
    if op_def.shape is None:
        return in_shapes[0]
    return op_def.shape(list(in_shapes), attrs)


# ---------------------------------------------------------------------------
# Broadcasting
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("a, b, expected", [
    ((4, 3), (3,), (4, 3)),
    ((4, 1), (1, 5), (4, 5)),
    (("?", 3), (3,), ("?", 3)),
    (("?", 3), (5, 3), (5, 3)),   # only a 5 can broadcast against 5
    (("?", 3), (1, 3), ("?", 3)),
    (("S", 3), ("S", 3), ("S", 3)),
    (("S", 3), ("T", 3), ("?", 3)),
])
def test_broadcast_shapes(a, b, expected):
    assert broadcast_shapes(a, b) == expected


def test_broadcast_unknown_rank():
    assert broadcast_shapes(None, (3,)) is None


def test_broadcast_mismatch():
    with pytest.raises(ShapeInferenceError, match="Cannot broadcast"):
        broadcast_shapes((4, 3), (2,))


# ---------------------------------------------------------------------------
# Compute and data-movement ops
# ---------------------------------------------------------------------------

def test_unary_keeps_shape():
    assert _shape(OpType.RELU, ("?", 3)) == ("?", 3)
    assert _shape(OpType.CAST, (2, 2), target_dtype="int32") == (2, 2)


def test_matmul():
    assert _shape(OpType.MATMUL, ("?", 4, 8), (8, 16)) == ("?", 4, 16)


def test_reshape():
    assert _shape(OpType.RESHAPE, (2, 6), shape=[3, -1]) == (3, 4)
    assert _shape(OpType.RESHAPE, ("?", 6), shape=[3, -1]) == (3, "?")


def test_transpose():
    assert _shape(OpType.TRANSPOSE, ("?", 3, 5), axes=[2, 0, 1]) == (5, "?", 3)
    with pytest.raises(ShapeInferenceError, match="permutation"):
        _shape(OpType.TRANSPOSE, (1, 2), axes=[0, 0])


def test_squeeze():
    assert _shape(OpType.SQUEEZE, ("?", 1, 3), axes=[1]) == ("?", 3)
    assert _shape(OpType.SQUEEZE, (1, 4, 1), axes=[-1]) == (1, 4)
    assert _shape(OpType.SQUEEZE, (1, 4, 1), axes=None) == (4,)
    # Without axes, which dims are 1 is not known for a dynamic input
    assert _shape(OpType.SQUEEZE, ("?", 4), axes=None) is None
    with pytest.raises(ShapeInferenceError, match="is not 1"):
        _shape(OpType.SQUEEZE, (2, 4), axes=[0])


def test_unsqueeze():
    assert _shape(OpType.UNSQUEEZE, ("?", 3), axes=[0, 3]) == (1, "?", 3, 1)
    assert _shape(OpType.UNSQUEEZE, (2,), axes=[-1]) == (2, 1)
    with pytest.raises(ShapeInferenceError, match="out of range"):
        _shape(OpType.UNSQUEEZE, (2,), axes=[5])


def test_data_dependent_ops_are_dynamic():
    assert _shape(OpType.NON_ZERO, (6, 4)) == (2, "?")
    assert _shape(OpType.NON_MAX_SUPPRESSION, (1, 10, 4), (1, 2, 10)) == ("?", 3)


def test_roi_align():
    out = _shape(OpType.ROI_ALIGN, (1, 16, 32, 32), ("?", 4), ("?",),
                 pooled_h=7, pooled_w=5)
    assert out == ("?", 16, 7, 5)


# ---------------------------------------------------------------------------
# Static-shape infrastructure
# ---------------------------------------------------------------------------

def test_shape_of():
    assert _shape(OpType.SHAPE_OF, ("?", 3)) == (2,)
    assert _shape(OpType.SHAPE_OF, None) == ("?",)


def test_static_bound():
    assert _shape(OpType.STATIC_BOUND, ("?", 3), bound=(8, 3)) == (8, 3)


def test_shape_vector_ops():
    assert _shape(OpType.BROADCAST_SHAPE, (2,), (1,)) == (2,)
    assert _shape(OpType.GATHER, (3,), indices=[2, 0]) == (2,)
    assert _shape(OpType.CONCAT, (2,), (1,), (2,)) == (5,)
    with pytest.raises(ShapeInferenceError, match="1-D"):
        _shape(OpType.GATHER, (2, 2), indices=[0])


def test_static_non_zero():
    assert _shape(OpType.STATIC_NON_ZERO, (6, 4)) == [(2, 24), (2,)]


def test_static_nms():
    out = _shape(OpType.STATIC_NON_MAX_SUPPRESSION, (1, 10, 4), (1, 2, 10),
                 max_output_boxes_per_class=3)
    assert out == [(6, 3), (2,)]
    # Without a cap every box of every class may be kept
    assert _shape(OpType.STATIC_NON_MAX_SUPPRESSION, (2, 5, 4), (2, 3, 5))[0] == (30, 3)


def test_evaluators():
    ev = lambda op, ins, **attrs: OP_REGISTRY[op].evaluator(ins, attrs)
    shape = np.array([5, 3], dtype=np.int64)
    np.testing.assert_array_equal(ev(OpType.SHAPE_OF, [np.zeros((5, 3))]), shape)
    np.testing.assert_array_equal(
        ev(OpType.BROADCAST_SHAPE, [shape, np.array([3])]), [5, 3])
    np.testing.assert_array_equal(
        ev(OpType.GATHER, [shape], indices=[1, 0]), [3, 5])
    np.testing.assert_array_equal(
        ev(OpType.CONCAT, [shape, np.array([1])]), [5, 3, 1])


def test_every_op_has_a_definition():
    assert set(OP_REGISTRY) == set(OpType)


# ---------------------------------------------------------------------------
# Graph-level propagation
# ---------------------------------------------------------------------------

def test_infer_shapes_propagates_dynamism():
    g = Graph()
    g.add_input("x", ("?", 3))
    g.add_constant("w", np.ones((3, 4), dtype=np.float32))
    g.add_tensor("h", None)
    g.add_tensor("y", None)
    g.add_node(OpType.MATMUL, ["x", "w"], "h")
    g.add_node(OpType.TRANSPOSE, ["h"], "y", {"axes": [1, 0]})
    add_result(g, "y")

    infer_shapes(g)
    assert g.tensors["h"].shape == ("?", 4)
    assert g.tensors["y"].shape == (4, "?")
    assert g.tensors["y:out"].shape == (4, "?")


def test_infer_node_multi_output():
    g = Graph()
    g.add_input("x", (3, 2))
    g.add_tensor("idx", None, "int64")
    g.add_tensor("n", None, "int64")
    node = g.add_node(OpType.STATIC_NON_ZERO, ["x"], ["idx", "n"])
    infer_node(g, node)
    assert g.tensors["idx"].shape == (2, 6)
    assert g.tensors["n"].shape == (2,)


def test_infer_node_output_count_mismatch():
    g = Graph()
    g.add_input("x", (3, 2))
    g.add_tensor("idx", None, "int64")
    node = g.add_node(OpType.STATIC_NON_ZERO, ["x"], "idx")
    with pytest.raises(ShapeInferenceError, match="2 shapes for 1 outputs"):
        infer_node(g, node)
