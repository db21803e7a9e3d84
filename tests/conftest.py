"""Shared fixtures and helpers for the test suite.

pytest discovers conftest.py automatically, so fixtures defined here are
available to all test files in this directory without explicit imports.
Helpers are plain functions, imported explicitly by the tests that use them.
"""

import numpy as np
import pytest

from staticshape.ir import Graph, OpType
from staticshape.ops import OP_REGISTRY, infer_shapes
from staticshape.passes import DynamicToStaticShape


# ---------------------------------------------------------------------------
# Graph builders
# ---------------------------------------------------------------------------

def add_result(graph: Graph, tensor: str) -> str:
    """Terminate `tensor` with a RESULT marker and mark it as a graph output."""
    out = f"{tensor}:out"
    info = graph.tensors[tensor]
    graph.add_tensor(out, info.shape, info.dtype)
    graph.add_node(OpType.RESULT, [tensor], out)
    graph.outputs.append(out)
    return out


def single_op_graph(op, shape, bound, attrs=None, dtype="float32", out_dtype=None):
    """Input x -> op -> y -> RESULT, with shapes inferred."""
    g = Graph()
    g.add_input("x", shape, dtype, upper_bound=bound)
    g.add_tensor("y", None, out_dtype or dtype)
    g.add_node(op, ["x"], "y", attrs)
    add_result(g, "y")
    infer_shapes(g)
    return g


def binary_graph(op=OpType.ADD, out_dtype="float32"):
    """Input x [?,3] (bound [8,3]) -> op with constant c [3] -> y -> RESULT."""
    g = Graph()
    g.add_input("x", ("?", 3), upper_bound=(8, 3))
    g.add_constant("c", np.ones(3, dtype=np.float32))
    g.add_tensor("y", None, out_dtype)
    g.add_node(op, ["x", "c"], "y")
    add_result(g, "y")
    infer_shapes(g)
    return g


def static_graph():
    """Fully static: x [4,3] -> RELU -> y -> RESULT."""
    g = Graph()
    g.add_input("x", (4, 3))
    g.add_tensor("y", None)
    g.add_node(OpType.RELU, ["x"], "y")
    add_result(g, "y")
    infer_shapes(g)
    return g


# ---------------------------------------------------------------------------
# Shape subgraph evaluation
# ---------------------------------------------------------------------------

def evaluate(graph: Graph, tensor: str, input_shapes: dict[str, tuple]) -> np.ndarray:
    """Evaluate an integer shape vector, given the runtime shapes of graph inputs.

    Walks back through the shape subgraph using the numpy evaluators of the
    shape-vector ops. SHAPE_OF reads the runtime shape of its source.
    """
    info = graph.tensors[tensor]
    if info.buffer is not None:
        return info.buffer

    producer = graph.producer(tensor)
    assert producer is not None, f"'{tensor}' is neither a constant nor computed"
    if producer.op == OpType.SHAPE_OF:
        return np.array(runtime_shape(graph, producer.inputs[0], input_shapes),
                        dtype=np.int64)

    op_def = OP_REGISTRY[producer.op]
    assert op_def.evaluator is not None, f"{producer.op.name} cannot be evaluated"
    ins = [evaluate(graph, t, input_shapes) for t in producer.inputs]
    return op_def.evaluator(ins, producer.attrs)


def runtime_shape(graph: Graph, tensor: str, input_shapes: dict[str, tuple]) -> tuple:
    """Actual runtime shape of a tensor after the transformation.

    Graph inputs take their shape from `input_shapes`; resolver outputs take
    the value of their shape subgraph.
    """
    if tensor in input_shapes:
        return tuple(input_shapes[tensor])
    producer = graph.producer(tensor)
    if producer is not None and producer.op == OpType.DYNAMIC_SHAPE_RESOLVER:
        return tuple(int(d) for d in evaluate(graph, producer.inputs[1], input_shapes))
    return graph.tensors[tensor].shape


def ops_of(graph: Graph) -> list[OpType]:
    return [n.op for n in graph]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def engine():
    return DynamicToStaticShape()
