"""Per-op rewrites that replace a dynamic node with a statically shaped one.

Every rewrite follows the same recipe. Each dynamic input is split into a
(data, shape) pair: `data` is a tensor with a static upper-bound shape and
`shape` is an int64 vector carrying the real extent at runtime. The node
is re-emitted on the static data, a small shape subgraph computes its real
output shape, and a DYNAMIC_SHAPE_RESOLVER joins the two under the
original output name. Consumers and graph outputs therefore keep pointing
at the same tensor, and downstream rewrites find the resolver and split it
again.

A rewrite is any callable (node, graph) -> None. Newly inserted nodes are
shape-inferred on insertion so later rewrites can read their ranks; the
authoritative re-inference of the whole graph happens after the pass.
"""

import numpy as np

from ..errors import RewriteError
from ..ir import Graph, Node, OpType, format_shape
from ..ops import infer_node, normalize_axis


SHAPE_DTYPE = "int64"


# ---------------------------------------------------------------------------
# Graph-building helpers
# ---------------------------------------------------------------------------

def _emit(graph: Graph, op: OpType, inputs: list[str], output: str | list[str],
          dtype: str | list[str] = SHAPE_DTYPE, attrs: dict | None = None,
          name: str | None = None) -> Node:
    """Add a node on freshly named output tensors and infer its shape."""
    outputs = [output] if isinstance(output, str) else output
    dtypes = [dtype] * len(outputs) if isinstance(dtype, str) else dtype

    names = []
    for out, dt in zip(outputs, dtypes):
        out = graph.unique_name(out)
        graph.add_tensor(out, None, dt)
        names.append(out)

    node = graph.add_node(op, inputs, names, attrs, name=name)
    infer_node(graph, node)
    return node


def _shape_constant(graph: Graph, values, base: str) -> str:
    """Register an int64 constant vector and return its name."""
    name = graph.unique_name(base)
    graph.add_constant(name, np.array(values, dtype=np.int64))
    return name


def _rank(graph: Graph, tensor: str) -> int:
    shape = graph.tensors[tensor].shape
    if shape is None:
        raise RewriteError(f"Tensor '{tensor}' has unknown rank")
    return len(shape)


def _check_bound(graph: Graph, tensor: str) -> tuple[int, ...]:
    info = graph.tensors[tensor]
    bound = info.upper_bound
    if bound is None:
        raise RewriteError(
            f"Dynamic graph input '{tensor}' {format_shape(info.shape)} "
            f"has no upper bound")
    if info.shape is None:
        raise RewriteError(
            f"Dynamic graph input '{tensor}' has unknown rank; "
            f"its shape vector cannot be sized")
    if len(info.shape) != len(bound):
        raise RewriteError(
            f"Upper bound {format_shape(bound)} of input '{tensor}' does not "
            f"match its rank {format_shape(info.shape)}")
    return tuple(bound)


def _reuse_consumer(graph: Graph, tensor: str, op: OpType) -> str | None:
    for consumer in graph.consumers(tensor):
        if consumer.op == op:
            return consumer.output
    return None


def _bounded_data(graph: Graph, tensor: str) -> str:
    """STATIC_BOUND of a dynamic graph input, emitted once per input."""
    bound = _check_bound(graph, tensor)
    data = _reuse_consumer(graph, tensor, OpType.STATIC_BOUND)
    if data is None:
        data = _emit(graph, OpType.STATIC_BOUND, [tensor], f"{tensor}/bounded",
                     graph.tensors[tensor].dtype, {"bound": bound}).output
    return data


def _bound_input(graph: Graph, tensor: str) -> tuple[str, str]:
    """Place a dynamic graph input in its upper-bound buffer.

    Reuses STATIC_BOUND / SHAPE_OF nodes already hanging off the input, so
    an input read by several dynamic nodes is bounded once.
    """
    data = _bounded_data(graph, tensor)
    shape = _reuse_consumer(graph, tensor, OpType.SHAPE_OF)
    if shape is None:
        shape = _emit(graph, OpType.SHAPE_OF, [tensor], f"{tensor}/shape").output
    return data, shape


def materialize(graph: Graph, tensor: str) -> tuple[str, str]:
    """Split a tensor into (static data, runtime shape vector).

    - Output of a DYNAMIC_SHAPE_RESOLVER: the resolver's own inputs.
    - Dynamic graph input: STATIC_BOUND + SHAPE_OF on the input.
    - Static tensor: the tensor itself and a constant shape.
    """
    producer = graph.producer(tensor)
    if producer is not None and producer.op == OpType.DYNAMIC_SHAPE_RESOLVER:
        return producer.inputs[0], producer.inputs[1]

    info = graph.tensors[tensor]
    if not info.is_dynamic:
        return tensor, _shape_constant(graph, info.shape, f"{tensor}/shape")

    if producer is None and tensor in graph.inputs:
        return _bound_input(graph, tensor)

    source = producer.name if producer is not None else "no producer"
    raise RewriteError(
        f"Dynamic tensor '{tensor}' {format_shape(info.shape)} must come from "
        f"a DYNAMIC_SHAPE_RESOLVER or a bounded graph input, but has {source}")


def static_data(graph: Graph, tensor: str) -> str:
    """The static data half of materialize(), for rules that never read the shape.

    Emits nothing for a static tensor and only a STATIC_BOUND for a dynamic
    graph input.
    """
    producer = graph.producer(tensor)
    if producer is not None and producer.op == OpType.DYNAMIC_SHAPE_RESOLVER:
        return producer.inputs[0]
    info = graph.tensors[tensor]
    if not info.is_dynamic:
        return tensor
    if producer is None and tensor in graph.inputs:
        return _bounded_data(graph, tensor)
    return materialize(graph, tensor)[0]


def _reemit(graph: Graph, node: Node, inputs: list[str]) -> str:
    """Emit a copy of `node` on new inputs; returns the copy's output."""
    static = _emit(graph, node.op, inputs, f"{node.output}/static",
                   graph.tensors[node.output].dtype, dict(node.attrs),
                   name=f"{node.name}/static")
    return static.output


def _replace_with_resolver(graph: Graph, node: Node, data: str, shape: str) -> Node:
    """Swap `node` for DYNAMIC_SHAPE_RESOLVER(data, shape) under the same output name."""
    if len(node.outputs) != 1:
        raise RewriteError(f"{node.name}: only single-output nodes can be resolved, "
                           f"got {len(node.outputs)} outputs")
    output = node.output
    graph.remove_node(node.id)
    resolver = graph.add_node(OpType.DYNAMIC_SHAPE_RESOLVER, [data, shape], output,
                              name=node.name)
    infer_node(graph, resolver)
    return resolver


# ---------------------------------------------------------------------------
# Rewrites
# ---------------------------------------------------------------------------

def dynamic_to_static_binary_eltwise(node: Node, graph: Graph) -> None:
    """Element-wise binary op: output extent is the broadcast of both input extents."""
    a_data, a_shape = materialize(graph, node.inputs[0])
    b_data, b_shape = materialize(graph, node.inputs[1])

    static = _reemit(graph, node, [a_data, b_data])
    out_shape = _emit(graph, OpType.BROADCAST_SHAPE, [a_shape, b_shape],
                      f"{node.output}/shape").output
    _replace_with_resolver(graph, node, static, out_shape)


def dynamic_to_static_unary_eltwise(node: Node, graph: Graph) -> None:
    """Shape-preserving op: the data input's extent passes straight through.

    Only the first input is the data; any further inputs (clamp bounds,
    scatter indices and updates) are forwarded untouched.
    """
    data, shape = materialize(graph, node.inputs[0])
    static = _reemit(graph, node, [data, *node.inputs[1:]])
    _replace_with_resolver(graph, node, static, shape)


def dynamic_to_static_transpose(node: Node, graph: Graph) -> None:
    data, shape = materialize(graph, node.inputs[0])
    static = _reemit(graph, node, [data])
    out_shape = _emit(graph, OpType.GATHER, [shape], f"{node.output}/shape",
                      attrs={"indices": [int(a) for a in node.attrs["axes"]]}).output
    _replace_with_resolver(graph, node, static, out_shape)


def dynamic_to_static_squeeze(node: Node, graph: Graph) -> None:
    """Squeeze with explicit axes: the output extent keeps the remaining dims."""
    axes = node.attrs.get("axes")
    if not axes:
        raise RewriteError(f"{node.name}: squeezing a dynamic tensor requires explicit axes")

    data, shape = materialize(graph, node.inputs[0])
    rank = _rank(graph, data)
    drop = {normalize_axis(a, rank, "SQUEEZE") for a in axes}
    kept = [i for i in range(rank) if i not in drop]

    static = _reemit(graph, node, [data])
    out_shape = _emit(graph, OpType.GATHER, [shape], f"{node.output}/shape",
                      attrs={"indices": kept}).output
    _replace_with_resolver(graph, node, static, out_shape)


def dynamic_to_static_unsqueeze(node: Node, graph: Graph) -> None:
    """Unsqueeze: append a 1 to the input extent, then gather it into place."""
    data, shape = materialize(graph, node.inputs[0])
    rank = _rank(graph, data)
    axes = node.attrs["axes"]
    out_rank = rank + len(axes)
    insert = {normalize_axis(a, out_rank, "UNSQUEEZE") for a in axes}

    # Index `rank` of the extended vector is the appended 1
    index_map = []
    src = 0
    for i in range(out_rank):
        if i in insert:
            index_map.append(rank)
        else:
            index_map.append(src)
            src += 1

    one = _shape_constant(graph, [1], f"{node.output}/one")
    extended = _emit(graph, OpType.CONCAT, [shape, one], f"{node.output}/extended").output
    static = _reemit(graph, node, [data])
    out_shape = _emit(graph, OpType.GATHER, [extended], f"{node.output}/shape",
                      attrs={"indices": index_map}).output
    _replace_with_resolver(graph, node, static, out_shape)


def dynamic_to_static_non_zero(node: Node, graph: Graph) -> None:
    """NonZero: a padded static variant reports the real index count itself."""
    data = static_data(graph, node.inputs[0])
    static = _emit(graph, OpType.STATIC_NON_ZERO, [data],
                   [f"{node.output}/static", f"{node.output}/shape"],
                   [graph.tensors[node.output].dtype, SHAPE_DTYPE],
                   dict(node.attrs), name=f"{node.name}/static")
    _replace_with_resolver(graph, node, static.outputs[0], static.outputs[1])


def dynamic_to_static_non_max_suppression(node: Node, graph: Graph) -> None:
    """NonMaxSuppression: sized for every class keeping its maximum box count."""
    boxes = static_data(graph, node.inputs[0])
    scores = static_data(graph, node.inputs[1])
    static = _emit(graph, OpType.STATIC_NON_MAX_SUPPRESSION,
                   [boxes, scores, *node.inputs[2:]],
                   [f"{node.output}/static", f"{node.output}/shape"],
                   [graph.tensors[node.output].dtype, SHAPE_DTYPE],
                   dict(node.attrs), name=f"{node.name}/static")
    _replace_with_resolver(graph, node, static.outputs[0], static.outputs[1])


def dynamic_to_static_roi_align(node: Node, graph: Graph) -> None:
    """ROIAlign: (num_rois from rois, channels from data, pooled_h, pooled_w)."""
    data, data_shape = materialize(graph, node.inputs[0])
    rois, rois_shape = materialize(graph, node.inputs[1])
    batch_indices = static_data(graph, node.inputs[2])

    static = _reemit(graph, node, [data, rois, batch_indices])
    num_rois = _emit(graph, OpType.GATHER, [rois_shape], f"{node.output}/num_rois",
                     attrs={"indices": [0]}).output
    channels = _emit(graph, OpType.GATHER, [data_shape], f"{node.output}/channels",
                     attrs={"indices": [1]}).output
    pooled = _shape_constant(graph, [node.attrs["pooled_h"], node.attrs["pooled_w"]],
                             f"{node.output}/pooled")
    out_shape = _emit(graph, OpType.CONCAT, [num_rois, channels, pooled],
                      f"{node.output}/shape").output
    _replace_with_resolver(graph, node, static, out_shape)


def no_op(node: Node, graph: Graph) -> None:
    """RESULT: its shape is whatever its input settles to."""


# Rewrites by category, used to build the default registry
BINARY_ELTWISE_OPS = (OpType.ADD, OpType.SUB, OpType.MUL, OpType.DIV,
                      OpType.POW, OpType.EQUAL)
UNARY_ELTWISE_OPS = (OpType.RELU, OpType.EXP, OpType.LOG, OpType.SQRT,
                     OpType.SIGMOID, OpType.FLOOR, OpType.CLAMP, OpType.CAST,
                     OpType.SCATTER_UPDATE)
