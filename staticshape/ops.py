"""Op definitions: per-op metadata unified in one place.

Each OpDef describes what the shape engine needs to know about an op on
the Python side: how its output shapes follow from its input shapes, how
many outputs it has, and (for the small integer ops that compute shape
vectors) how to evaluate it with numpy.

Shape functions must accept dynamic inputs. Dynamism propagates: an
unknown input dimension yields an unknown output dimension unless the op
pins it down (e.g. broadcasting "?" against a static 5 gives 5).

Adding a new op: define an OpDef and add it to OP_REGISTRY.
"""

from dataclasses import dataclass
from typing import Any, Callable

import numpy as np

from .errors import ShapeInferenceError
from .ir import (
    UNKNOWN_DIM, Dim, Graph, Node, OpType, Shape,
    format_shape, is_dynamic_shape, is_static_dim,
)


# Numpy evaluator: (inputs, attrs) -> output array
NumpyEvaluator = Callable[[list[np.ndarray], dict[str, Any]], np.ndarray]

# Shape inference: (input_shapes, attrs) -> output shape (or list of shapes
# for ops with num_outputs > 1)
ShapeInfer = Callable[[list[Shape], dict[str, Any]], Shape | list[Shape]]


@dataclass
class OpDef:
    """Python-side definition of an op type.

    Fields:
        shape: Computes output shape(s) from input shapes and attrs. Used by
            infer_shapes() to propagate shapes through the graph after
            structural edits. None = output shape equals first input's shape
            (correct for element-wise ops, softmax, the RESULT marker, etc.).
        num_outputs: How many output tensors the op produces. Multi-output
            shape functions return one shape per output.
        evaluator: Numpy implementation. Only the integer shape-vector ops
            have one; it lets shape subgraphs be evaluated for diagnostics.
    """
    shape: ShapeInfer | None = None
    num_outputs: int = 1
    evaluator: NumpyEvaluator | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _numel(shape: tuple[int, ...]) -> int:
    n = 1
    for d in shape:
        n *= d
    return n


def normalize_axis(axis: int, rank: int, op: str) -> int:
    if not -rank <= axis < rank:
        raise ShapeInferenceError(f"{op}: axis {axis} out of range for rank {rank}")
    return axis % rank


def _broadcast_dim(a: Dim, b: Dim) -> Dim:
    """Numpy broadcasting of two dims, either of which may be symbolic."""
    if is_static_dim(a) and is_static_dim(b):
        if a == b or b == 1:
            return a
        if a == 1:
            return b
        raise ShapeInferenceError(f"Cannot broadcast dimensions {a} and {b}")
    if is_static_dim(a):
        return b if a == 1 else a
    if is_static_dim(b):
        return a if b == 1 else b
    return a if a == b else UNKNOWN_DIM


def broadcast_shapes(a: Shape, b: Shape) -> Shape:
    """Broadcast two possibly-dynamic shapes. Unknown rank stays unknown."""
    if a is None or b is None:
        return None
    ndim = max(len(a), len(b))
    a = (1,) * (ndim - len(a)) + tuple(a)
    b = (1,) * (ndim - len(b)) + tuple(b)
    return tuple(_broadcast_dim(x, y) for x, y in zip(a, b))


def _vector_length(shape: Shape, op: str) -> Dim:
    """Length of a 1-D shape vector, or "?" if that is not known."""
    if shape is None:
        return UNKNOWN_DIM
    if len(shape) != 1:
        raise ShapeInferenceError(f"{op}: expected a 1-D shape vector, got {format_shape(shape)}")
    return shape[0]


# ---------------------------------------------------------------------------
# Shape inference functions
# ---------------------------------------------------------------------------
# Only needed for ops whose output shape differs from the first input.

def _shape_broadcast_binary(in_shapes, attrs):
    """Binary ops with broadcasting (ADD, SUB, MUL, DIV, POW, EQUAL)."""
    return broadcast_shapes(in_shapes[0], in_shapes[1])


def _shape_matmul(in_shapes, attrs):
    """MATMUL: (..., M, K) × (..., K, N) -> (..., M, N)."""
    a, b = in_shapes[0], in_shapes[1]
    if a is None or b is None:
        return None
    batch = broadcast_shapes(a[:-2], b[:-2])
    return (*batch, a[-2], b[-1])


def _shape_reshape(in_shapes, attrs):
    target = list(attrs["shape"])
    if -1 not in target:
        return tuple(target)
    neg_idx = target.index(-1)
    src = in_shapes[0]
    rest = [d for i, d in enumerate(target) if i != neg_idx]
    if is_dynamic_shape(src) or any(not is_static_dim(d) for d in rest):
        target[neg_idx] = UNKNOWN_DIM
        return tuple(target)
    known = _numel(tuple(rest))
    target[neg_idx] = _numel(src) // known
    return tuple(target)


def _shape_transpose(in_shapes, attrs):
    shape = in_shapes[0]
    if shape is None:
        return None
    axes = list(attrs["axes"])
    if sorted(axes) != list(range(len(shape))):
        raise ShapeInferenceError(
            f"TRANSPOSE: axes {axes} are not a permutation for shape {format_shape(shape)}")
    return tuple(shape[i] for i in axes)


def _shape_squeeze(in_shapes, attrs):
    shape = in_shapes[0]
    if shape is None:
        return None
    axes = attrs.get("axes")
    if not axes:
        if is_dynamic_shape(shape):
            return None  # which dims are 1 is only known at runtime
        return tuple(d for d in shape if d != 1)
    rank = len(shape)
    drop = {normalize_axis(a, rank, "SQUEEZE") for a in axes}
    for axis in drop:
        if is_static_dim(shape[axis]) and shape[axis] != 1:
            raise ShapeInferenceError(
                f"SQUEEZE: dimension {axis} of {format_shape(shape)} is not 1")
    return tuple(d for i, d in enumerate(shape) if i not in drop)


def _shape_unsqueeze(in_shapes, attrs):
    shape = in_shapes[0]
    if shape is None:
        return None
    out_rank = len(shape) + len(attrs["axes"])
    insert = {normalize_axis(a, out_rank, "UNSQUEEZE") for a in attrs["axes"]}
    if len(insert) != len(attrs["axes"]):
        raise ShapeInferenceError(f"UNSQUEEZE: repeated axes {attrs['axes']}")
    dims = iter(shape)
    return tuple(1 if i in insert else next(dims) for i in range(out_rank))


def _shape_non_zero(in_shapes, attrs):
    """NON_ZERO: (rank, number of non-zero elements); the count is data-dependent."""
    shape = in_shapes[0]
    rank = len(shape) if shape is not None else UNKNOWN_DIM
    return (rank, UNKNOWN_DIM)


def _shape_non_max_suppression(in_shapes, attrs):
    """NON_MAX_SUPPRESSION: (selected boxes, [batch, class, box]) triplets."""
    return (UNKNOWN_DIM, 3)


def _shape_roi_align(in_shapes, attrs):
    """ROI_ALIGN: (num_rois, channels, pooled_h, pooled_w)."""
    data, rois = in_shapes[0], in_shapes[1]
    num_rois = rois[0] if rois is not None else UNKNOWN_DIM
    channels = data[1] if data is not None else UNKNOWN_DIM
    return (num_rois, channels, attrs["pooled_h"], attrs["pooled_w"])


def _shape_shape_of(in_shapes, attrs):
    shape = in_shapes[0]
    return (len(shape),) if shape is not None else (UNKNOWN_DIM,)


def _shape_static_bound(in_shapes, attrs):
    return tuple(attrs["bound"])


def _shape_broadcast_shape(in_shapes, attrs):
    a = _vector_length(in_shapes[0], "BROADCAST_SHAPE")
    b = _vector_length(in_shapes[1], "BROADCAST_SHAPE")
    if is_static_dim(a) and is_static_dim(b):
        return (max(a, b),)
    return (UNKNOWN_DIM,)


def _shape_gather(in_shapes, attrs):
    _vector_length(in_shapes[0], "GATHER")
    return (len(attrs["indices"]),)


def _shape_concat(in_shapes, attrs):
    lengths = [_vector_length(s, "CONCAT") for s in in_shapes]
    if all(is_static_dim(n) for n in lengths):
        return (sum(lengths),)
    return (UNKNOWN_DIM,)


def _shape_static_non_zero(in_shapes, attrs):
    """STATIC_NON_ZERO: indices padded to every element being non-zero."""
    shape = in_shapes[0]
    if shape is None:
        return [(UNKNOWN_DIM, UNKNOWN_DIM), (2,)]
    numel = _numel(shape) if not is_dynamic_shape(shape) else UNKNOWN_DIM
    return [(len(shape), numel), (2,)]


def _shape_static_nms(in_shapes, attrs):
    """STATIC_NON_MAX_SUPPRESSION: batches * classes * min(boxes, max_output) rows."""
    boxes, scores = in_shapes[0], in_shapes[1]
    if is_dynamic_shape(boxes) or is_dynamic_shape(scores):
        return [(UNKNOWN_DIM, 3), (2,)]
    if len(boxes) != 3 or len(scores) != 3:
        raise ShapeInferenceError(
            f"NON_MAX_SUPPRESSION: expected boxes [B,N,4] and scores [B,C,N], "
            f"got {format_shape(boxes)} and {format_shape(scores)}")
    batches, num_boxes = boxes[0], boxes[1]
    classes = scores[1]
    per_class = min(num_boxes, attrs.get("max_output_boxes_per_class", num_boxes))
    return [(batches * classes * per_class, 3), (2,)]


# ---------------------------------------------------------------------------
# Evaluators for shape-vector ops
# ---------------------------------------------------------------------------

def _eval_broadcast_shape(ins: list[np.ndarray], attrs: dict[str, Any]) -> np.ndarray:
    shape = np.broadcast_shapes(tuple(int(d) for d in ins[0]), tuple(int(d) for d in ins[1]))
    return np.array(shape, dtype=np.int64)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

OP_REGISTRY: dict[OpType, OpDef] = {
    # --- Element-wise unary ---
    # shape=None → output shape equals first input's shape.
    OpType.RELU:           OpDef(),
    OpType.EXP:            OpDef(),
    OpType.LOG:            OpDef(),
    OpType.SQRT:           OpDef(),
    OpType.SIGMOID:        OpDef(),
    OpType.FLOOR:          OpDef(),
    OpType.CLAMP:          OpDef(),
    OpType.CAST:           OpDef(),
    OpType.SCATTER_UPDATE: OpDef(),

    # --- Element-wise binary ---
    OpType.ADD:   OpDef(shape=_shape_broadcast_binary),
    OpType.SUB:   OpDef(shape=_shape_broadcast_binary),
    OpType.MUL:   OpDef(shape=_shape_broadcast_binary),
    OpType.DIV:   OpDef(shape=_shape_broadcast_binary),
    OpType.POW:   OpDef(shape=_shape_broadcast_binary),
    OpType.EQUAL: OpDef(shape=_shape_broadcast_binary),

    # --- Other compute ---
    OpType.SOFTMAX: OpDef(),
    OpType.MATMUL:  OpDef(shape=_shape_matmul),

    # --- Shape ops ---
    OpType.RESHAPE:   OpDef(shape=_shape_reshape),
    OpType.TRANSPOSE: OpDef(shape=_shape_transpose),
    OpType.SQUEEZE:   OpDef(shape=_shape_squeeze),
    OpType.UNSQUEEZE: OpDef(shape=_shape_unsqueeze),

    # --- Data-dependent output size ---
    OpType.NON_ZERO:            OpDef(shape=_shape_non_zero),
    OpType.NON_MAX_SUPPRESSION: OpDef(shape=_shape_non_max_suppression),
    OpType.ROI_ALIGN:           OpDef(shape=_shape_roi_align),

    # --- Static-shape infrastructure ---
    OpType.SHAPE_OF:               OpDef(shape=_shape_shape_of,
                                         evaluator=lambda ins, a: np.array(ins[0].shape, dtype=np.int64)),
    OpType.DYNAMIC_SHAPE_RESOLVER: OpDef(),
    OpType.STATIC_BOUND:           OpDef(shape=_shape_static_bound),
    OpType.BROADCAST_SHAPE:        OpDef(shape=_shape_broadcast_shape, evaluator=_eval_broadcast_shape),
    OpType.GATHER:                 OpDef(shape=_shape_gather,
                                         evaluator=lambda ins, a: ins[0][list(a["indices"])]),
    OpType.CONCAT:                 OpDef(shape=_shape_concat,
                                         evaluator=lambda ins, a: np.concatenate(ins)),
    OpType.STATIC_NON_ZERO:            OpDef(shape=_shape_static_non_zero, num_outputs=2),
    OpType.STATIC_NON_MAX_SUPPRESSION: OpDef(shape=_shape_static_nms, num_outputs=2),

    # --- Output marker ---
    OpType.RESULT: OpDef(),
}


# ---------------------------------------------------------------------------
# Shape propagation
# ---------------------------------------------------------------------------

def infer_node(graph: Graph, node: Node) -> None:
    """Recompute the output shapes of a single node from its inputs' shapes."""
    op_def = OP_REGISTRY.get(node.op)
    in_shapes = [graph.tensors[inp].shape for inp in node.inputs]
    if op_def is not None and op_def.shape is not None:
        result = op_def.shape(in_shapes, node.attrs)
    else:
        # Default: preserve first input's shape
        result = in_shapes[0]

    n_out = op_def.num_outputs if op_def is not None else 1
    shapes = result if n_out > 1 else [result]
    if len(shapes) != len(node.outputs):
        raise ShapeInferenceError(
            f"{node.name}: shape function produced {len(shapes)} shapes "
            f"for {len(node.outputs)} outputs")
    for out, shape in zip(node.outputs, shapes):
        graph.tensors[out].shape = shape


def infer_shapes(graph: Graph) -> None:
    """Re-run shape inference over the whole graph.

    Walks the graph in topological order applying per-op shape rules, so
    every node's outputs are recomputed from the current structure,
    including nodes inserted by rewrites. Graph inputs and constants keep
    their declared shapes.
    """
    for node in graph:
        infer_node(graph, node)
