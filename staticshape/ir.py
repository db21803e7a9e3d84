"""Graph IR for the dynamic-to-static shape engine.

Node-centric design: edges are implicit in each node's input list.
Tensor metadata is tracked separately from nodes. Nodes are about
computation, tensors are about data.

Inputs and constants are tensors without producer nodes, not virtual
nodes. Every node in the graph is a real operation, including the RESULT
marker that terminates an output.

Shapes are tuples whose entries are either ints (static) or strings
(symbolic). "?" is the anonymous unknown dimension; any other string names
a symbol such as "S". A shape of None means the rank itself is unknown.
"""

from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

import numpy as np


Dim = int | str
Shape = tuple[Dim, ...] | None

UNKNOWN_DIM = "?"


def is_static_dim(d: Dim) -> bool:
    # bool is an int subclass; it is never a valid dimension
    return isinstance(d, (int, np.integer)) and not isinstance(d, bool) and d >= 0


def is_dynamic_shape(shape: Shape) -> bool:
    """True if the rank is unknown or any dimension is not a concrete non-negative int."""
    if shape is None:
        return True
    return not all(is_static_dim(d) for d in shape)


def format_shape(shape: Shape) -> str:
    if shape is None:
        return "[...]"
    return "[" + ",".join(str(d) for d in shape) + "]"


class OpType(Enum):
    """Operator types understood by the graph library.

    Values use range-based numbering so related ops cluster together:
      10-19  Element-wise unary (output shape follows the data input)
      20-29  Element-wise binary with broadcasting
      30-39  Other compute
      50-59  Shape / data movement
      60-69  Data-dependent output size
      80-89  Static-shape infrastructure (inserted by rewrites)
      90     Output marker
    """
    # --- Element-wise unary (10-19) ---
    RELU           = 10
    EXP            = 11
    LOG            = 12
    SQRT           = 13
    SIGMOID        = 14
    FLOOR          = 15
    CLAMP          = 16  # attrs["min", "max"]
    CAST           = 17  # attrs["target_dtype"]
    SCATTER_UPDATE = 18  # inputs: [data, indices, updates], attrs["axis"]

    # --- Element-wise binary (20-29) ---
    ADD   = 20
    SUB   = 21
    MUL   = 22
    DIV   = 23
    POW   = 24
    EQUAL = 25

    # --- Other compute (30-39) ---
    SOFTMAX = 30         # attrs["axis"]
    MATMUL  = 31

    # --- Shape / data movement (50-59) ---
    RESHAPE   = 50       # attrs["shape"]
    TRANSPOSE = 51       # attrs["axes"]
    SQUEEZE   = 52       # attrs["axes"]
    UNSQUEEZE = 53       # attrs["axes"]

    # --- Data-dependent output size (60-69) ---
    NON_ZERO            = 60
    NON_MAX_SUPPRESSION = 61  # inputs: [boxes, scores], attrs["max_output_boxes_per_class", ...]
    ROI_ALIGN           = 62  # inputs: [data, rois, batch_indices], attrs["pooled_h", "pooled_w", ...]

    # --- Static-shape infrastructure (80-89) ---
    SHAPE_OF                   = 80
    DYNAMIC_SHAPE_RESOLVER     = 81  # inputs: [data, shape]
    STATIC_BOUND               = 82  # attrs["bound"]
    BROADCAST_SHAPE            = 83
    GATHER                     = 84  # attrs["indices"]
    CONCAT                     = 85
    STATIC_NON_ZERO            = 86  # outputs: [indices, shape]
    STATIC_NON_MAX_SUPPRESSION = 87  # outputs: [indices, shape]

    # --- Output marker ---
    RESULT = 90


@dataclass
class TensorInfo:
    """Shape, dtype and role-specific data of one named tensor.

    `upper_bound` is only meaningful for dynamic graph inputs: it is the
    largest shape the caller will ever feed, and is what lets a rewrite
    place the input in a statically sized buffer. `buffer` holds the data
    of constants.
    """
    name: str
    shape: Shape
    dtype: str = "float32"
    upper_bound: tuple[int, ...] | None = None
    buffer: np.ndarray | None = None

    @property
    def is_dynamic(self) -> bool:
        return is_dynamic_shape(self.shape)


@dataclass
class Node:
    """One operation: its op type, the tensors it reads and writes, and attrs."""
    id: int
    op: OpType
    inputs: list[str]
    outputs: list[str]
    name: str = ""          # e.g. "ADD_0"; kept by the node that replaces it
    attrs: dict[str, Any] = field(default_factory=dict)

    @property
    def output(self) -> str:
        """The first (usually only) output tensor."""
        return self.outputs[0]


class Graph:
    """A DAG of nodes over a registry of named tensors.

    Nodes are keyed by ID and tensors by name. `inputs`, `outputs` and
    `constants` list tensor names by role. Producer and consumer indices are
    kept in step with add_node / remove_node / rewire_input, so rewrites can
    query connectivity while they edit the graph.
    """

    def __init__(self) -> None:
        self.nodes: dict[int, Node] = {}
        self.tensors: dict[str, TensorInfo] = {}

        self.inputs: list[str] = []
        self.outputs: list[str] = []
        self.constants: list[str] = []

        self._producer: dict[str, int] = {}           # tensor -> producing node ID
        self._consumers: dict[str, list[int]] = {}    # tensor -> reading node IDs

        self._next_id: int = 0
        self._name_counts: Counter = Counter()

    # --- Builder methods ---

    def add_tensor(self, name: str, shape: Shape, dtype: str = "float32",
                   upper_bound: tuple[int, ...] | None = None) -> TensorInfo:
        """Register a tensor in the graph. Returns the created TensorInfo."""
        if name in self.tensors:
            raise ValueError(f"Duplicate tensor name: {name}")
        info = TensorInfo(name=name, shape=_as_shape(shape), dtype=dtype,
                          upper_bound=tuple(upper_bound) if upper_bound is not None else None)
        self.tensors[name] = info
        self._consumers[name] = []
        return info

    def add_input(self, name: str, shape: Shape, dtype: str = "float32",
                  upper_bound: tuple[int, ...] | None = None) -> TensorInfo:
        """Register a tensor and mark it as a graph input."""
        info = self.add_tensor(name, shape, dtype, upper_bound)
        self.inputs.append(name)
        return info

    def add_constant(self, name: str, value: np.ndarray) -> TensorInfo:
        """Register a constant tensor backed by a numpy buffer."""
        value = np.asarray(value)
        info = self.add_tensor(name, tuple(int(d) for d in value.shape), value.dtype.name)
        info.buffer = value
        self.constants.append(name)
        return info

    def add_node(self, op: OpType, inputs: list[str], output: str | list[str],
                 attrs: dict[str, Any] | None = None, name: str | None = None) -> Node:
        """Add a node to the graph. Output tensors must already be registered.

        Returns the created Node with an auto-assigned ID. Without an
        explicit name the node is called "{OP}_{n}", counting per op type.
        """
        outputs = [output] if isinstance(output, str) else list(output)
        for inp in inputs:
            if inp not in self.tensors:
                raise ValueError(f"Input tensor '{inp}' not registered")
        for out in outputs:
            if out not in self.tensors:
                raise ValueError(f"Output tensor '{out}' not registered")
            if out in self._producer:
                raise ValueError(f"Tensor '{out}' already has a producer "
                                 f"(node {self._producer[out]})")

        node_id = self._next_id
        self._next_id += 1

        if name is None:
            name = f"{op.name}_{self._name_counts[op]}"
            self._name_counts[op] += 1

        node = Node(
            id=node_id,
            op=op,
            inputs=list(inputs),
            outputs=outputs,
            name=name,
            attrs=attrs or {},
        )
        self.nodes[node_id] = node

        # Update connectivity indices
        for out in outputs:
            self._producer[out] = node_id
        for inp in inputs:
            self._consumers[inp].append(node_id)

        return node

    def unique_name(self, base: str) -> str:
        """Return `base`, or `base` with a numeric suffix if it is taken."""
        if base not in self.tensors:
            return base
        i = 1
        while f"{base}_{i}" in self.tensors:
            i += 1
        return f"{base}_{i}"

    # --- Connectivity lookups ---

    def producer(self, tensor_name: str) -> Node | None:
        """Return the node that produces this tensor, or None for inputs/constants."""
        node_id = self._producer.get(tensor_name)
        return self.nodes[node_id] if node_id is not None else None

    def consumers(self, tensor_name: str) -> list[Node]:
        """Return all nodes that consume this tensor."""
        return [self.nodes[nid] for nid in self._consumers.get(tensor_name, [])]

    def find(self, name: str) -> Node | None:
        """Look up a node by its friendly name."""
        for node in self.nodes.values():
            if node.name == name:
                return node
        return None

    # --- Ordering ---

    def _toposort(self) -> list[Node]:
        """Kahn's algorithm over the producer/consumer indices.

        A node is ready once every input it reads from another node has been
        emitted; graph inputs and constants count as already available. Ready
        nodes are taken in insertion order. On a cycle the result is missing
        the nodes on (or behind) it, which callers detect by its length.
        """
        pending = {
            node.id: sum(t in self._producer for t in node.inputs)
            for node in self.nodes.values()
        }
        ready = deque(nid for nid, n in pending.items() if n == 0)
        order: list[Node] = []

        while ready:
            node = self.nodes[ready.popleft()]
            order.append(node)
            for out in node.outputs:
                for cid in self._consumers.get(out, []):
                    pending[cid] -= 1
                    if pending[cid] == 0:
                        ready.append(cid)

        return order

    def __iter__(self) -> Iterator[Node]:
        """Nodes in topological order. Raises ValueError on a cycle."""
        order = self._toposort()
        if len(order) != len(self.nodes):
            raise ValueError("Graph has a cycle")
        yield from order

    def __len__(self) -> int:
        return len(self.nodes)

    # --- Display ---

    def _describe(self, name: str) -> str:
        t = self.tensors[name]
        return f"{name} {format_shape(t.shape)} {t.dtype}"

    def summary(self) -> str:
        """Counts by role and op type, plus the graph's inputs and outputs."""
        ops = Counter(node.op.name for node in self.nodes.values())
        lines = [
            f"Graph: {len(self.nodes)} nodes, {len(self.tensors)} tensors "
            f"({len(self.inputs)} inputs, {len(self.constants)} constants, "
            f"{len(self.outputs)} outputs)",
            "  Ops:     " + ", ".join(f"{op}: {n}" for op, n in ops.most_common()),
        ]
        if self.inputs:
            lines.append("  Inputs:  " + ", ".join(map(self._describe, self.inputs)))
        if self.outputs:
            lines.append("  Outputs: " + ", ".join(map(self._describe, self.outputs)))
        return "\n".join(lines)

    def dump(self) -> str:
        """summary() followed by one line per node, in topological order."""
        lines = [self.summary(), ""]
        for node in self._toposort():
            outs = ", ".join(f"{o} {format_shape(self.tensors[o].shape)}"
                             for o in node.outputs)
            attrs = "".join(f"  {k}={v}" for k, v in node.attrs.items())
            lines.append(f"  [{node.id:>3}] {node.name:<24} "
                         f"{', '.join(node.inputs)} -> {outs}{attrs}")
        return "\n".join(lines)

    # --- Mutation ---

    def rewire_input(self, node_id: int, old_tensor: str, new_tensor: str) -> None:
        """Point every read of `old_tensor` by this node at `new_tensor`."""
        node = self.nodes[node_id]
        hits = node.inputs.count(old_tensor)
        node.inputs = [new_tensor if t == old_tensor else t for t in node.inputs]
        self._consumers[old_tensor] = [c for c in self._consumers[old_tensor]
                                       if c != node_id]
        # One consumer entry per read, matching add_node
        self._consumers[new_tensor].extend([node_id] * hits)

    def remove_node(self, node_id: int) -> None:
        """Unlink a node. Its output tensors stay registered.

        Consumers still read the outputs by name, so a replacement producer
        can be added under the same name afterwards.
        """
        node = self.nodes.pop(node_id)
        for out in node.outputs:
            self._producer.pop(out, None)
        for inp in set(node.inputs):
            if inp in self._consumers:
                self._consumers[inp] = [c for c in self._consumers[inp] if c != node_id]

    def remove_tensor(self, name: str) -> None:
        """Forget a tensor. Does not touch nodes that still name it."""
        self.tensors.pop(name, None)
        self._consumers.pop(name, None)
        self._producer.pop(name, None)


def _as_shape(shape: Any) -> Shape:
    """Normalise list/ndarray shapes to tuples of plain ints and symbols."""
    if shape is None:
        return None
    dims = []
    for d in shape:
        if isinstance(d, (int, np.integer)) and not isinstance(d, bool) and d < 0:
            raise ValueError(f"Negative dimension {d} in shape {list(shape)}; "
                             f"use a symbol such as '?' for an unknown size")
        dims.append(int(d) if is_static_dim(d) else str(d))
    return tuple(dims)
