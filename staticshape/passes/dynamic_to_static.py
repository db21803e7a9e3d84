"""Dynamic-to-static shape transformation.

Walks the graph in topological order and hands every node with a dynamic
output to the rewrite registered for its op type. Once every node has been
visited, shape inference is re-run over the whole graph and the result is
checked: no node may be left with a dynamic output.

    engine = DynamicToStaticShape()
    engine.transform(graph)          # raises on failure, mutates in place

The engine is also a Pass, so it drops into a pipeline:

    run_pipeline(graph, [DynamicToStaticShape(), eliminate_dead_code])

Dispatch is a single pass over an order snapshotted before any mutation.
Nodes inserted by rewrites are never visited; a rewrite must leave its
replacement statically shaped on its own.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterator, Mapping

from ..errors import ResidualDynamism, UnsupportedDynamicOperation
from ..ir import Graph, Node, OpType, is_dynamic_shape
from ..ops import infer_shapes
from ..validation import Phase, Severity, run_validators
from .rewrites import (
    BINARY_ELTWISE_OPS, UNARY_ELTWISE_OPS,
    dynamic_to_static_binary_eltwise,
    dynamic_to_static_non_max_suppression,
    dynamic_to_static_non_zero,
    dynamic_to_static_roi_align,
    dynamic_to_static_squeeze,
    dynamic_to_static_transpose,
    dynamic_to_static_unary_eltwise,
    dynamic_to_static_unsqueeze,
    no_op,
)

logger = logging.getLogger(__name__)

# A transformation rewrites one dynamic node in place.
Transformation = Callable[[Node, Graph], None]


@dataclass
class RewriteRecord:
    """Record of a single rewrite performed during dispatch."""
    node: str
    op: OpType
    nodes_before: int
    nodes_after: int

    def __str__(self) -> str:
        delta = self.nodes_after - self.nodes_before
        sign = "+" if delta >= 0 else ""
        return (f"[dynamic_to_static] {self.node} ({self.op.name}): "
                f"{self.nodes_before} -> {self.nodes_after} nodes ({sign}{delta})")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TransformationRegistry:
    """Lookup table from op type to the rewrite that removes its dynamism."""

    def __init__(self, entries: Mapping[OpType, Transformation] | None = None) -> None:
        self._table: dict[OpType, Transformation] = dict(entries or {})

    def register(self, op: OpType, fn: Transformation) -> None:
        """Insert or overwrite the rewrite for `op` (last registration wins)."""
        self._table[op] = fn

    def lookup(self, op: OpType) -> Transformation | None:
        return self._table.get(op)

    def supported_types(self) -> set[OpType]:
        return set(self._table)

    def copy(self) -> "TransformationRegistry":
        return TransformationRegistry(self._table)

    def __contains__(self, op: object) -> bool:
        return op in self._table

    def __iter__(self) -> Iterator[OpType]:
        return iter(self._table)

    def __len__(self) -> int:
        return len(self._table)


def default_transformations() -> TransformationRegistry:
    """Build the built-in registry. Every call returns a fresh instance."""
    registry = TransformationRegistry()
    for op in BINARY_ELTWISE_OPS:
        registry.register(op, dynamic_to_static_binary_eltwise)
    for op in UNARY_ELTWISE_OPS:
        registry.register(op, dynamic_to_static_unary_eltwise)
    registry.register(OpType.TRANSPOSE, dynamic_to_static_transpose)
    registry.register(OpType.SQUEEZE, dynamic_to_static_squeeze)
    registry.register(OpType.UNSQUEEZE, dynamic_to_static_unsqueeze)
    registry.register(OpType.NON_MAX_SUPPRESSION, dynamic_to_static_non_max_suppression)
    registry.register(OpType.NON_ZERO, dynamic_to_static_non_zero)
    registry.register(OpType.ROI_ALIGN, dynamic_to_static_roi_align)
    return registry


# ---------------------------------------------------------------------------
# Predicate, dispatch, post-condition
# ---------------------------------------------------------------------------

def is_dynamic(graph: Graph, node: Node) -> bool:
    """True if any of the node's outputs currently has a dynamic shape."""
    return any(is_dynamic_shape(graph.tensors[out].shape) for out in node.outputs)


def dispatch(graph: Graph, registry: TransformationRegistry,
             log: list[RewriteRecord] | None = None) -> int:
    """Rewrite every dynamic node using the registry. Returns the rewrite count.

    Raises UnsupportedDynamicOperation for a dynamic node without a
    registered rewrite. Errors raised by rewrites propagate unchanged.
    Rewrites already applied are not rolled back.
    """
    rewrites = 0
    for node in list(graph):  # snapshot: inserted nodes are not revisited
        if node.id not in graph.nodes:
            continue
        if not is_dynamic(graph, node):
            continue

        transformation = registry.lookup(node.op)
        if transformation is None:
            raise UnsupportedDynamicOperation(node.name, node.op, registry.supported_types())

        n_before = len(graph.nodes)
        transformation(node, graph)
        rewrites += 1

        record = RewriteRecord(node.name, node.op, n_before, len(graph.nodes))
        logger.debug("%s", record)
        if log is not None:
            log.append(record)
    return rewrites


def validate_static_shapes(graph: Graph) -> None:
    """Raise ResidualDynamism for the first node that still has a dynamic output."""
    for node in graph:
        for out in node.outputs:
            shape = graph.tensors[out].shape
            if is_dynamic_shape(shape):
                raise ResidualDynamism(node.name, node.op, shape)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

_FAIL_ON = {
    "strict": Severity.WARNING,
    "normal": Severity.ERROR,
}


class DynamicToStaticShape:
    """Replaces every dynamically shaped node of a graph with a static equivalent.

    Args:
        transformations: Rewrites to use instead of the built-in table. A
            non-empty registry (or mapping) replaces the defaults entirely;
            nothing is merged. The no-op rewrite for the RESULT marker is
            always added, to the engine's own copy.
        validation: How strictly to run the graph validators around the
            transformation.
            "strict"  Fail on WARNING or ERROR.
            "normal"  Fail on ERROR only (default).
            "none"    Skip graph validators. The static-shape
                      post-condition is always enforced.
    """

    def __init__(
        self,
        transformations: TransformationRegistry | Mapping[OpType, Transformation] | None = None,
        *,
        validation: str = "normal",
    ) -> None:
        if validation not in ("strict", "normal", "none"):
            raise ValueError(f"Unknown validation level: {validation!r}")
        self.validation = validation

        if transformations:
            if isinstance(transformations, TransformationRegistry):
                self._registry = transformations.copy()
            else:
                self._registry = TransformationRegistry(transformations)
        else:
            self._registry = default_transformations()
        self._registry.register(OpType.RESULT, no_op)

    @property
    def registry(self) -> TransformationRegistry:
        return self._registry

    def supported_types(self) -> set[OpType]:
        """Op types this engine can rewrite when they are dynamic."""
        return self._registry.supported_types()

    def transform(self, graph: Graph, log: list[RewriteRecord] | None = None) -> None:
        """Make every node output in `graph` static, in place.

        Runs dispatch, re-infers all shapes, then checks the post-condition.
        Raises on the first failure; the graph may be left partially
        rewritten.
        """
        self._validate(Phase.PRE_TRANSFORM, graph)

        rewrites = dispatch(graph, self._registry, log)
        infer_shapes(graph)
        validate_static_shapes(graph)

        self._validate(Phase.POST_TRANSFORM, graph)
        logger.info("dynamic_to_static: %d node(s) rewritten, graph now has %d nodes",
                    rewrites, len(graph.nodes))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("graph after dynamic_to_static:\n%s", graph.dump())

    def __call__(self, graph: Graph) -> bool:
        """Pass interface: transform the graph and report whether it changed."""
        before = set(graph.nodes)
        self.transform(graph)
        return set(graph.nodes) != before

    def _validate(self, phase: Phase, graph: Graph) -> None:
        if self.validation == "none":
            return
        results = run_validators(phase, graph, fail_on=_FAIL_ON[self.validation])
        for r in results:
            logger.debug("%s", r)

