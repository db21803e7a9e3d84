"""Graph passes and the pipeline runner.

A pass is any callable (Graph) -> bool that mutates the graph in place and
reports whether it changed anything. The dynamic-to-static engine is one;
eliminate_dead_code is the other built-in, used to sweep away shape nodes
that a rewrite emitted but nothing reads.

A pipeline is a plain list of passes; build your own or use
default_pipeline().
"""

import logging
from dataclasses import dataclass
from typing import Callable

from ..ir import Graph, OpType

logger = logging.getLogger(__name__)

Pass = Callable[[Graph], bool]


@dataclass
class PassResult:
    """What one pass did to the node count."""
    name: str
    changed: bool
    nodes_before: int
    nodes_after: int

    def __str__(self) -> str:
        if not self.changed:
            return f"[pass] {self.name}: no changes"
        delta = self.nodes_after - self.nodes_before
        return (f"[pass] {self.name}: {self.nodes_before} -> "
                f"{self.nodes_after} nodes ({delta:+d})")


def run_pipeline(graph: Graph, pipeline: list[Pass] | None = None,
                 log: list[PassResult] | None = None) -> None:
    """Apply each pass once, in order. Appends a PassResult per pass to `log`."""
    if pipeline is None:
        pipeline = default_pipeline()
    for p in pipeline:
        # Pass objects (like the engine) have no __name__ of their own
        name = getattr(p, "__name__", type(p).__name__)
        before = len(graph)
        result = PassResult(name, p(graph), before, len(graph))
        logger.debug("%s", result)
        if log is not None:
            log.append(result)


# ---------------------------------------------------------------------------
# Dead code elimination
# ---------------------------------------------------------------------------

def eliminate_dead_code(graph: Graph) -> bool:
    """Drop every node and constant that no graph output depends on.

    Mark and sweep: liveness starts at the RESULT markers and at graph
    outputs and is propagated backwards through producers. A multi-output
    node is live if any of its outputs is needed.
    """
    live_nodes: set[int] = set()
    needed: set[str] = set(graph.outputs)
    stack = [n for n in graph.nodes.values() if n.op == OpType.RESULT]
    stack += [p for p in map(graph.producer, graph.outputs) if p is not None]

    while stack:
        node = stack.pop()
        if node.id in live_nodes:
            continue
        live_nodes.add(node.id)
        for t in node.inputs:
            needed.add(t)
            producer = graph.producer(t)
            if producer is not None:
                stack.append(producer)

    dead = [n for n in graph.nodes.values() if n.id not in live_nodes]
    for node in dead:
        graph.remove_node(node.id)
        for out in node.outputs:
            graph.remove_tensor(out)

    unused = [c for c in graph.constants if c not in needed]
    for name in unused:
        graph.constants.remove(name)
        graph.remove_tensor(name)

    return bool(dead or unused)


def default_pipeline() -> list[Pass]:
    """Remove dynamic shapes, then clean up what the rewrites left unused."""
    from .dynamic_to_static import DynamicToStaticShape
    return [DynamicToStaticShape(), eliminate_dead_code]
