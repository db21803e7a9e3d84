"""Exception types raised while removing dynamic shapes.

Shape inference problems are ValueErrors (bad data handed to a shape
function). Everything the dynamic-to-static engine raises derives from
DynamicShapeError, so a host pipeline can catch the whole family at once.
"""

from typing import Iterable

from .ir import OpType, Shape, format_shape


class ShapeInferenceError(ValueError):
    """A shape function was given input shapes it cannot work with."""


class DynamicShapeError(Exception):
    """Base class for failures of the dynamic-to-static transformation."""


class UnsupportedDynamicOperation(DynamicShapeError):
    """A dynamic node has no registered rewrite for its op type."""

    def __init__(self, node_name: str, op: OpType, supported: Iterable[OpType]) -> None:
        self.node_name = node_name
        self.op = op
        self.supported = sorted(supported, key=lambda t: t.name)
        names = ", ".join(t.name for t in self.supported)
        super().__init__(
            f"Encountered dynamic node {node_name} of type {op.name}, "
            f"but only [{names}] types are supported for dynamic nodes"
        )


class ResidualDynamism(DynamicShapeError):
    """A node is still dynamic after all rewrites and shape re-inference."""

    def __init__(self, node_name: str, op: OpType, shape: Shape = None) -> None:
        self.node_name = node_name
        self.op = op
        self.shape = shape
        super().__init__(
            f"After all the transformations there is still dynamism in the graph. "
            f"First met node with dynamic output: {node_name} "
            f"(type: {op.name}, shape: {format_shape(shape)})"
        )


class RewriteError(DynamicShapeError):
    """A rewrite function cannot handle the node it was given."""
