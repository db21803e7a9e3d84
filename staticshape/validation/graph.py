"""Graph validators for the PRE_TRANSFORM and POST_TRANSFORM phases."""

from ..ir import Graph, OpType, format_shape, is_dynamic_shape, is_static_dim
from ..ops import OP_REGISTRY
from .core import Phase, Severity, ValidationResult, register_validator


# ---------------------------------------------------------------------------
# Structure (both phases)
# ---------------------------------------------------------------------------

STRUCTURE = "structural_integrity"


def _structure_findings(graph: Graph) -> list[ValidationResult]:
    """Every name resolves, roles are consistent, arities match, no cycles."""
    found: list[ValidationResult] = []

    def error(msg: str, node: str | None = None) -> None:
        found.append(ValidationResult(STRUCTURE, Severity.ERROR, msg, node))

    external = set(graph.inputs) | set(graph.constants)

    for node in graph.nodes.values():
        for t in node.inputs:
            if t not in graph.tensors:
                error(f"reads unknown tensor '{t}'", node.name)
            elif t not in external and graph.producer(t) is None:
                error(f"reads '{t}', which is neither produced nor an input/constant",
                      node.name)
        for t in node.outputs:
            if t not in graph.tensors:
                error(f"writes unregistered tensor '{t}'", node.name)

        op_def = OP_REGISTRY.get(node.op)
        if op_def is None:
            error(f"op {node.op.name} has no OP_REGISTRY entry", node.name)
        elif len(node.outputs) != op_def.num_outputs:
            error(f"{node.op.name} has {len(node.outputs)} outputs, "
                  f"expected {op_def.num_outputs}", node.name)

    for role, names in (("input", graph.inputs), ("constant", graph.constants),
                        ("output", graph.outputs)):
        for name in names:
            if name not in graph.tensors:
                error(f"Graph {role} '{name}' is not a registered tensor")

    for name in external:
        producer = graph.producer(name)
        if producer is not None:
            error(f"Graph input/constant '{name}' has a producer", producer.name)
    for name in graph.outputs:
        if graph.producer(name) is None:
            error(f"Graph output '{name}' has no producer node")

    ordered = {n.id for n in graph._toposort()}
    if len(ordered) != len(graph.nodes):
        stuck = sorted(n.name for n in graph.nodes.values() if n.id not in ordered)
        error(f"Graph has cycles through {stuck}")

    return found


# Same check on both sides of the transformation
register_validator(STRUCTURE, Phase.PRE_TRANSFORM)(_structure_findings)
register_validator(STRUCTURE, Phase.POST_TRANSFORM)(_structure_findings)


# ---------------------------------------------------------------------------
# Input bounds (PRE_TRANSFORM)
# ---------------------------------------------------------------------------

@register_validator("input_bounds", Phase.PRE_TRANSFORM)
def validate_input_bounds(graph: Graph) -> list[ValidationResult]:
    """Dynamic graph inputs need a usable upper bound to be made static.

    A missing bound is only a warning: the input may feed nothing but
    ops that never need it bounded. A bound that contradicts the declared
    shape is an error.
    """
    NAME = "input_bounds"
    results = []

    for name in graph.inputs:
        info = graph.tensors.get(name)
        if info is None or not is_dynamic_shape(info.shape):
            continue
        bound = info.upper_bound
        if bound is None:
            results.append(ValidationResult(NAME, Severity.WARNING,
                f"Dynamic input '{name}' {format_shape(info.shape)} has no upper bound"))
            continue
        if any(not is_static_dim(d) for d in bound):
            results.append(ValidationResult(NAME, Severity.ERROR,
                f"Upper bound of '{name}' must be non-negative ints, got {format_shape(bound)}"))
            continue
        if info.shape is None:
            results.append(ValidationResult(NAME, Severity.ERROR,
                f"Input '{name}' has unknown rank; declare its shape to bound it"))
            continue
        if len(bound) != len(info.shape):
            results.append(ValidationResult(NAME, Severity.ERROR,
                f"Upper bound {format_shape(bound)} of '{name}' has rank {len(bound)}, "
                f"input has rank {len(info.shape)}"))
            continue
        for i, (d, b) in enumerate(zip(info.shape, bound)):
            if is_static_dim(d) and b < d:
                results.append(ValidationResult(NAME, Severity.ERROR,
                    f"Upper bound of '{name}' dim {i} is {b}, below the static size {d}"))

    return results


# ---------------------------------------------------------------------------
# Resolver well-formedness (POST_TRANSFORM)
# ---------------------------------------------------------------------------

@register_validator("resolver_inputs", Phase.POST_TRANSFORM)
def validate_resolver_inputs(graph: Graph) -> list[ValidationResult]:
    """Each DYNAMIC_SHAPE_RESOLVER's shape input must describe its data.

    The shape input has to be a 1-D integer vector with one entry per
    dimension of the data input.
    """
    NAME = "resolver_inputs"
    results = []

    def error(node, msg):
        results.append(ValidationResult(NAME, Severity.ERROR, msg, node.name))

    for node in graph.nodes.values():
        if node.op != OpType.DYNAMIC_SHAPE_RESOLVER:
            continue
        if len(node.inputs) != 2:
            error(node, f"has {len(node.inputs)} inputs, expected 2")
            continue

        data = graph.tensors[node.inputs[0]]
        shape = graph.tensors[node.inputs[1]]
        if not shape.dtype.startswith(("int", "uint")):
            error(node, f"shape input '{shape.name}' has dtype {shape.dtype}")
        if shape.shape is None or len(shape.shape) != 1:
            error(node, f"shape input '{shape.name}' is {format_shape(shape.shape)}, "
                        f"expected a vector")
        elif data.shape is not None and shape.shape[0] != len(data.shape):
            error(node, f"shape input has {shape.shape[0]} entries "
                        f"for rank-{len(data.shape)} data")

    return results


# ---------------------------------------------------------------------------
# Dead nodes (POST_TRANSFORM)
# ---------------------------------------------------------------------------

@register_validator("dead_nodes", Phase.POST_TRANSFORM)
def validate_dead_nodes(graph: Graph) -> list[ValidationResult]:
    """Report nodes none of whose outputs are read or returned."""
    read = {t for node in graph.nodes.values() for t in node.inputs}
    read.update(graph.outputs)
    return [
        ValidationResult("dead_nodes", Severity.INFO,
                         f"{node.op.name} outputs {node.outputs} are never used",
                         node.name)
        for node in graph.nodes.values()
        if node.op != OpType.RESULT and not read.intersection(node.outputs)
    ]
