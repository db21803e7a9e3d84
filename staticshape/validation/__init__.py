"""Validation framework for the dynamic-to-static transformation.

Validators are tagged checks that run at specific phases. Each validator
inspects a Graph and returns structured diagnostics.

The registry collects validators via decorator. The engine runs them
around the transformation, but they work standalone too:

    from staticshape.validation import run_validators, Phase
    errors = run_validators(Phase.POST_TRANSFORM, graph)

Validators are defined in graph.py. Core types live in core.py to avoid
circular imports.
"""

from .core import (  # noqa: F401
    Phase,
    Severity,
    ValidationResult,
    ValidationError,
    Validator,
    VALIDATORS,
    register_validator,
    run_validators,
)

# Import submodules to trigger validator registration.
from . import graph  # noqa: F401
