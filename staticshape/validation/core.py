"""Validation types, the validator registry and the runner.

Kept apart from graph.py so validator modules can import the registry
without importing each other.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable

from ..ir import Graph


class Phase(Enum):
    """Where a validator runs relative to the dynamic-to-static transformation.

        PRE_TRANSFORM   the graph as handed to the engine
        POST_TRANSFORM  after rewrites, re-inference and the static-shape check
    """
    PRE_TRANSFORM  = "pre_transform"
    POST_TRANSFORM = "post_transform"


class Severity(Enum):
    """How bad a finding is. Lower rank is more severe.

    ERROR:   The transformation cannot succeed or its result is malformed.
    WARNING: Likely to fail later (e.g. an unbounded dynamic input).
    INFO:    Observation only (dead nodes).
    """
    ERROR   = 0
    WARNING = 1
    INFO    = 2

    def at_least(self, threshold: "Severity") -> bool:
        """True if this severity is as bad as `threshold` or worse."""
        return self.value <= threshold.value


@dataclass
class ValidationResult:
    """One finding from one validator, optionally tied to a node."""
    validator: str
    severity: Severity
    message: str
    node: str | None = None

    def __str__(self) -> str:
        where = f" ({self.node})" if self.node else ""
        return f"[{self.severity.name}] {self.validator}{where}: {self.message}"


class ValidationError(Exception):
    """Validators reported findings at or above the failure threshold."""

    def __init__(self, phase: Phase, results: list[ValidationResult],
                 threshold: Severity = Severity.ERROR) -> None:
        self.phase = phase
        self.results = results
        self.failures = [r for r in results if r.severity.at_least(threshold)]
        lines = "\n".join(f"  {r}" for r in self.failures)
        super().__init__(
            f"Validation failed at {phase.name} ({len(self.failures)} issue(s)):\n{lines}")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

Check = Callable[[Graph], list[ValidationResult]]


@dataclass
class Validator:
    name: str
    phase: Phase
    check: Check


VALIDATORS: list[Validator] = []


def register_validator(name: str, phase: Phase):
    """Decorator adding a graph check to the registry for one phase.

        @register_validator("my_check", Phase.POST_TRANSFORM)
        def check_something(graph: Graph) -> list[ValidationResult]:
            ...
    """
    def decorator(fn: Check) -> Check:
        VALIDATORS.append(Validator(name, phase, fn))
        return fn
    return decorator


def run_validators(
    phase: Phase,
    target: Graph,
    *,
    fail_on: Severity | None = Severity.ERROR,
    skip: Iterable[str] = (),
) -> list[ValidationResult]:
    """Run every validator registered for `phase` against `target`.

    Args:
        phase: Which checkpoint to validate.
        target: The graph to inspect.
        fail_on: Raise ValidationError when any finding is at least this
            severe. None collects findings without raising.
        skip: Names of validators to leave out.

    Returns:
        All findings, in registration order.
    """
    skipped = set(skip)
    results: list[ValidationResult] = []
    for v in VALIDATORS:
        if v.phase is phase and v.name not in skipped:
            results.extend(v.check(target))

    if fail_on is not None and any(r.severity.at_least(fail_on) for r in results):
        raise ValidationError(phase, results, fail_on)
    return results
