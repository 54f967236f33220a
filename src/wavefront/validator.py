"""Static checks over a build plan's dependency graph.

Cycles and unordered writers of the same resource are critical and stop a
run before anything is scheduled. Tight coupling and responsibility sprawl
are warnings: they are logged and reported, and the run goes ahead.
Remediation text is advisory only.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from itertools import combinations

from wavefront.config import ValidationConfig
from wavefront.dag import Graph, build_graph
from wavefront.defaults import VALIDATION_DEFAULTS
from wavefront.models import UnitDeclaration

logger = logging.getLogger(__name__)

DEFAULT_GROUP = ""


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"


class ViolationKind(str, Enum):
    CYCLE = "cycle"
    SHARED_MUTABLE_STATE = "shared_mutable_state"
    TIGHT_COUPLING = "tight_coupling"
    MULTIPLE_RESPONSIBILITIES = "multiple_responsibilities"


@dataclass(frozen=True)
class Violation:
    kind: ViolationKind
    severity: Severity
    units: tuple[str, ...]
    message: str
    remediation: str
    path: tuple[str, ...] = ()
    resource: str | None = None

    @property
    def critical(self) -> bool:
        return self.severity is Severity.CRITICAL

    def to_record(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "units": list(self.units),
            "message": self.message,
            "remediation": self.remediation,
            "path": list(self.path),
            "resource": self.resource,
        }


@dataclass
class ValidationResult:
    graph: Graph
    violations: list[Violation] = field(default_factory=list)

    @property
    def critical(self) -> list[Violation]:
        return [v for v in self.violations if v.critical]

    @property
    def warnings(self) -> list[Violation]:
        return [v for v in self.violations if not v.critical]

    @property
    def has_critical(self) -> bool:
        return any(v.critical for v in self.violations)

    def __iter__(self):
        # Unpacks as ``graph, violations = validate(...)``.
        return iter((self.graph, self.violations))


def capability_group(capability: str) -> str:
    """``users.create`` belongs to ``users``; dotless names share one group."""
    head, sep, _ = capability.partition(".")
    return head if sep else DEFAULT_GROUP


def _cycle_violations(graph: Graph) -> list[Violation]:
    violations = []
    for cycle in graph.find_cycles():
        units = tuple(sorted(set(cycle)))
        arrow = " -> ".join(cycle)
        violations.append(
            Violation(
                kind=ViolationKind.CYCLE,
                severity=Severity.CRITICAL,
                units=units,
                path=tuple(cycle),
                message=f"Dependency cycle: {arrow}",
                remediation=(
                    f"Break the cycle {arrow}: extract the shared interface "
                    "into its own unit, or invert one dependency and let that "
                    "consumer build against a stub."
                ),
            )
        )
    return violations


def _shared_state_violations(graph: Graph, units: list[UnitDeclaration]) -> list[Violation]:
    writers: dict[str, list[str]] = defaultdict(list)
    for unit in units:
        for resource in dict.fromkeys(unit.writes):
            writers[resource].append(unit.id)

    violations = []
    for resource in sorted(writers):
        for a, b in combinations(sorted(writers[resource]), 2):
            # A stub-eligible consumer can build in the same phase as its
            # provider, so a stub edge never orders two writers.
            if graph.related(a, b, hard_only=True):
                continue
            violations.append(
                Violation(
                    kind=ViolationKind.SHARED_MUTABLE_STATE,
                    severity=Severity.CRITICAL,
                    units=(a, b),
                    resource=resource,
                    message=(
                        f"{a} and {b} both write {resource!r} and neither "
                        "is ordered before the other"
                    ),
                    remediation=(
                        f"Route writes to {resource!r} through a single owning "
                        f"unit, or declare a hard dependency between {a} and {b}."
                    ),
                )
            )
    return violations


def _coupling_violations(
    graph: Graph, units: list[UnitDeclaration], threshold: int
) -> list[Violation]:
    counts: dict[tuple[str, str], int] = defaultdict(int)
    for unit in units:
        for target, count in unit.references.items():
            if target == unit.id or target not in graph:
                continue
            counts[tuple(sorted((unit.id, target)))] += count

    violations = []
    for (a, b), total in sorted(counts.items()):
        if total <= threshold or graph.related(a, b):
            continue
        violations.append(
            Violation(
                kind=ViolationKind.TIGHT_COUPLING,
                severity=Severity.WARNING,
                units=(a, b),
                message=(
                    f"{a} and {b} cross-reference each other {total} times "
                    f"(threshold {threshold}) without a declared dependency"
                ),
                remediation=(
                    f"Declare the dependency between {a} and {b} or inject an "
                    "interface so the coupling goes through a contract."
                ),
            )
        )
    return violations


def _sprawl_violations(units: list[UnitDeclaration], max_groups: int) -> list[Violation]:
    violations = []
    for unit in sorted(units, key=lambda u: u.id):
        groups = sorted({capability_group(c) for c in unit.exported_capabilities})
        if len(groups) <= max_groups:
            continue
        named = ", ".join(g or "(ungrouped)" for g in groups)
        violations.append(
            Violation(
                kind=ViolationKind.MULTIPLE_RESPONSIBILITIES,
                severity=Severity.WARNING,
                units=(unit.id,),
                message=(
                    f"{unit.id} exports {len(groups)} capability groups "
                    f"(limit {max_groups}): {named}"
                ),
                remediation=f"Split {unit.id} along its capability groups: {named}.",
            )
        )
    return violations


def validate(
    units: Iterable[UnitDeclaration],
    config: ValidationConfig | None = None,
) -> ValidationResult:
    """Build the dependency graph and collect every violation.

    The graph is only fit for scheduling when the result has no critical
    violations.
    """
    config = config or ValidationConfig(**VALIDATION_DEFAULTS)
    declared = list(units)
    graph = build_graph(declared)

    violations = [
        *_cycle_violations(graph),
        *_shared_state_violations(graph, declared),
        *_coupling_violations(graph, declared, config.coupling_threshold),
        *_sprawl_violations(declared, config.max_capability_groups),
    ]

    for violation in violations:
        if violation.critical:
            logger.error("%s: %s", violation.kind.value, violation.message)
        else:
            logger.warning("%s: %s", violation.kind.value, violation.message)

    return ValidationResult(graph=graph, violations=violations)
