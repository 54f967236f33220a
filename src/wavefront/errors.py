"""Exception taxonomy for wavefront runs."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from wavefront.validator import Violation


class WavefrontError(Exception):
    """Base exception for all orchestrator errors."""


class PlanValidationError(WavefrontError):
    """Raised when critical violations block a run before scheduling."""

    def __init__(self, violations: list[Violation]) -> None:
        self.violations = violations
        kinds = ", ".join(sorted({v.kind.value for v in violations}))
        super().__init__(
            f"Build plan has {len(violations)} critical violation(s): {kinds}"
        )


class ContractDriftError(WavefrontError):
    """A frozen contract was re-registered with a different shape."""

    def __init__(
        self,
        unit_id: str,
        frozen_checksum: str,
        new_checksum: str,
        consumers: list[str] | None = None,
    ) -> None:
        self.unit_id = unit_id
        self.frozen_checksum = frozen_checksum
        self.new_checksum = new_checksum
        self.consumers = consumers or []
        super().__init__(
            f"Contract for {unit_id!r} drifted after it was frozen "
            f"({frozen_checksum[:12]} -> {new_checksum[:12]})"
        )


class UnknownContractError(WavefrontError, KeyError):
    def __init__(self, unit_id: str) -> None:
        self.unit_id = unit_id
        super().__init__(f"No contract registered for unit {unit_id!r}")

    def __str__(self) -> str:
        return self.args[0]


class UnresolvedDependencyError(WavefrontError):
    """A hard dependency has no published implementation yet."""

    def __init__(self, consumer: str | None, provider: str) -> None:
        self.consumer = consumer
        self.provider = provider
        super().__init__(
            f"Unit {consumer!r} needs {provider!r}, which has no real "
            "implementation and cannot be stubbed for this consumer"
        )


class StubError(WavefrontError):
    """Raised by a stub operation forced into one of its declared error kinds."""

    def __init__(self, unit_id: str, operation: str, kind: str) -> None:
        self.unit_id = unit_id
        self.operation = operation
        self.kind = kind
        super().__init__(f"{unit_id}.{operation} raised {kind}")


class BuildFailure(WavefrontError):
    pass


class TestFailure(WavefrontError):
    __test__ = False


class TimeoutFailure(TestFailure):
    """A build or test task ran past its deadline."""

    def __init__(self, key: str, timeout: float) -> None:
        self.key = key
        self.timeout = timeout
        super().__init__(f"Task {key!r} timed out after {timeout:g}s")


class TaskCancelled(WavefrontError):
    """Raised at a checkpoint once the task's phase has been cancelled."""


class IntegrationFailure(WavefrontError):
    def __init__(self, failing_units: list[str]) -> None:
        self.failing_units = failing_units
        super().__init__(
            "Integration run failed for: " + (", ".join(failing_units) or "-")
        )


class EscalationError(WavefrontError):
    """The run paused with units that need an external decision."""

    def __init__(self, units: dict[str, str]) -> None:
        self.units = units
        listed = ", ".join(f"{u} ({s})" for u, s in sorted(units.items()))
        super().__init__(f"Run paused; needs a decision on: {listed}")


class InvalidTransitionError(WavefrontError):
    def __init__(self, subject: str, current: str, requested: str) -> None:
        self.subject = subject
        self.current = current
        self.requested = requested
        super().__init__(f"{subject}: illegal transition {current} -> {requested}")


class CollaboratorLoadError(WavefrontError):
    pass
