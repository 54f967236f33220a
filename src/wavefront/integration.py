from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from wavefront.contracts import ContractRegistry
from wavefront.errors import IntegrationFailure
from wavefront.progress import ProgressTracker
from wavefront.suites import AggregatedResult, TestCoordinator, TestTarget

logger = logging.getLogger(__name__)


@dataclass
class IntegrationResult:
    passed: bool
    result: AggregatedResult
    swapped: dict[str, int] = field(default_factory=dict)
    unresolved: list[str] = field(default_factory=list)

    @property
    def failing_units(self) -> list[str]:
        return sorted({*self.result.failed_units, *self.unresolved})

    def raise_for_failure(self) -> None:
        if not self.passed:
            raise IntegrationFailure(self.failing_units)

    def to_record(self) -> dict[str, object]:
        return {
            "passed": self.passed,
            "swapped": dict(self.swapped),
            "unresolved": list(self.unresolved),
            "failures": self.result.failures(),
        }


class IntegrationCoordinator:
    """Swaps the last stubs for real implementations and tests the whole system."""

    def __init__(
        self,
        registry: ContractRegistry,
        tests: TestCoordinator,
        tracker: ProgressTracker,
    ) -> None:
        self._registry = registry
        self._tests = tests
        self._tracker = tracker

    def promote_all(self) -> tuple[dict[str, int], list[str]]:
        """Promote every stub-bound provider that has a real implementation.

        Returns the swap count per promoted provider and the providers that
        are still stub-bound because nothing real was ever published.
        """
        swapped: dict[str, int] = {}
        unresolved: list[str] = []
        for provider in self._registry.stub_bound_units():
            if self._registry.is_published(provider):
                swapped[provider] = self._registry.promote(provider)
            else:
                unresolved.append(provider)
        return swapped, unresolved

    def integrate(self, targets: Mapping[str, TestTarget]) -> IntegrationResult:
        self._tracker.integration("running")
        swapped, unresolved = self.promote_all()
        if unresolved:
            logger.warning("Still stub-bound after promotion: %s", ", ".join(unresolved))

        result = self._tests.run_integration(targets)
        passed = result.passed and not unresolved
        outcome = IntegrationResult(
            passed=passed, result=result, swapped=swapped, unresolved=unresolved
        )
        if passed:
            logger.info("Integration passed across %d unit(s)", len(result.runs))
            self._tracker.integration("passed")
        else:
            detail = ", ".join(outcome.failing_units)
            logger.error("Integration failed: %s", detail)
            self._tracker.integration("failed", detail=detail)
        return outcome
