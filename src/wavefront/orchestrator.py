"""Drives one run of a build plan from validation to integration.

A run validates the plan, plans phases, runs them strictly in order and
pauses at the first blocked phase: units that never started are cancelled
and the phases still waiting are blocked. ``resume`` starts a new run that
carries over everything that already passed.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from wavefront.contracts import ArtifactImplementation, ContractRegistry
from wavefront.errors import ContractDriftError, EscalationError, PlanValidationError
from wavefront.integration import IntegrationCoordinator, IntegrationResult
from wavefront.models import BuildPlan, PhaseStatus, UnitStatus
from wavefront.progress import ProgressSnapshot, ProgressTracker
from wavefront.scheduler import BuildScheduler, PhaseOutcome
from wavefront.suites import TestCoordinator, TestTarget
from wavefront.validator import ValidationResult, Violation, validate

if TYPE_CHECKING:
    from wavefront.collaborators import Collaborator
    from wavefront.config import WavefrontConfig
    from wavefront.state_db import StateDB

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    ABORTED = "aborted"
    PAUSED = "paused"
    COMPLETED = "completed"
    INTEGRATION_FAILED = "integration_failed"


@dataclass
class RunReport:
    run_id: str
    status: RunStatus
    plan: BuildPlan
    violations: list[Violation] = field(default_factory=list)
    phases: list[PhaseOutcome] = field(default_factory=list)
    units: dict[str, UnitStatus] = field(default_factory=dict)
    artifacts: dict[str, str | None] = field(default_factory=dict)
    snapshot: ProgressSnapshot | None = None
    integration: IntegrationResult | None = None
    implementations: dict[str, Any] = field(default_factory=dict, repr=False)
    resumed_from: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.COMPLETED

    def units_in(self, *statuses: UnitStatus) -> list[str]:
        return sorted(u for u, s in self.units.items() if s in statuses)

    @property
    def drift(self) -> list[ContractDriftError]:
        return [d for outcome in self.phases for d in outcome.drift]

    def raise_for_status(self) -> None:
        """Raise the error that explains why this run did not complete."""
        if self.status is RunStatus.ABORTED:
            raise PlanValidationError([v for v in self.violations if v.critical])
        if self.status is RunStatus.PAUSED:
            if self.drift:
                raise self.drift[0]
            stuck = self.units_in(
                UnitStatus.ESCALATED, UnitStatus.BLOCKED, UnitStatus.CANCELLED
            )
            raise EscalationError({u: self.units[u].value for u in stuck})
        if self.status is RunStatus.INTEGRATION_FAILED and self.integration is not None:
            self.integration.raise_for_failure()

    def to_record(self) -> dict[str, Any]:
        """Final machine-readable report; lists every unit's terminal state."""
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "resumed_from": self.resumed_from,
            "violations": [v.to_record() for v in self.violations],
            "units": {u: s.value for u, s in sorted(self.units.items())},
            "artifacts": dict(sorted(self.artifacts.items())),
            "phases": [
                {
                    "index": o.phase.index,
                    "status": o.status.value,
                    "units": [o.results[u].to_record() for u in o.phase.unit_ids],
                }
                for o in self.phases
            ],
            "integration": self.integration.to_record() if self.integration else None,
            "snapshot": self.snapshot.model_dump(mode="json") if self.snapshot else None,
        }


class Orchestrator:
    def __init__(
        self,
        config: WavefrontConfig,
        collaborator: Collaborator,
        db: StateDB | None = None,
        clock: Callable[[], float] = time.time,
        registry: ContractRegistry | None = None,
    ) -> None:
        self.config = config
        self.collaborator = collaborator
        self.db = db
        self.registry = registry or ContractRegistry()
        self.tracker = ProgressTracker(clock=clock)
        self.tests = TestCoordinator(collaborator, self.tracker, config)
        self.integration = IntegrationCoordinator(self.registry, self.tests, self.tracker)
        self._shutdown_event = threading.Event()

    def stop(self) -> None:
        """Pause the run once the active phase settles."""
        self._shutdown_event.set()

    @property
    def stopping(self) -> bool:
        return self._shutdown_event.is_set()

    def validate(self, plan: BuildPlan) -> ValidationResult:
        return validate(plan.units, self.config.validation)

    def snapshot(self) -> ProgressSnapshot:
        return self.tracker.snapshot()

    def _persist(self) -> None:
        if self.db is not None:
            self.tracker.persist(self.db)

    def _scope(
        self, result: ValidationResult, completed: set[str], only: Iterable[str] | None
    ) -> set[str]:
        """Units this run builds: *only* plus everything they need."""
        graph = result.graph
        if only is None:
            return {n.id for n in graph.nodes} - completed
        scope: set[str] = set()
        for unit_id in only:
            if unit_id not in graph:
                msg = f"Unknown unit {unit_id!r}"
                raise ValueError(msg)
            scope.add(unit_id)
            scope.update(graph.reachable(unit_id))
        return scope - completed

    def run(
        self,
        plan: BuildPlan,
        carried: dict[str, Any] | None = None,
        only: Iterable[str] | None = None,
        resumed_from: str | None = None,
    ) -> RunReport:
        """Run *plan*. *carried* maps already passed units to their implementations."""
        run_id = uuid.uuid4().hex[:12]
        self._shutdown_event.clear()
        result = self.validate(plan)
        if result.has_critical:
            logger.error(
                "Run %s aborted: %d critical violation(s)", run_id, len(result.critical)
            )
            if self.db is not None:
                now = self.tracker.now()
                self.db.upsert_run(
                    run_id, status=RunStatus.ABORTED.value, started_at=now,
                    finished_at=now, resumed_from=resumed_from,
                )
            return RunReport(
                run_id=run_id,
                status=RunStatus.ABORTED,
                plan=plan,
                violations=result.violations,
                resumed_from=resumed_from,
            )

        carried = {u: impl for u, impl in (carried or {}).items() if u in result.graph}
        completed = set(carried)
        scope = self._scope(result, completed, only)
        skipped = {n.id for n in result.graph.nodes} - scope - completed

        self.registry.start_run(run_id)
        for declaration in plan.units:
            self.registry.register(declaration.id, declaration.contract())
        for unit_id, implementation in carried.items():
            self.registry.publish(unit_id, implementation)

        scheduler = BuildScheduler(
            result.graph, self.registry, self.tests, self.tracker,
            self.collaborator, self.config,
        )
        phases = scheduler.plan(completed=completed | skipped)
        initial = {u: UnitStatus.PASSED for u in completed}
        initial.update({u: UnitStatus.PENDING for u in skipped})
        self.tracker.start(run_id, [(p.index, p.unit_ids) for p in phases], carried=initial)
        if self.db is not None:
            self.db.upsert_run(
                run_id,
                status="running",
                started_at=self.tracker.snapshot().started_at,
                resumed_from=resumed_from,
            )
        self._persist()
        logger.info(
            "Run %s: %d unit(s) in %d phase(s), %d carried over",
            run_id, len(scope), len(phases), len(completed),
        )

        outcomes: list[PhaseOutcome] = []
        halted = False
        for phase in phases:
            if halted or self.stopping:
                halted = True
                self._cancel_phase(phase.index, phase.unit_ids)
                continue
            outcome = scheduler.run_phase(phase)
            outcomes.append(outcome)
            self._persist()
            if outcome.status is PhaseStatus.BLOCKED:
                logger.warning("Phase %d blocked; pausing run %s", phase.index, run_id)
                halted = True

        implementations = dict(carried)
        artifacts = {u: getattr(impl, "artifact_ref", None) for u, impl in carried.items()}
        for outcome in outcomes:
            for unit_id, unit_result in outcome.results.items():
                if unit_result.status is UnitStatus.PASSED:
                    implementations[unit_id] = unit_result.implementation
                    artifacts[unit_id] = unit_result.artifact_ref

        integration = None
        if not halted or self.config.run.force_integration:
            integration = self.integration.integrate(
                self._integration_targets(plan, implementations, artifacts)
            )
        else:
            self.tracker.integration("skipped")

        if halted:
            status = RunStatus.PAUSED
        elif integration is not None and not integration.passed:
            status = RunStatus.INTEGRATION_FAILED
        else:
            status = RunStatus.COMPLETED

        snapshot = self.tracker.snapshot()
        report = RunReport(
            run_id=run_id,
            status=status,
            plan=plan,
            violations=result.violations,
            phases=outcomes,
            units={u.unit_id: u.status for u in snapshot.units},
            artifacts=artifacts,
            snapshot=snapshot,
            integration=integration,
            implementations=implementations,
            resumed_from=resumed_from,
        )
        self._record(report)
        logger.info("Run %s %s", run_id, status.value)
        return report

    def resume(self, report: RunReport, only: Iterable[str] | None = None) -> RunReport:
        """Start a new run carrying over every unit *report* saw pass."""
        carried = {
            u: report.implementations.get(u) or ArtifactImplementation(u, report.artifacts.get(u))
            for u in report.units_in(UnitStatus.PASSED)
        }
        return self.run(report.plan, carried=carried, only=only, resumed_from=report.run_id)

    def _cancel_phase(self, index: int, unit_ids: list[str]) -> None:
        for unit_id in unit_ids:
            self.tracker.unit(unit_id, UnitStatus.CANCELLED, detail="run paused")
        self.tracker.phase(index, PhaseStatus.BLOCKED, detail="run paused")

    def _integration_targets(
        self,
        plan: BuildPlan,
        implementations: dict[str, Any],
        artifacts: dict[str, str | None],
    ) -> dict[str, TestTarget]:
        targets = {}
        for unit_id in sorted(implementations):
            declaration = plan.get(unit_id)
            if declaration is None:
                continue
            targets[unit_id] = TestTarget(
                unit=declaration,
                artifact_ref=artifacts.get(unit_id),
                dependencies=self.registry.bindings_for(unit_id),
            )
        return targets

    def _record(self, report: RunReport) -> None:
        if self.db is None or report.snapshot is None:
            return
        self._persist()
        for unit in report.snapshot.units:
            self.db.upsert_unit(
                report.run_id,
                unit.unit_id,
                phase=unit.phase,
                status=unit.status.value,
                attempts=unit.attempts,
                artifact_ref=report.artifacts.get(unit.unit_id),
                error=unit.error,
            )
        self.db.update_run(
            report.run_id, status=report.status.value, finished_at=report.snapshot.as_of
        )


def carried_from_db(db: StateDB, run_id: str) -> dict[str, Any]:
    """Passed units of a recorded run, as artifact-backed implementations."""
    return {
        row["unit_id"]: ArtifactImplementation(row["unit_id"], row["artifact_ref"])
        for row in db.list_units(run_id, status=UnitStatus.PASSED.value)
    }
