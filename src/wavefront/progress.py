"""Per-unit and per-phase state machine with point-in-time snapshots.

Writers serialize on the lock of the key they touch. ``snapshot()`` takes no
lock: it copies the latest committed record of every key, each of which is
immutable, so it sees state as of the most recent completed transition.
Times in a snapshot come only from recorded timestamps.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from statistics import fmean
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from wavefront.errors import InvalidTransitionError
from wavefront.models import PhaseStatus, UnitStatus

if TYPE_CHECKING:
    from wavefront.state_db import StateDB

logger = logging.getLogger(__name__)

UNIT_TRANSITIONS: dict[UnitStatus, frozenset[UnitStatus]] = {
    UnitStatus.PENDING: frozenset(
        {UnitStatus.BUILDING, UnitStatus.CANCELLED, UnitStatus.BLOCKED}
    ),
    UnitStatus.BUILDING: frozenset(
        {
            UnitStatus.TESTING,
            UnitStatus.BUILD_FAILED,
            UnitStatus.BLOCKED,
            UnitStatus.CANCELLED,
        }
    ),
    UnitStatus.BUILD_FAILED: frozenset({UnitStatus.BUILDING, UnitStatus.ESCALATED}),
    UnitStatus.TESTING: frozenset(
        {UnitStatus.PASSED, UnitStatus.FAILED, UnitStatus.CANCELLED}
    ),
    UnitStatus.FAILED: frozenset({UnitStatus.BUILDING, UnitStatus.ESCALATED}),
    UnitStatus.PASSED: frozenset(),
    UnitStatus.ESCALATED: frozenset(),
    UnitStatus.CANCELLED: frozenset(),
    UnitStatus.BLOCKED: frozenset(),
}

PHASE_TRANSITIONS: dict[PhaseStatus, frozenset[PhaseStatus]] = {
    PhaseStatus.WAITING: frozenset({PhaseStatus.ACTIVE, PhaseStatus.BLOCKED}),
    PhaseStatus.ACTIVE: frozenset({PhaseStatus.COMPLETE, PhaseStatus.BLOCKED}),
    PhaseStatus.COMPLETE: frozenset(),
    PhaseStatus.BLOCKED: frozenset(),
}

INTEGRATION_STATES = ("pending", "running", "passed", "failed", "skipped")


class ProgressEvent(BaseModel):
    """One timestamped transition. ``subject`` is a unit id or phase index."""

    model_config = ConfigDict(frozen=True)

    kind: str
    subject: str
    to_state: str
    at: float
    from_state: str | None = None
    attempt: int | None = None
    detail: str | None = None


class UnitProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    unit_id: str
    status: UnitStatus
    phase: int | None = None
    attempts: int = 0
    updated_at: float
    error: str | None = None


class PhaseProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    unit_ids: list[str]
    status: PhaseStatus
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


class ProgressSnapshot(BaseModel):
    """Immutable point-in-time view of a run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    started_at: float
    as_of: float
    current_phase: int | None
    phases: list[PhaseProgress] = Field(default_factory=list)
    units: list[UnitProgress] = Field(default_factory=list)
    integration: str = "pending"
    elapsed_seconds: float = 0.0
    estimated_remaining_seconds: float | None = None

    def unit(self, unit_id: str) -> UnitProgress | None:
        return next((u for u in self.units if u.unit_id == unit_id), None)

    def status_of(self, unit_id: str) -> UnitStatus | None:
        found = self.unit(unit_id)
        return found.status if found else None

    def counts(self) -> dict[str, int]:
        tally: dict[str, int] = {}
        for unit in self.units:
            tally[unit.status.value] = tally.get(unit.status.value, 0) + 1
        return tally


class ProgressTracker:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self.run_id = ""
        self._started_at = 0.0
        self._units: dict[str, UnitProgress] = {}
        self._phases: dict[int, PhaseProgress] = {}
        self._integration: tuple[str, float] = ("pending", 0.0)
        self._events: list[ProgressEvent] = []
        self._persisted = 0
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # held while _units changes size or is iterated
        self._units_guard = threading.Lock()

    def _lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def now(self) -> float:
        return self._clock()

    def start(
        self,
        run_id: str,
        phases: Iterable[tuple[int, list[str]]],
        carried: dict[str, UnitStatus] | None = None,
    ) -> None:
        """Reset for a new run. *carried* units start in the given status."""
        at = self._clock()
        self.run_id = run_id
        self._started_at = at
        self._events = []
        self._persisted = 0
        self._integration = ("pending", at)
        self._phases = {}
        self._units = {}
        for index, unit_ids in phases:
            self._phases[index] = PhaseProgress(
                index=index, unit_ids=list(unit_ids), status=PhaseStatus.WAITING
            )
            for unit_id in unit_ids:
                self._units[unit_id] = UnitProgress(
                    unit_id=unit_id, status=UnitStatus.PENDING, phase=index, updated_at=at
                )
        for unit_id, status in (carried or {}).items():
            self._units[unit_id] = UnitProgress(unit_id=unit_id, status=status, updated_at=at)
        self._events.append(
            ProgressEvent(kind="run", subject=run_id, to_state="started", at=at)
        )

    # ── Recording ────────────────────────────────────────────────────

    def record(self, event: ProgressEvent) -> None:
        """Apply one transition. Raises InvalidTransitionError if illegal."""
        if event.kind == "unit":
            self._record_unit(event)
        elif event.kind == "phase":
            self._record_phase(event)
        elif event.kind == "integration":
            if event.to_state not in INTEGRATION_STATES:
                raise InvalidTransitionError("integration", self._integration[0], event.to_state)
            self._integration = (event.to_state, event.at)
            self._events.append(event)
        else:
            msg = f"Unknown event kind: {event.kind!r}"
            raise ValueError(msg)

    def _record_unit(self, event: ProgressEvent) -> None:
        target = UnitStatus(event.to_state)
        with self._lock(f"unit:{event.subject}"):
            current = self._units.get(event.subject)
            if current is None:
                current = UnitProgress(
                    unit_id=event.subject, status=UnitStatus.PENDING, updated_at=event.at
                )
            if target not in UNIT_TRANSITIONS[current.status]:
                raise InvalidTransitionError(event.subject, current.status.value, target.value)
            attempts = current.attempts
            if target is UnitStatus.BUILDING:
                attempts = event.attempt or attempts + 1
            updated = current.model_copy(
                update={
                    "status": target,
                    "attempts": attempts,
                    "updated_at": event.at,
                    "error": event.detail if target is not UnitStatus.PASSED else None,
                }
            )
            with self._units_guard:
                self._units[event.subject] = updated
            self._events.append(event.model_copy(update={"from_state": current.status.value}))

    def _record_phase(self, event: ProgressEvent) -> None:
        index = int(event.subject)
        target = PhaseStatus(event.to_state)
        with self._lock(f"phase:{index}"):
            current = self._phases[index]
            if target not in PHASE_TRANSITIONS[current.status]:
                raise InvalidTransitionError(
                    f"phase {index}", current.status.value, target.value
                )
            update: dict[str, Any] = {"status": target}
            if target is PhaseStatus.ACTIVE:
                update["started_at"] = event.at
            else:
                update["finished_at"] = event.at
            self._phases[index] = current.model_copy(update=update)
            self._events.append(event.model_copy(update={"from_state": current.status.value}))

    def unit(
        self,
        unit_id: str,
        status: UnitStatus,
        attempt: int | None = None,
        detail: str | None = None,
    ) -> None:
        self.record(
            ProgressEvent(
                kind="unit",
                subject=unit_id,
                to_state=status.value,
                at=self._clock(),
                attempt=attempt,
                detail=detail,
            )
        )

    def phase(self, index: int, status: PhaseStatus, detail: str | None = None) -> None:
        self.record(
            ProgressEvent(
                kind="phase",
                subject=str(index),
                to_state=status.value,
                at=self._clock(),
                detail=detail,
            )
        )

    def integration(self, state: str, detail: str | None = None) -> None:
        self.record(
            ProgressEvent(
                kind="integration",
                subject=self.run_id,
                to_state=state,
                at=self._clock(),
                detail=detail,
            )
        )

    def status_of(self, unit_id: str) -> UnitStatus | None:
        current = self._units.get(unit_id)
        return current.status if current else None

    @property
    def events(self) -> list[ProgressEvent]:
        return list(self._events)

    # ── Reading ──────────────────────────────────────────────────────

    def snapshot(self) -> ProgressSnapshot:
        with self._units_guard:
            units = sorted(self._units.values(), key=lambda u: u.unit_id)
        phases = sorted(self._phases.values(), key=lambda p: p.index)
        integration, integration_at = self._integration

        stamps = [self._started_at, integration_at]
        stamps.extend(u.updated_at for u in units)
        for p in phases:
            stamps.extend(t for t in (p.started_at, p.finished_at) if t is not None)
        as_of = max(stamps)

        active = [p.index for p in phases if p.status is PhaseStatus.ACTIVE]
        touched = [p.index for p in phases if p.status is not PhaseStatus.WAITING]
        current_phase = active[0] if active else (touched[-1] if touched else None)

        return ProgressSnapshot(
            run_id=self.run_id,
            started_at=self._started_at,
            as_of=as_of,
            current_phase=current_phase,
            phases=phases,
            units=units,
            integration=integration,
            elapsed_seconds=as_of - self._started_at,
            estimated_remaining_seconds=_estimate_remaining(phases, as_of),
        )

    def persist(self, db: StateDB) -> None:
        """Append unsaved transitions and replace the run's snapshot row."""
        events = self._events[self._persisted :]
        db.append_transitions(self.run_id, [e.model_dump() for e in events])
        self._persisted += len(events)
        snap = self.snapshot()
        db.save_snapshot(self.run_id, snap.as_of, snap.model_dump_json())


def _estimate_remaining(phases: list[PhaseProgress], as_of: float) -> float | None:
    """Mean completed-phase duration times the phases still to finish."""
    durations = [p.duration for p in phases if p.status is PhaseStatus.COMPLETE]
    if not durations:
        return None
    mean = fmean(d for d in durations if d is not None)
    estimate = 0.0
    for p in phases:
        if p.status is PhaseStatus.WAITING:
            estimate += mean
        elif p.status is PhaseStatus.ACTIVE and p.started_at is not None:
            estimate += max(mean - (as_of - p.started_at), 0.0)
    return estimate
