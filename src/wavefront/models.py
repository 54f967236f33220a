"""Pydantic models defining the orchestrator's boundary contracts.

A build plan is ingested as a :class:`BuildPlan` and rejected before any
graph is built if it is malformed. Collaborators answer build and test
invocations with :class:`BuildOutcome` and :class:`TestReport`. Contracts and
test runs are plain JSON-serializable records so they can be persisted and
handed to external renderers.
"""

from __future__ import annotations

import hashlib
import json
import tomllib
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class UnitStatus(str, Enum):
    PENDING = "pending"
    BUILDING = "building"
    BUILD_FAILED = "build_failed"
    TESTING = "testing"
    PASSED = "passed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ESCALATED = "escalated"
    BLOCKED = "blocked"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_UNIT_STATUSES


_TERMINAL_UNIT_STATUSES = frozenset(
    {
        UnitStatus.PASSED,
        UnitStatus.ESCALATED,
        UnitStatus.CANCELLED,
        UnitStatus.BLOCKED,
    }
)


class PhaseStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETE = "complete"
    BLOCKED = "blocked"


class OperationSignature(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    input_shape: dict[str, Any] = Field(default_factory=dict)
    output_shape: dict[str, Any] = Field(default_factory=lambda: {"type": "object"})
    errors: list[str] = Field(default_factory=list)


class UnitDeclaration(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    dependencies: list[str] = Field(default_factory=list)
    exported_capabilities: list[str] = Field(default_factory=list)
    stub_eligible: bool = False
    priority: int = 0
    operations: list[OperationSignature] = Field(default_factory=list)
    writes: list[str] = Field(default_factory=list)
    reads: list[str] = Field(default_factory=list)
    references: dict[str, int] = Field(default_factory=dict)
    build_command: str | None = None
    test_command: str | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)

    @field_validator("id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            msg = "unit id must not be blank"
            raise ValueError(msg)
        return stripped

    @field_validator("references")
    @classmethod
    def _non_negative_references(cls, value: dict[str, int]) -> dict[str, int]:
        negative = sorted(k for k, v in value.items() if v < 0)
        if negative:
            msg = f"reference counts must be >= 0: {', '.join(negative)}"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def _operations_are_exported(self) -> UnitDeclaration:
        exported = set(self.exported_capabilities)
        undeclared = sorted(op.name for op in self.operations if op.name not in exported)
        if undeclared:
            msg = (
                f"unit {self.id!r} defines operations that are not exported "
                f"capabilities: {', '.join(undeclared)}"
            )
            raise ValueError(msg)
        return self

    def contract(self, version: int = 1) -> Contract:
        """The unit's interface contract.

        Explicit operations win; capabilities without one get an operation
        taking any object and returning an empty object.
        """
        explicit = {op.name: op for op in self.operations}
        operations = [
            explicit.get(name) or OperationSignature(name=name)
            for name in dict.fromkeys(self.exported_capabilities)
        ]
        return Contract(unit_id=self.id, version=version, operations=operations)


class BuildPlan(BaseModel):
    model_config = ConfigDict(extra="forbid")

    units: list[UnitDeclaration]

    @model_validator(mode="after")
    def _check_references(self) -> BuildPlan:
        seen: set[str] = set()
        duplicates: set[str] = set()
        for unit in self.units:
            if unit.id in seen:
                duplicates.add(unit.id)
            seen.add(unit.id)
        if duplicates:
            msg = f"duplicate unit ids: {', '.join(sorted(duplicates))}"
            raise ValueError(msg)

        missing = sorted(
            f"{unit.id} -> {dep}"
            for unit in self.units
            for dep in unit.dependencies
            if dep not in seen
        )
        if missing:
            msg = f"dependencies on unknown units: {', '.join(missing)}"
            raise ValueError(msg)
        return self

    def get(self, unit_id: str) -> UnitDeclaration | None:
        return next((u for u in self.units if u.id == unit_id), None)

    @property
    def ids(self) -> list[str]:
        return [u.id for u in self.units]


def load_build_plan(path: Path) -> BuildPlan:
    """Read a JSON or TOML build plan. Raises pydantic ValidationError."""
    raw = path.read_bytes()
    if path.suffix == ".toml":
        data = tomllib.loads(raw.decode())
    else:
        data = json.loads(raw)
    if isinstance(data, list):
        data = {"units": data}
    return BuildPlan.model_validate(data)


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


class Contract(BaseModel):
    model_config = ConfigDict(frozen=True)

    unit_id: str
    version: int = 1
    operations: list[OperationSignature] = Field(default_factory=list)

    @property
    def checksum(self) -> str:
        """SHA-256 over the operations, independent of declaration order."""
        ops = sorted(
            (op.model_dump(mode="json") for op in self.operations),
            key=lambda op: op["name"],
        )
        return hashlib.sha256(canonical_json(ops).encode()).hexdigest()

    def operation(self, name: str) -> OperationSignature | None:
        return next((op for op in self.operations if op.name == name), None)


class BuildOutcome(BaseModel):
    """What a collaborator's build operation reports for one unit."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    artifact_ref: str | None = None
    error: str | None = None
    contract: Contract | None = None
    implementation: Any = Field(default=None, exclude=True)


class TestReport(BaseModel):
    """What a collaborator's test operation reports for one unit."""

    __test__: ClassVar[bool] = False

    passed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    failing_ids: list[str] = Field(default_factory=list)
    duration: float = Field(default=0.0, ge=0)

    @property
    def ok(self) -> bool:
        return self.failed == 0 and not self.failing_ids


class TestOutcome(str, Enum):
    __test__ = False

    PASSED = "passed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    ERROR = "error"


class TestRun(BaseModel):
    """Results for one unit within one phase attempt."""

    __test__: ClassVar[bool] = False

    unit_id: str
    phase: int | None
    iteration: int = Field(ge=1)
    outcome: TestOutcome
    passed: int = 0
    failed: int = 0
    failing_ids: list[str] = Field(default_factory=list)
    duration: float = 0.0
    error: str | None = None

    @property
    def is_failure(self) -> bool:
        return self.outcome in (TestOutcome.FAILED, TestOutcome.TIMEOUT, TestOutcome.ERROR)
