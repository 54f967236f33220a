"""Contract registry: frozen interfaces, deterministic stubs, swappable bindings.

Consumers never talk to each other's build tasks. They hold a
:class:`Binding` per dependency, backed either by the provider's real
implementation or by the run's single :class:`StubHandle` for the provider's
contract. Promotion swaps the target of every stub-backed binding at once.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections import defaultdict
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from wavefront.errors import (
    ContractDriftError,
    StubError,
    UnknownContractError,
    UnresolvedDependencyError,
)
from wavefront.models import Contract, OperationSignature, canonical_json

logger = logging.getLogger(__name__)

_WORDS = (
    "alpha", "bravo", "cedar", "delta", "ember", "fjord", "garnet", "harbor",
    "indigo", "juniper", "kestrel", "lumen", "meadow", "nectar", "onyx", "prism",
)


@runtime_checkable
class Implementation(Protocol):
    def invoke(self, operation: str, payload: Mapping[str, Any]) -> Any: ...


class ArtifactImplementation:
    """A built artifact known only by reference (e.g. produced by a command)."""

    def __init__(self, unit_id: str, artifact_ref: str | None) -> None:
        self.unit_id = unit_id
        self.artifact_ref = artifact_ref

    def invoke(self, operation: str, payload: Mapping[str, Any]) -> Any:
        msg = (
            f"{self.unit_id} artifact {self.artifact_ref!r} is not invocable "
            f"in-process (operation {operation!r})"
        )
        raise TypeError(msg)

    def __repr__(self) -> str:
        return f"ArtifactImplementation({self.unit_id!r}, {self.artifact_ref!r})"


# ---------------------------------------------------------------------------
# Placeholder generation
# ---------------------------------------------------------------------------


def _digest(seed: str, path: str) -> int:
    return int.from_bytes(hashlib.sha256(f"{seed}|{path}".encode()).digest()[:8], "big")


def placeholder(shape: Mapping[str, Any], seed: str, path: str = "$") -> Any:
    """Deterministic value satisfying a JSON-Schema-like *shape*.

    The same shape, seed and path always give the same value. Shapes without
    a known ``type`` produce ``None``.
    """
    if "const" in shape:
        return shape["const"]
    if "default" in shape:
        return shape["default"]
    if shape.get("enum"):
        options = list(shape["enum"])
        return options[_digest(seed, path) % len(options)]

    kind = shape.get("type")
    if isinstance(kind, list):
        kind = next((k for k in kind if k != "null"), "null")
    n = _digest(seed, path)

    if kind == "string":
        return f"{_WORDS[n % len(_WORDS)]}-{n % 10_000:04d}"
    if kind == "integer":
        low = int(shape.get("minimum", 0))
        high = int(shape.get("maximum", low + 999))
        return low + n % (max(high - low, 0) + 1)
    if kind == "number":
        low = float(shape.get("minimum", 0.0))
        high = float(shape.get("maximum", low + 1000.0))
        return round(low + (n % 10_000) / 10_000 * (high - low), 4)
    if kind == "boolean":
        return n % 2 == 0
    if kind == "null":
        return None
    if kind == "array":
        items = shape.get("items", {})
        count = max(int(shape.get("minItems", 1)), 1)
        return [placeholder(items, seed, f"{path}[{i}]") for i in range(count)]
    if kind == "object":
        properties: Mapping[str, Mapping[str, Any]] = shape.get("properties", {})
        return {
            name: placeholder(sub, seed, f"{path}.{name}")
            for name, sub in sorted(properties.items())
        }
    return None


class StubHandle:
    """Side-effect-free stand-in for a contract.

    Outputs depend only on the contract checksum, the operation and the
    payload. ``force_error`` lets a test drive a consumer down a declared
    error path.
    """

    def __init__(self, contract: Contract) -> None:
        self.contract = contract
        self.checksum = contract.checksum
        self._forced: dict[str, str] = {}
        self._lock = threading.Lock()
        self._calls: dict[str, int] = defaultdict(int)

    @property
    def unit_id(self) -> str:
        return self.contract.unit_id

    def _signature(self, operation: str) -> OperationSignature:
        signature = self.contract.operation(operation)
        if signature is None:
            msg = f"{self.unit_id} has no operation {operation!r}"
            raise AttributeError(msg)
        return signature

    def force_error(self, operation: str, kind: str) -> None:
        signature = self._signature(operation)
        if kind not in signature.errors:
            msg = f"{self.unit_id}.{operation} does not declare error kind {kind!r}"
            raise ValueError(msg)
        with self._lock:
            self._forced[operation] = kind

    def clear_errors(self, operation: str | None = None) -> None:
        with self._lock:
            if operation is None:
                self._forced.clear()
            else:
                self._forced.pop(operation, None)

    def invoke(self, operation: str, payload: Mapping[str, Any] | None = None) -> Any:
        signature = self._signature(operation)
        with self._lock:
            self._calls[operation] += 1
            forced = self._forced.get(operation)
        if forced is not None:
            raise StubError(self.unit_id, operation, forced)
        seed = f"{self.checksum}|{operation}|{canonical_json(payload or {})}"
        return placeholder(signature.output_shape, seed)

    def call_count(self, operation: str | None = None) -> int:
        with self._lock:
            if operation is None:
                return sum(self._calls.values())
            return self._calls.get(operation, 0)

    def __repr__(self) -> str:
        return f"StubHandle({self.unit_id!r}, {self.checksum[:12]})"


class Binding:
    """A consumer's reference to one provider, real or stubbed."""

    def __init__(self, provider: str, consumer: str | None, target: Any, is_stub: bool) -> None:
        self.provider = provider
        self.consumer = consumer
        self._target = target
        self._is_stub = is_stub
        self._lock = threading.Lock()

    @property
    def is_stub(self) -> bool:
        with self._lock:
            return self._is_stub

    @property
    def target(self) -> Any:
        with self._lock:
            return self._target

    def invoke(self, operation: str, payload: Mapping[str, Any] | None = None) -> Any:
        # One read of the target: a concurrent swap never splits a call.
        with self._lock:
            target = self._target
        return target.invoke(operation, payload or {})

    def describe(self) -> dict[str, Any]:
        with self._lock:
            target, is_stub = self._target, self._is_stub
        record: dict[str, Any] = {"kind": "stub" if is_stub else "real"}
        if is_stub:
            record["contract_checksum"] = target.checksum
        else:
            record["artifact_ref"] = getattr(target, "artifact_ref", None)
        return record

    def _swap(self, target: Any) -> None:
        with self._lock:
            self._target = target
            self._is_stub = False

    def __repr__(self) -> str:
        kind = "stub" if self._is_stub else "real"
        return f"Binding({self.consumer!r} -> {self.provider!r}, {kind})"


class ContractRegistry:
    """Stores contracts and serves bindings for one run at a time.

    Every mutation takes the lock of the unit it concerns; unrelated units
    never wait on each other.
    """

    def __init__(self) -> None:
        self.run_id: str | None = None
        self._contracts: dict[str, Contract] = {}
        self._frozen: dict[str, str] = {}
        self._stubs: dict[tuple[str, str], StubHandle] = {}
        self._published: dict[str, Any] = {}
        self._bindings: dict[str, list[Binding]] = defaultdict(list)
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, unit_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(unit_id)
            if lock is None:
                lock = self._locks[unit_id] = threading.RLock()
            return lock

    def _drift(self, unit_id: str, frozen: str, checksum: str) -> ContractDriftError:
        consumers = sorted(b.consumer for b in self._bindings.get(unit_id, []) if b.consumer)
        return ContractDriftError(unit_id, frozen, checksum, consumers)

    def start_run(self, run_id: str) -> None:
        """Begin a run: fresh stubs, freezes and bindings.

        Contracts and published implementations carry over.
        """
        self.run_id = run_id
        self._frozen.clear()
        self._stubs.clear()
        self._bindings.clear()

    # ── Contracts ────────────────────────────────────────────────────

    def register(self, unit_id: str, contract: Contract) -> Contract:
        """Store *contract* for *unit_id* and return the stored version."""
        with self._lock(unit_id):
            current = self._contracts.get(unit_id)
            new_checksum = contract.checksum
            if current is not None and current.checksum == new_checksum:
                return current

            frozen = self._frozen.get(unit_id)
            if frozen is not None and frozen != new_checksum:
                raise self._drift(unit_id, frozen, new_checksum)

            version = current.version + 1 if current is not None else contract.version
            stored = contract.model_copy(update={"unit_id": unit_id, "version": version})
            self._contracts[unit_id] = stored
            if current is not None:
                logger.info("Contract for %s updated to v%d", unit_id, version)
            return stored

    def contract(self, unit_id: str) -> Contract:
        stored = self._contracts.get(unit_id)
        if stored is None:
            raise UnknownContractError(unit_id)
        return stored

    def is_frozen(self, unit_id: str) -> bool:
        return unit_id in self._frozen

    # ── Stubs ────────────────────────────────────────────────────────

    def generate_stub(self, contract: Contract) -> StubHandle:
        """The run's single stub for *contract*; freezes the contract.

        A unit already frozen under another checksum raises
        :class:`ContractDriftError` instead of getting a second stub.
        """
        unit_id = contract.unit_id
        with self._lock(unit_id):
            frozen = self._frozen.get(unit_id)
            if frozen is not None and frozen != contract.checksum:
                raise self._drift(unit_id, frozen, contract.checksum)
            current = self._contracts.get(unit_id)
            if current is None or current.checksum != contract.checksum:
                contract = self.register(unit_id, contract)
            key = (unit_id, contract.checksum)
            stub = self._stubs.get(key)
            if stub is None:
                stub = self._stubs[key] = StubHandle(contract)
                self._frozen[unit_id] = contract.checksum
                logger.debug("Generated stub for %s (%s)", unit_id, contract.checksum[:12])
            return stub

    def stub_for(self, unit_id: str) -> StubHandle | None:
        contract = self._contracts.get(unit_id)
        if contract is None:
            return None
        return self._stubs.get((unit_id, contract.checksum))

    # ── Resolution ───────────────────────────────────────────────────

    def resolve(
        self, unit_id: str, consumer: str | None = None, allow_stub: bool = True
    ) -> Binding:
        """Bind *consumer* to *unit_id*: real if published, else the stub."""
        with self._lock(unit_id):
            if unit_id in self._published:
                binding = Binding(unit_id, consumer, self._published[unit_id], is_stub=False)
            elif allow_stub:
                stub = self.generate_stub(self.contract(unit_id))
                binding = Binding(unit_id, consumer, stub, is_stub=True)
            else:
                raise UnresolvedDependencyError(consumer, unit_id)
            self._bindings[unit_id].append(binding)
            return binding

    def publish(self, unit_id: str, implementation: Any) -> None:
        """Make a finished unit's real implementation available to new bindings."""
        with self._lock(unit_id):
            self._published[unit_id] = implementation

    def is_published(self, unit_id: str) -> bool:
        return unit_id in self._published

    def implementation(self, unit_id: str) -> Any | None:
        return self._published.get(unit_id)

    def promote(self, unit_id: str) -> int:
        """Swap every stub-backed binding of *unit_id* to the real implementation.

        Returns the number of bindings swapped. The stub is discarded.
        """
        with self._lock(unit_id):
            if unit_id not in self._published:
                raise UnresolvedDependencyError(None, unit_id)
            real = self._published[unit_id]
            swapped = 0
            for binding in self._bindings.get(unit_id, []):
                if binding.is_stub:
                    binding._swap(real)
                    swapped += 1
            for key in [k for k in self._stubs if k[0] == unit_id]:
                del self._stubs[key]
            if swapped:
                logger.info("Promoted %s: %d binding(s) now real", unit_id, swapped)
            return swapped

    def stub_bound_units(self) -> list[str]:
        """Providers that still serve at least one consumer through a stub."""
        return sorted(
            unit_id
            for unit_id, bindings in list(self._bindings.items())
            if any(b.is_stub for b in bindings)
        )

    def bindings_for(self, consumer: str) -> dict[str, Binding]:
        found: dict[str, Binding] = {}
        for provider, bindings in list(self._bindings.items()):
            for binding in bindings:
                if binding.consumer == consumer:
                    found[provider] = binding
        return found
