"""Run one task per unit on a thread pool with deadlines and fail-fast.

Cancellation is cooperative: a task sees it at ``TaskContext.checkpoint()``
or while sleeping in ``TaskContext.wait()``. Tasks that have not started when
the phase is cancelled never run. A task past its deadline is recorded as a
timeout and abandoned; its thread is not joined.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from wavefront.errors import TaskCancelled, TimeoutFailure
from wavefront.models import UnitDeclaration

logger = logging.getLogger(__name__)

T = TypeVar("T")

_IDLE_POLL = 0.05


class TaskStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class TaskContext:
    """Everything a collaborator gets for one build or test invocation."""

    unit: UnitDeclaration
    stage: str
    attempt: int = 1
    phase: int | None = None
    dependencies: dict[str, Any] = field(default_factory=dict)
    artifact_ref: str | None = None
    timeout: float | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    started_at: float | None = None
    _expired: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def unit_id(self) -> str:
        return self.unit.id

    @property
    def key(self) -> str:
        return f"{self.stage}:{self.unit.id}#{self.attempt}"

    @property
    def deadline(self) -> float | None:
        if self.timeout is None or self.started_at is None:
            return None
        return self.started_at + self.timeout

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining(self) -> float | None:
        deadline = self.deadline
        if deadline is None:
            return None
        return max(deadline - time.monotonic(), 0.0)

    def checkpoint(self) -> None:
        """Raise if the task should stop now."""
        if self.cancel_event.is_set():
            raise TaskCancelled(self.key)
        deadline = self.deadline
        if self._expired.is_set() or (deadline is not None and time.monotonic() >= deadline):
            raise TimeoutFailure(self.key, self.timeout or 0.0)

    def wait(self, seconds: float) -> None:
        """Sleep up to *seconds*, waking early on cancellation; then checkpoint."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self.cancel_event.wait(timeout=seconds)
        self.checkpoint()


@dataclass
class TaskOutcome(Generic[T]):
    key: str
    status: TaskStatus
    value: T | None = None
    error: str | None = None
    duration: float = 0.0


def _invoke(ctx: TaskContext, fn: Callable[[TaskContext], T]) -> TaskOutcome[T]:
    ctx.started_at = time.monotonic()
    try:
        ctx.checkpoint()
        value = fn(ctx)
    except TaskCancelled:
        return TaskOutcome(ctx.unit_id, TaskStatus.CANCELLED, error="cancelled",
                           duration=time.monotonic() - ctx.started_at)
    except TimeoutFailure as exc:
        return TaskOutcome(ctx.unit_id, TaskStatus.TIMEOUT, error=str(exc),
                           duration=time.monotonic() - ctx.started_at)
    except Exception as exc:
        logger.exception("%s raised", ctx.key)
        return TaskOutcome(ctx.unit_id, TaskStatus.FAILED, error=f"{type(exc).__name__}: {exc}",
                           duration=time.monotonic() - ctx.started_at)
    return TaskOutcome(ctx.unit_id, TaskStatus.COMPLETED, value=value,
                       duration=time.monotonic() - ctx.started_at)


def run_concurrently(
    tasks: Mapping[str, tuple[TaskContext, Callable[[TaskContext], T]]],
    max_workers: int | None = None,
    fail_fast: bool = False,
    is_failure: Callable[[TaskOutcome[T]], bool] | None = None,
    cancel_event: threading.Event | None = None,
) -> dict[str, TaskOutcome[T]]:
    """Run every task concurrently and return one outcome per key.

    *max_workers* of ``None`` runs every task at once. With *fail_fast*, the
    first failing outcome (per *is_failure*, default: anything not completed)
    sets *cancel_event*, which every task context shares.
    """
    if not tasks:
        return {}

    failed = is_failure or (lambda o: o.status is not TaskStatus.COMPLETED)
    cancel = cancel_event or threading.Event()
    for ctx, _ in tasks.values():
        ctx.cancel_event = cancel

    workers = len(tasks) if max_workers is None else max(1, min(max_workers, len(tasks)))
    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=workers, thread_name_prefix="wavefront"
    )
    futures: dict[concurrent.futures.Future[TaskOutcome[T]], str] = {}
    outcomes: dict[str, TaskOutcome[T]] = {}
    try:
        for key, (ctx, fn) in tasks.items():
            futures[executor.submit(_invoke, ctx, fn)] = key
        pending = set(futures)

        while pending:
            contexts = [tasks[futures[f]][0] for f in pending]
            deadlines = [c.deadline for c in contexts if c.deadline is not None]
            timeout = None
            if deadlines:
                timeout = max(min(deadlines) - time.monotonic(), 0.0)
            if any(c.started_at is None for c in contexts):
                timeout = _IDLE_POLL if timeout is None else min(timeout, _IDLE_POLL)

            done, pending = concurrent.futures.wait(
                pending, timeout=timeout, return_when=concurrent.futures.FIRST_COMPLETED
            )
            settled: list[TaskOutcome[T]] = []
            for future in done:
                key = futures[future]
                if future.cancelled():
                    outcomes[key] = TaskOutcome(key, TaskStatus.CANCELLED, error="cancelled")
                else:
                    outcomes[key] = future.result()
                settled.append(outcomes[key])

            now = time.monotonic()
            for future in list(pending):
                ctx = tasks[futures[future]][0]
                if ctx.deadline is None or now < ctx.deadline:
                    continue
                ctx._expired.set()
                pending.discard(future)
                key = futures[future]
                outcomes[key] = TaskOutcome(
                    key,
                    TaskStatus.TIMEOUT,
                    error=str(TimeoutFailure(ctx.key, ctx.timeout or 0.0)),
                    duration=now - (ctx.started_at or now),
                )
                settled.append(outcomes[key])
                logger.warning("%s timed out after %ss", ctx.key, ctx.timeout)

            if fail_fast and not cancel.is_set() and any(failed(o) for o in settled):
                cancel.set()
                logger.info("Fail-fast: cancelling %d in-flight task(s)", len(pending))
                for future in list(pending):
                    if future.cancel():
                        pending.discard(future)
                        key = futures[future]
                        outcomes[key] = TaskOutcome(key, TaskStatus.CANCELLED, error="cancelled")
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    return {key: _rekey(key, outcomes[key]) for key in tasks}


def _rekey(key: str, outcome: TaskOutcome[T]) -> TaskOutcome[T]:
    outcome.key = key
    return outcome
