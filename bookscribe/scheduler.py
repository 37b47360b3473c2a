"""Bounded worker pool with per-unit retry, resume skipping and cancellation.

A stage hands the scheduler its Units and a per-unit operation. Up to ``C``
worker threads pull Units from a shared queue; each worker runs exactly one
operation at a time, so no more than ``C`` operations are ever in flight.
Completion order is arbitrary; callers reorder by unit index.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from .errors import OutputTargetError, StageCancelled
from .models import StageReport, Unit, UnitOutcome
from .resume import ResumeStore

log = logging.getLogger(__name__)

Operation = Callable[[Unit], Path]
OutcomeCallback = Callable[[UnitOutcome], None]

DEFAULT_CONCURRENCY = 50
_JOIN_POLL_S = 0.1


class UnitState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay_s * 2**(attempt-1)``, capped."""

    max_attempts: int = 4
    base_delay_s: float = 2.0
    max_delay_s: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("retry delays must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number *attempt* (1-based)."""
        return min(self.max_delay_s, self.base_delay_s * (2 ** (attempt - 1)))


def is_retryable(exc: BaseException) -> bool:
    """True for errors flagged ``retryable`` and for builtin timeouts and dropped connections."""
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    return bool(getattr(exc, "retryable", False))


class _StageRun:
    """Mutable bookkeeping for a single ``run`` call."""

    def __init__(self, name: str, units: list[Unit]):
        self.name = name
        self.work: "queue.Queue[Unit]" = queue.Queue()
        self.lock = threading.Lock()
        self.outcomes: dict[int, UnitOutcome] = {}
        self.states: dict[int, UnitState] = {u.index: UnitState.PENDING for u in units}
        self.attempts: dict[int, int] = {u.index: 0 for u in units}
        self.stop = threading.Event()
        self.fatal: Optional[BaseException] = None

    def transition(self, index: int, state: UnitState, attempt: int = 0) -> None:
        with self.lock:
            self.states[index] = state
            if attempt:
                self.attempts[index] = attempt
        log.debug("%s: unit %s -> %s (attempt %s)", self.name, index, state.value, attempt)

    def record(self, outcome: UnitOutcome) -> bool:
        """Store *outcome* unless the unit was already settled."""
        with self.lock:
            if outcome.index in self.outcomes:
                return False
            self.outcomes[outcome.index] = outcome
            return True


class BoundedScheduler:
    """Run a per-unit operation over many units with at most ``concurrency`` in flight."""

    def __init__(
        self,
        concurrency: int = DEFAULT_CONCURRENCY,
        *,
        retry: Optional[RetryPolicy] = None,
        resume_store: Optional[ResumeStore] = None,
        cancel_event: Optional[threading.Event] = None,
        cancel_timeout_s: float = 30.0,
        name: str = "stage",
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.concurrency = concurrency
        self.retry = retry or RetryPolicy()
        self.resume_store = resume_store
        self.cancel_event = cancel_event or threading.Event()
        self.cancel_timeout_s = cancel_timeout_s
        self.name = name

    def run(
        self,
        units: Iterable[Unit],
        operation: Operation,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> StageReport:
        units = list(units)
        run = _StageRun(self.name, units)
        t0 = time.perf_counter()

        queued = 0
        for unit in units:
            if self.resume_store is not None and self.resume_store.exists(unit.output_path):
                outcome = UnitOutcome.skipped(unit.index, unit.output_path)
                run.record(outcome)
                run.transition(unit.index, UnitState.SUCCEEDED)
                if on_outcome is not None:
                    on_outcome(outcome)
                continue
            run.work.put(unit)
            queued += 1

        log.info(
            "%s: %s units, %s already complete, %s queued (concurrency=%s)",
            self.name,
            len(units),
            len(units) - queued,
            queued,
            self.concurrency,
        )

        workers = [
            threading.Thread(
                target=self._worker,
                args=(run, operation, on_outcome),
                name=f"{self.name}-{i}",
                daemon=True,
            )
            for i in range(min(self.concurrency, queued))
        ]
        for worker in workers:
            worker.start()
        self._join(workers)

        report = self._build_report(run, units)
        log.info(
            "%s: %s succeeded, %s skipped, %s failed (%.2fs)",
            self.name,
            report.succeeded,
            report.skipped,
            report.failed,
            time.perf_counter() - t0,
        )
        if run.fatal is not None:
            raise OutputTargetError(
                f"{self.name}: output target unusable: {run.fatal}",
                report=report,
            ) from run.fatal
        return report

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _dispatch_stopped(self, run: _StageRun) -> bool:
        return run.stop.is_set() or self.cancel_event.is_set()

    def _worker(
        self,
        run: _StageRun,
        operation: Operation,
        on_outcome: Optional[OutcomeCallback],
    ) -> None:
        while not self._dispatch_stopped(run):
            try:
                unit = run.work.get_nowait()
            except queue.Empty:
                return
            outcome = self._run_unit(run, unit, operation)
            if run.record(outcome) and on_outcome is not None:
                on_outcome(outcome)

    def _run_unit(self, run: _StageRun, unit: Unit, operation: Operation) -> UnitOutcome:
        attempt = 0
        while True:
            attempt += 1
            run.transition(unit.index, UnitState.IN_FLIGHT, attempt)
            try:
                path = operation(unit)
            except OutputTargetError as exc:
                log.error(
                    "%s: unit %s hit an output error, stopping dispatch: %s",
                    self.name,
                    unit.index,
                    exc,
                )
                with run.lock:
                    if run.fatal is None:
                        run.fatal = exc
                run.stop.set()
                run.transition(unit.index, UnitState.FAILED)
                return UnitOutcome.failed(unit.index, exc, attempt)
            except Exception as exc:
                if not is_retryable(exc) or attempt >= self.retry.max_attempts:
                    log.warning(
                        "%s: unit %s failed after %s attempt(s): %s: %s",
                        self.name,
                        unit.index,
                        attempt,
                        type(exc).__name__,
                        exc,
                    )
                    run.transition(unit.index, UnitState.FAILED)
                    return UnitOutcome.failed(unit.index, exc, attempt)

                delay = self.retry.delay_for(attempt)
                run.transition(unit.index, UnitState.RETRYING, attempt)
                log.info(
                    "%s: unit %s attempt %s/%s failed (%s), retrying in %.1fs",
                    self.name,
                    unit.index,
                    attempt,
                    self.retry.max_attempts,
                    exc,
                    delay,
                )
                if self._backoff(run, delay):
                    reason = "output target unusable" if run.fatal is not None else "cancelled"
                    run.transition(unit.index, UnitState.FAILED)
                    return UnitOutcome.failed(
                        unit.index,
                        StageCancelled(f"{reason} while retrying: {exc}"),
                        attempt,
                    )
                continue

            run.transition(unit.index, UnitState.SUCCEEDED)
            return UnitOutcome.success(unit.index, path, attempt)

    def _backoff(self, run: _StageRun, delay: float) -> bool:
        """Sleep up to *delay* seconds; True if dispatch stopped meanwhile."""
        deadline = time.monotonic() + delay
        while not self._dispatch_stopped(run):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            run.stop.wait(min(remaining, _JOIN_POLL_S))
        return True

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    def _join(self, workers: list[threading.Thread]) -> None:
        """Wait for workers; once cancelled, wait at most ``cancel_timeout_s``."""
        deadline: Optional[float] = None
        for worker in workers:
            while worker.is_alive():
                worker.join(_JOIN_POLL_S)
                if self.cancel_event.is_set():
                    if deadline is None:
                        deadline = time.monotonic() + self.cancel_timeout_s
                        log.warning("%s: cancellation requested", self.name)
                    if time.monotonic() >= deadline:
                        log.warning(
                            "%s: in-flight units did not finish within %.1fs",
                            self.name,
                            self.cancel_timeout_s,
                        )
                        return

    def _build_report(self, run: _StageRun, units: list[Unit]) -> StageReport:
        # Units never started, or abandoned in flight, still get an outcome.
        for unit in units:
            with run.lock:
                settled = unit.index in run.outcomes
                attempts = run.attempts.get(unit.index, 0)
            if settled:
                continue
            reason = "output target unusable" if run.fatal is not None else "cancelled"
            run.record(
                UnitOutcome.failed(
                    unit.index,
                    StageCancelled(f"{reason} before unit {unit.index} completed"),
                    attempts,
                )
            )
        with run.lock:
            outcomes = dict(sorted(run.outcomes.items()))
        return StageReport(stage=self.name, outcomes=outcomes)


def run_stage(
    units: Iterable[Unit],
    concurrency: int,
    operation: Operation,
    **kwargs,
) -> StageReport:
    """Functional shorthand for ``BoundedScheduler(concurrency, **kwargs).run(...)``."""
    on_outcome = kwargs.pop("on_outcome", None)
    return BoundedScheduler(concurrency, **kwargs).run(units, operation, on_outcome)
