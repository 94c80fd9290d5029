"""
Execution controller: drives one job through its full lifecycle.

    QUEUED -> PROVISIONING -> STAGING -> COMPILING (optional) -> RUNNING
           -> COLLECTING -> RELEASING -> TERMINAL

Provisioning and staging failures are retried with a fresh instance, up to
``max_provision_attempts``. Compile and run outcomes are never retried.
Collecting and releasing run on every exit path, and the bound instance is
destroyed unless the job ended in a clean SUCCESS or COMPILE_ERROR.
"""
import logging
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from typing import Callable, Optional, Tuple

from codejudge.config.defaults import CONTROLLER_DEFAULTS
from codejudge.core.execution.job import Job, JobState
from codejudge.core.execution.result import ExecutionResult, Outcome, Phase, ResultAggregator
from codejudge.core.limits import ExecutionLimits
from codejudge.core.pool.instance import InstanceHandle
from codejudge.core.pool.limiter import LimitViolation, ResourceLimiter
from codejudge.core.pool.pool import InstancePool
from codejudge.exceptions import ExecutorError, InstanceError, PoolExhaustedError
from codejudge.observability.metrics import record_job_started
from codejudge.runtime.base import ProcessReport

logger = logging.getLogger(__name__)

CLEAN_OUTCOMES = frozenset({Outcome.SUCCESS, Outcome.COMPILE_ERROR})

_VIOLATION_OUTCOMES = {
    LimitViolation.TIMEOUT: Outcome.TIMEOUT,
    LimitViolation.MEMORY: Outcome.MEMORY_EXCEEDED,
}

Classification = Tuple[Outcome, Phase, Optional[str]]


class _Cancelled(Exception):
    pass


class ExecutionController:
    """Runs exactly one job, exactly once, and publishes exactly one result."""

    def __init__(
        self,
        job: Job,
        pool: InstancePool,
        aggregator: ResultAggregator,
        max_provision_attempts: int = CONTROLLER_DEFAULTS.max_provision_attempts,
        compile_wall_ms: int = CONTROLLER_DEFAULTS.compile_wall_ms,
        compile_cpu_ms: int = CONTROLLER_DEFAULTS.compile_cpu_ms,
        supervisor_grace_ms: int = CONTROLLER_DEFAULTS.supervisor_grace_ms,
        acquire_timeout: Optional[float] = None,
    ):
        self._job = job
        self._pool = pool
        self._aggregator = aggregator
        self._max_attempts = max(1, max_provision_attempts)
        self._compile_wall_ms = compile_wall_ms
        self._compile_cpu_ms = compile_cpu_ms
        self._grace = supervisor_grace_ms / 1000.0
        self._acquire_timeout = acquire_timeout

        self._lock = threading.Lock()
        self._state = JobState.QUEUED
        self._started = False
        self._cancel_requested = False
        self._handle: Optional[InstanceHandle] = None
        self._phase = Phase.QUEUED
        self._report: Optional[ProcessReport] = None
        self._compile_report: Optional[ProcessReport] = None
        self._result: Optional[ExecutionResult] = None

    @property
    def job(self) -> Job:
        return self._job

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def result(self) -> Optional[ExecutionResult]:
        return self._result

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def cancel(self) -> bool:
        """Request cancellation.

        Before the job starts compiling or running it ends CANCELLED without
        executing anything. While compiling or running, the instance's process
        tree is killed and the instance destroyed. Returns False once the job
        is already collecting its result.
        """
        with self._lock:
            if self._state in (JobState.COLLECTING, JobState.RELEASING, JobState.TERMINAL):
                return False
            self._cancel_requested = True
            handle = self._handle
            executing = self._state in (JobState.COMPILING, JobState.RUNNING)
        logger.info(f"Cancelling job {self._job.job_id} in state {self._state.value}")
        if handle is not None:
            if executing:
                handle.kill()
            else:
                handle.taint()
        return True

    def _set_state(self, state: JobState) -> None:
        with self._lock:
            logger.debug(f"Job {self._job.job_id}: {self._state.value} -> {state.value}")
            self._state = state

    def _enter(self, state: JobState, phase: Phase) -> None:
        """Move into a working state unless cancellation was requested first."""
        with self._lock:
            if self._cancel_requested:
                raise _Cancelled()
            logger.debug(f"Job {self._job.job_id}: {self._state.value} -> {state.value}")
            self._state = state
            self._phase = phase

    def execute(self) -> ExecutionResult:
        """Drive the job to its terminal result. Never raises for job failures.

        Raises:
            ExecutorError: If this controller has already executed.
        """
        with self._lock:
            if self._started:
                raise ExecutorError(
                    f"Job {self._job.job_id} has already been executed", {"job_id": self._job.job_id}
                )
            self._started = True

        start = time.monotonic()
        record_job_started(self._job.language)
        outcome, message = Outcome.INTERNAL_ERROR, None
        try:
            outcome, self._phase, message = self._drive()
        except _Cancelled:
            outcome, message = Outcome.CANCELLED, "Job cancelled"
        except Exception as e:
            logger.exception(f"Job {self._job.job_id} failed in {self._phase.value}")
            outcome, message = Outcome.INTERNAL_ERROR, f"{type(e).__name__}: {e}"
        finally:
            if self._cancel_requested and outcome != Outcome.CANCELLED:
                # A cancel that raced with the final phase still wins.
                outcome, message = Outcome.CANCELLED, "Job cancelled"

            self._set_state(JobState.COLLECTING)
            result = self._aggregator.normalize(
                job_id=self._job.job_id,
                language=self._job.language,
                outcome=outcome,
                phase=self._phase,
                report=self._report,
                compile_report=self._compile_report,
                message=message,
            )

            self._set_state(JobState.RELEASING)
            self._release(force_destroy=outcome not in CLEAN_OUTCOMES)

            self._set_state(JobState.TERMINAL)
            self._result = result
            duration = time.monotonic() - start
            self._aggregator.publish(result, duration)
            logger.info(
                f"Job {self._job.job_id} ({self._job.language}) finished: "
                f"{result.outcome.value} in {duration:.3f}s"
            )
        return result

    def _drive(self) -> Classification:
        handle = self._provision_and_stage()
        if isinstance(handle, tuple):
            return handle

        if handle.image.needs_compile:
            self._enter(JobState.COMPILING, Phase.COMPILE)
            compile_limits = self._job.limits.for_compile(self._compile_wall_ms, self._compile_cpu_ms)
            self._compile_report = self._supervise(handle.compile, compile_limits, handle)
            classified = self._classify_compile(self._compile_report)
            if classified is not None:
                return classified

        self._enter(JobState.RUNNING, Phase.RUN)
        self._report = self._supervise(handle.run, self._job.limits, handle)
        return self._classify_run(self._report)

    def _provision_and_stage(self):
        """Acquire an instance and stage the job into it, retrying with fresh instances.

        Returns the handle, or a classification when every attempt failed.
        """
        image = self._pool.registry.resolve(self._job.language)
        source_filename = image.source_filename(self._job.source_code)
        last_error: Optional[Exception] = None

        for attempt in range(1, self._max_attempts + 1):
            self._enter(JobState.PROVISIONING, Phase.PROVISIONING)
            try:
                handle = self._pool.acquire(self._job.language, self._job.limits, self._acquire_timeout)
            except (PoolExhaustedError, InstanceError) as e:
                last_error = e
                logger.warning(
                    f"Job {self._job.job_id}: provisioning attempt {attempt}/{self._max_attempts} failed: {e.message}"
                )
                self._set_state(JobState.QUEUED)
                continue

            with self._lock:
                self._handle = handle
            self._enter(JobState.STAGING, Phase.STAGING)
            try:
                handle.stage(source_filename, self._job.source_code, self._job.stdin)
                return handle
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Job {self._job.job_id}: staging attempt {attempt}/{self._max_attempts} "
                    f"on instance {handle.instance_id} failed: {e}"
                )
                self._release(force_destroy=True)

        if isinstance(last_error, PoolExhaustedError):
            return Outcome.OVERLOADED, self._phase, f"No sandbox capacity: {last_error.message}"
        return Outcome.INTERNAL_ERROR, self._phase, f"Could not prepare a sandbox: {last_error}"

    def _supervise(
        self,
        command: Callable[[ExecutionLimits], ProcessReport],
        limits: ExecutionLimits,
        handle: InstanceHandle,
    ) -> ProcessReport:
        """Run a phase command, killing the instance if it outlives its wall limit plus grace.

        The isolation layer enforces the wall limit itself; this is the second
        line for when it fails to report.
        """
        future: Future = Future()

        def _target() -> None:
            try:
                future.set_result(command(limits))
            except BaseException as e:
                future.set_exception(e)

        worker = threading.Thread(
            target=_target, name=f"phase-{self._job.job_id[:8]}", daemon=True
        )
        started = time.monotonic()
        worker.start()
        deadline = limits.wall_seconds + self._grace
        try:
            return future.result(timeout=deadline)
        except FutureTimeoutError:
            pass

        logger.error(
            f"Job {self._job.job_id}: isolation layer did not report within {deadline:.2f}s, "
            f"killing instance {handle.instance_id}"
        )
        handle.kill()
        try:
            report = future.result(timeout=self._grace)
            report.timed_out = True
            return report
        except FutureTimeoutError:
            return ProcessReport(
                exit_code=None,
                timed_out=True,
                killed=True,
                duration_ms=int((time.monotonic() - started) * 1000),
            )

    def _classify_compile(self, report: ProcessReport) -> Optional[Classification]:
        violation = ResourceLimiter.detect_violation(report)
        if violation != LimitViolation.NONE:
            return _VIOLATION_OUTCOMES[violation], Phase.COMPILE, f"Compilation exceeded the {violation.value} limit"
        if report.killed:
            raise _Cancelled()
        if report.exit_code != 0:
            return Outcome.COMPILE_ERROR, Phase.COMPILE, "Compilation failed"
        return None

    def _classify_run(self, report: ProcessReport) -> Classification:
        violation = ResourceLimiter.detect_violation(report)
        if violation == LimitViolation.TIMEOUT:
            return Outcome.TIMEOUT, Phase.RUN, "Time limit exceeded"
        if violation == LimitViolation.MEMORY:
            return Outcome.MEMORY_EXCEEDED, Phase.RUN, "Memory limit exceeded"
        if report.killed:
            raise _Cancelled()
        if report.exit_code != 0:
            return Outcome.RUNTIME_ERROR, Phase.RUN, f"Process exited with code {report.exit_code}"
        if report.output_truncated:
            return Outcome.OUTPUT_TRUNCATED, Phase.RUN, "Output limit exceeded"
        return Outcome.SUCCESS, Phase.RUN, None

    def _release(self, force_destroy: bool) -> None:
        with self._lock:
            handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            self._pool.release(handle, force_destroy=force_destroy)
        except Exception:
            logger.exception(f"Job {self._job.job_id}: releasing instance {handle.instance_id} failed")
