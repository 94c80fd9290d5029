"""
Scheduler: admits jobs, bounds concurrency and dispatches FIFO.

A job is dispatched immediately when fewer than ``max_concurrency`` jobs are
executing, queued when the admission queue has room, and rejected with
``OverloadedError`` otherwise. Each worker keeps pulling from the admission
queue until it is empty, so a queued job waits for at most
``queue_depth / max_concurrency`` completions ahead of it.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from codejudge.config.defaults import CONTROLLER_DEFAULTS, SCHEDULER_DEFAULTS
from codejudge.core.execution.controller import ExecutionController
from codejudge.core.execution.job import Job
from codejudge.core.execution.result import ExecutionResult, ResultAggregator
from codejudge.core.limits import ExecutionLimits, LimitPolicy, default_limit_policy
from codejudge.core.pool.pool import InstancePool
from codejudge.core.scheduler.admission import AdmissionQueue
from codejudge.exceptions import (
    JobNotFoundError,
    OverloadedError,
    SchedulerNotInitializedError,
    ValidationError,
)
from codejudge.observability.metrics import record_job_rejected, update_queue_size

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _Entry:
    job: Job
    controller: ExecutionController
    future: Future


class Scheduler:
    def __init__(
        self,
        pool: InstancePool,
        aggregator: Optional[ResultAggregator] = None,
        limit_policy: Optional[LimitPolicy] = None,
        max_concurrency: Optional[int] = None,
        queue_depth: int = SCHEDULER_DEFAULTS.queue_depth,
        max_provision_attempts: int = CONTROLLER_DEFAULTS.max_provision_attempts,
        compile_wall_ms: int = CONTROLLER_DEFAULTS.compile_wall_ms,
        compile_cpu_ms: int = CONTROLLER_DEFAULTS.compile_cpu_ms,
        supervisor_grace_ms: int = CONTROLLER_DEFAULTS.supervisor_grace_ms,
    ):
        self._pool = pool
        self._aggregator = aggregator or ResultAggregator()
        self._limit_policy = limit_policy or default_limit_policy()
        self._max_concurrency = max_concurrency or pool.max_instances
        self._controller_options = {
            "max_provision_attempts": max_provision_attempts,
            "compile_wall_ms": compile_wall_ms,
            "compile_cpu_ms": compile_cpu_ms,
            "supervisor_grace_ms": supervisor_grace_ms,
        }

        self._lock = threading.Lock()
        self._queue: AdmissionQueue[_Entry] = AdmissionQueue(queue_depth)
        self._entries: Dict[str, _Entry] = {}
        self._active = 0
        self._executor: Optional[ThreadPoolExecutor] = None
        self._running = False

    @property
    def aggregator(self) -> ResultAggregator:
        return self._aggregator

    @property
    def limit_policy(self) -> LimitPolicy:
        return self._limit_policy

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_concurrency,
                thread_name_prefix="codejudge-worker",
            )
            self._running = True
        logger.info(
            f"Scheduler started: max_concurrency={self._max_concurrency}, "
            f"queue_depth={self._queue.capacity}"
        )

    def is_running(self) -> bool:
        return self._running

    def submit(self, job: Job) -> "Future[ExecutionResult]":
        """Admit ``job`` and return a future for its result.

        Raises:
            SchedulerNotInitializedError: If the scheduler is not started.
            OverloadedError: If every worker is busy and the admission queue is full.
            ValidationError: If a job with the same id is in flight or already finished.
        """
        future: Future = Future()
        entry = _Entry(job=job, controller=self._make_controller(job), future=future)
        with self._lock:
            if not self._running:
                raise SchedulerNotInitializedError()
            if job.job_id in self._entries:
                raise ValidationError(f"Job already admitted: {job.job_id}", {"job_id": job.job_id})
            if self._aggregator.is_delivered(job.job_id):
                raise ValidationError(f"Job id already used: {job.job_id}", {"job_id": job.job_id})
            if self._active < self._max_concurrency:
                self._active += 1
                dispatch = True
            elif self._queue.offer(entry):
                dispatch = False
            else:
                record_job_rejected("queue_full")
                raise OverloadedError(
                    queue_name=self._queue.name,
                    current_size=self._queue.size,
                    capacity=self._queue.capacity,
                )
            self._entries[job.job_id] = entry
            update_queue_size(self._queue.size)
            # Under the lock so shutdown cannot close the executor in between.
            if dispatch:
                self._executor.submit(self._worker_loop, entry)
            else:
                logger.debug(f"Job {job.job_id} queued at position {self._queue.size}")
        return future

    def submit_request(
        self,
        language: str,
        source_code: str,
        stdin: str = "",
        limits: Union[ExecutionLimits, Mapping[str, Any], None] = None,
        job_id: Optional[str] = None,
    ) -> "Future[ExecutionResult]":
        """Validate a raw request, build its job and submit it.

        ``job_id`` lets the caller name the job so it can cancel it later; a
        random id is used otherwise.

        Raises:
            UnsupportedLanguageError: If no runtime image serves ``language``.
            InvalidLimitsError: If ``limits`` are malformed or looser than the policy.
        """
        image = self._pool.registry.resolve(language)
        effective = self._limit_policy.resolve(image.language, limits)
        identity = {"job_id": job_id} if job_id else {}
        job = Job(
            language=image.language,
            source_code=source_code,
            stdin=stdin or "",
            limits=effective,
            **identity,
        )
        return self.submit(job)

    def run(self, job: Job, timeout: Optional[float] = None) -> ExecutionResult:
        """Submit ``job`` and block for its result."""
        return self.submit(job).result(timeout=timeout)

    def _make_controller(self, job: Job) -> ExecutionController:
        return ExecutionController(job, self._pool, self._aggregator, **self._controller_options)

    def _worker_loop(self, entry: Optional[_Entry]) -> None:
        while entry is not None:
            self._execute_entry(entry)
            with self._lock:
                entry = self._queue.poll()
                if entry is None:
                    self._active -= 1
                update_queue_size(self._queue.size)

    def _execute_entry(self, entry: _Entry) -> None:
        if not entry.future.set_running_or_notify_cancel():
            # The caller cancelled the future while the job was queued.
            entry.controller.cancel()
        try:
            result = entry.controller.execute()
            if not entry.future.cancelled():
                entry.future.set_result(result)
        except Exception as e:
            logger.exception(f"Controller for job {entry.job.job_id} raised")
            if not entry.future.cancelled():
                entry.future.set_exception(e)
        finally:
            with self._lock:
                self._entries.pop(entry.job.job_id, None)

    def cancel(self, job_id: str) -> bool:
        """Cancel a queued or executing job.

        A queued job resolves to a CANCELLED result without ever acquiring an
        instance. Returns False when the job is already finishing.

        Raises:
            JobNotFoundError: If no such job is in flight.
        """
        with self._lock:
            entry = self._entries.get(job_id)
            if entry is None:
                raise JobNotFoundError(job_id)
            dequeued = self._queue.remove(entry)
            update_queue_size(self._queue.size)
        accepted = entry.controller.cancel()
        if dequeued:
            self._execute_entry(entry)
        return accepted

    def get_backpressure_status(self) -> Dict[str, Any]:
        with self._lock:
            status = self._queue.get_backpressure_status()
            status["active"] = self._active
            status["max_concurrency"] = self._max_concurrency
            status["accepting"] = self._running and (
                self._active < self._max_concurrency or not self._queue.is_full()
            )
            return status

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            jobs = {job_id: e.controller.state.value for job_id, e in self._entries.items()}
        return {
            "running": self._running,
            "backpressure": self.get_backpressure_status(),
            "jobs": jobs,
            "results": self._aggregator.get_stats(),
        }

    def shutdown(self, wait: bool = True, cancel_pending: bool = True) -> None:
        """Stop admitting jobs; resolve queued ones as CANCELLED and wait for the rest."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            pending = self._queue.drain() if cancel_pending else []
            update_queue_size(self._queue.size)
            executor, self._executor = self._executor, None
        logger.info(f"Scheduler stopping, cancelling {len(pending)} queued jobs")
        for entry in pending:
            entry.controller.cancel()
            self._execute_entry(entry)
        if executor is not None:
            executor.shutdown(wait=wait)
        logger.info("Scheduler stopped")
