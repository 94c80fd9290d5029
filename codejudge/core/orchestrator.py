"""
Orchestrator: wires the isolation backend, instance pool, scheduler and
result aggregator together from one ``JudgeConfig``.

The API server and the CLI both talk to the judge only through this class.
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Union

from codejudge.config.defaults import SCHEDULER_DEFAULTS
from codejudge.config.settings import JudgeConfig
from codejudge.core.execution.job import Job
from codejudge.core.execution.result import ExecutionResult, ResultAggregator
from codejudge.core.limits import ExecutionLimits, LimitPolicy, default_limit_policy
from codejudge.core.pool.pool import InstancePool
from codejudge.core.scheduler.scheduler import Scheduler
from codejudge.exceptions import JobNotFoundError, SchedulerNotInitializedError
from codejudge.runtime.base import IsolationBackend
from codejudge.runtime.factory import create_backend
from codejudge.runtime.registry import RuntimeRegistry, get_runtime_registry

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Sandboxed execution orchestrator.

    Owns one instance pool and one scheduler. ``initialize`` must be called
    before jobs are submitted and ``cleanup`` tears every instance down.
    """

    def __init__(
        self,
        config: Optional[JudgeConfig] = None,
        backend: Optional[IsolationBackend] = None,
        registry: Optional[RuntimeRegistry] = None,
        limit_policy: Optional[LimitPolicy] = None,
    ):
        self._config = config or JudgeConfig()
        self._backend = backend
        self._registry = registry or get_runtime_registry()
        self._limit_policy = limit_policy or default_limit_policy()
        self._aggregator = ResultAggregator()
        self._pool: Optional[InstancePool] = None
        self._scheduler: Optional[Scheduler] = None

    @property
    def config(self) -> JudgeConfig:
        return self._config

    @property
    def registry(self) -> RuntimeRegistry:
        return self._registry

    @property
    def limit_policy(self) -> LimitPolicy:
        return self._limit_policy

    @property
    def aggregator(self) -> ResultAggregator:
        return self._aggregator

    @property
    def pool(self) -> Optional[InstancePool]:
        return self._pool

    @property
    def scheduler(self) -> Optional[Scheduler]:
        return self._scheduler

    def is_initialized(self) -> bool:
        return self._scheduler is not None and self._scheduler.is_running()

    def initialize(self) -> None:
        """Create the backend (unless one was injected), the pool and the scheduler."""
        if self.is_initialized():
            return
        if self._backend is None:
            self._backend = create_backend(self._config.backend, **self._config.backend_options)

        self._pool = InstancePool(
            backend=self._backend,
            registry=self._registry,
            max_instances=self._config.max_instances,
            acquire_timeout=self._config.acquire_timeout,
            reuse_instances=self._config.reuse_instances,
        )
        self._scheduler = Scheduler(
            pool=self._pool,
            aggregator=self._aggregator,
            limit_policy=self._limit_policy,
            queue_depth=self._config.queue_depth,
            max_provision_attempts=self._config.max_provision_attempts,
            compile_wall_ms=self._config.compile_wall_ms,
            compile_cpu_ms=self._config.compile_cpu_ms,
            supervisor_grace_ms=self._config.supervisor_grace_ms,
        )
        self._scheduler.start()
        logger.info(
            f"Orchestrator initialized: backend={self._backend.backend_type.value}, "
            f"max_instances={self._config.max_instances}, queue_depth={self._config.queue_depth}"
        )

    def _require_scheduler(self) -> Scheduler:
        if self._scheduler is None:
            raise SchedulerNotInitializedError()
        return self._scheduler

    def submit(
        self,
        language: str,
        source_code: str,
        stdin: str = "",
        limits: Union[ExecutionLimits, Mapping[str, Any], None] = None,
        job_id: Optional[str] = None,
    ):
        """Validate and admit a request. Returns a ``concurrent.futures.Future``."""
        return self._require_scheduler().submit_request(language, source_code, stdin, limits, job_id=job_id)

    def submit_job(self, job: Job):
        return self._require_scheduler().submit(job)

    def execute(
        self,
        language: str,
        source_code: str,
        stdin: str = "",
        limits: Union[ExecutionLimits, Mapping[str, Any], None] = None,
        timeout: Optional[float] = None,
        job_id: Optional[str] = None,
    ) -> ExecutionResult:
        """Run one request to completion, blocking the calling thread."""
        return self.submit(language, source_code, stdin, limits, job_id=job_id).result(timeout=timeout)

    async def execute_async(
        self,
        language: str,
        source_code: str,
        stdin: str = "",
        limits: Union[ExecutionLimits, Mapping[str, Any], None] = None,
        job_id: Optional[str] = None,
    ) -> ExecutionResult:
        """Admission errors raise immediately; the result is awaited without blocking the loop.

        Cancelling the awaiting task cancels the job, whether it is still queued
        or already running.
        """
        job_id = job_id or uuid.uuid4().hex
        future = self.submit(language, source_code, stdin, limits, job_id=job_id)
        try:
            return await asyncio.wrap_future(future)
        except asyncio.CancelledError:
            logger.info(f"Caller stopped waiting, cancelling job {job_id}")
            try:
                self.cancel(job_id)
            except (JobNotFoundError, SchedulerNotInitializedError):
                logger.debug(f"Job {job_id} finished before it could be cancelled")
            raise

    def cancel(self, job_id: str) -> bool:
        return self._require_scheduler().cancel(job_id)

    def list_languages(self) -> List[Dict[str, Any]]:
        languages = []
        for image in self._registry.list_images():
            info = image.to_dict()
            info["default_limits"] = self._limit_policy.defaults_for(image.language).to_dict()
            languages.append(info)
        return languages

    def get_status(self) -> Dict[str, Any]:
        if not self.is_initialized():
            return {"initialized": False}
        return {
            "initialized": True,
            "backend": self._backend.backend_type.value,
            "pool": self._pool.get_status(),
            "scheduler": self._scheduler.get_status(),
        }

    def cleanup(self, timeout: float = SCHEDULER_DEFAULTS.shutdown_timeout) -> None:
        """Stop the scheduler and destroy every instance."""
        logger.info("Orchestrator cleanup")
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=True)
            self._scheduler = None
        if self._pool is not None:
            self._pool.shutdown(timeout=timeout)
            self._pool = None
        logger.info("Orchestrator cleanup complete")
