"""
Instance pool: the single owner of live sandbox instances.

All capacity accounting happens under one condition variable. An instance
counts against ``max_instances`` from the moment its slot is reserved until
its destruction has finished, so the bound holds while instances are being
provisioned and while failed ones are being torn down.
"""
import logging
import threading
import time
import uuid
from collections import deque
from contextlib import contextmanager
from typing import Any, Deque, Dict, Iterator, Optional, Tuple

from codejudge.config.defaults import POOL_DEFAULTS
from codejudge.core.limits import ExecutionLimits
from codejudge.core.pool.instance import Instance, InstanceHandle, InstanceState
from codejudge.core.pool.limiter import ResourceLimiter
from codejudge.exceptions import InstanceError, PoolExhaustedError
from codejudge.observability.metrics import (
    record_instance_destroyed,
    record_instance_provisioned,
    update_live_instances,
)
from codejudge.runtime.base import IsolationBackend
from codejudge.runtime.registry import RuntimeRegistry, get_runtime_registry

logger = logging.getLogger(__name__)

PoolKey = Tuple[str, ExecutionLimits]


class InstancePool:
    """Bounded, thread-safe pool of sandbox instances."""

    def __init__(
        self,
        backend: IsolationBackend,
        registry: Optional[RuntimeRegistry] = None,
        limiter: Optional[ResourceLimiter] = None,
        max_instances: int = POOL_DEFAULTS.max_instances,
        acquire_timeout: float = POOL_DEFAULTS.acquire_timeout,
        reuse_instances: bool = POOL_DEFAULTS.reuse_instances,
    ):
        if max_instances < 1:
            raise ValueError(f"max_instances must be at least 1, got {max_instances}")
        self._backend = backend
        self._registry = registry or get_runtime_registry()
        self._limiter = limiter or ResourceLimiter(backend)
        self._max_instances = max_instances
        self._acquire_timeout = acquire_timeout
        self._reuse_instances = reuse_instances

        self._cond = threading.Condition(threading.Lock())
        self._instances: Dict[str, Instance] = {}
        self._idle: Dict[PoolKey, Deque[Instance]] = {}
        self._shutdown = False
        self._provisioned_total = 0
        self._destroyed_total = 0

    @property
    def backend(self) -> IsolationBackend:
        return self._backend

    @property
    def registry(self) -> RuntimeRegistry:
        return self._registry

    @property
    def max_instances(self) -> int:
        return self._max_instances

    @property
    def live_count(self) -> int:
        with self._cond:
            return len(self._instances)

    @property
    def idle_count(self) -> int:
        with self._cond:
            return sum(len(q) for q in self._idle.values())

    @property
    def busy_count(self) -> int:
        with self._cond:
            return sum(1 for i in self._instances.values() if i.state == InstanceState.BUSY)

    @property
    def provisioned_total(self) -> int:
        return self._provisioned_total

    @property
    def destroyed_total(self) -> int:
        return self._destroyed_total

    def acquire(
        self,
        language: str,
        limits: ExecutionLimits,
        timeout: Optional[float] = None,
    ) -> InstanceHandle:
        """Borrow an instance for ``language`` configured with exactly ``limits``.

        Reuses a compatible idle instance when one exists, otherwise provisions
        a new one if capacity allows, evicting an idle instance of another kind
        if that is what stands in the way. Blocks until ``timeout`` otherwise.

        Raises:
            UnsupportedLanguageError: If no runtime image serves ``language``.
            PoolExhaustedError: If no capacity frees up before the timeout.
            InstanceError: If provisioning fails (including limit configuration).
        """
        image = self._registry.resolve(language)
        key: PoolKey = (image.language, limits)
        timeout = self._acquire_timeout if timeout is None else timeout
        start = time.monotonic()
        deadline = start + timeout

        while True:
            victim: Optional[Instance] = None
            with self._cond:
                if self._shutdown:
                    raise InstanceError("Instance pool is shut down")
                idle = self._pop_idle(key)
                if idle is not None:
                    idle.transition(InstanceState.BUSY)
                    idle.jobs_served += 1
                    logger.debug(f"Reusing instance {idle.instance_id} for {image.language}")
                    return InstanceHandle(idle, self._backend)
                if len(self._instances) < self._max_instances:
                    instance = Instance(
                        instance_id=uuid.uuid4().hex[:12],
                        image=image,
                        limits=limits,
                    )
                    self._instances[instance.instance_id] = instance
                    update_live_instances(len(self._instances))
                    break
                victim = self._pop_any_idle()
                if victim is None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        waited = time.monotonic() - start
                        logger.warning(
                            f"Pool exhausted for {image.language}: "
                            f"{len(self._instances)}/{self._max_instances} instances busy"
                        )
                        raise PoolExhaustedError(image.language, self._max_instances, waited)
                    self._cond.wait(remaining)
                    continue
                self._claim_destroy(victim)
            logger.debug(f"Evicting idle instance {victim.instance_id} ({victim.language})")
            self._finish_destroy(victim)

        return self._provision(instance)

    def _provision(self, instance: Instance) -> InstanceHandle:
        try:
            instance.sandbox = self._backend.provision(instance.image, instance.limits)
            self._limiter.apply(instance, instance.limits)
        except Exception:
            logger.warning(f"Provisioning instance {instance.instance_id} ({instance.language}) failed")
            with self._cond:
                self._claim_destroy(instance)
            self._finish_destroy(instance)
            raise

        with self._cond:
            instance.transition(InstanceState.READY)
            instance.transition(InstanceState.BUSY)
            instance.jobs_served += 1
            self._provisioned_total += 1
        record_instance_provisioned(instance.language)
        logger.info(f"Provisioned instance {instance.instance_id} for {instance.language}")
        return InstanceHandle(instance, self._backend)

    def release(self, handle: InstanceHandle, force_destroy: bool = False) -> None:
        """Return a borrowed instance.

        The instance is destroyed instead of being made available again when
        ``force_destroy`` is set, when the handle was tainted, when reuse is
        disabled or when wiping it for the next job fails. Releasing the same
        handle twice is a no-op.
        """
        if not handle._mark_released():
            logger.debug(f"Instance {handle.instance_id} already released")
            return
        instance = handle.instance
        destroy = force_destroy or handle.tainted or not self._reuse_instances

        if not destroy:
            try:
                self._backend.reset(instance.sandbox)
            except Exception as e:
                logger.warning(f"Reset of instance {instance.instance_id} failed, destroying: {e}")
                destroy = True

        with self._cond:
            if instance.destroy_claimed:
                return
            if not destroy and not self._shutdown:
                instance.transition(InstanceState.READY)
                self._idle.setdefault(instance.pool_key, deque()).append(instance)
                self._cond.notify_all()
                return
            self._claim_destroy(instance)
        self._finish_destroy(instance)

    @contextmanager
    def lease(
        self,
        language: str,
        limits: ExecutionLimits,
        timeout: Optional[float] = None,
    ) -> Iterator[InstanceHandle]:
        """Scoped acquire/release. An exception inside the block destroys the instance."""
        handle = self.acquire(language, limits, timeout)
        try:
            yield handle
        except BaseException:
            self.release(handle, force_destroy=True)
            raise
        self.release(handle)

    def _pop_idle(self, key: PoolKey) -> Optional[Instance]:
        queue = self._idle.get(key)
        if not queue:
            return None
        instance = queue.popleft()
        if not queue:
            del self._idle[key]
        return instance

    def _pop_any_idle(self) -> Optional[Instance]:
        # Oldest idle instance of any kind.
        oldest_key = None
        oldest: Optional[Instance] = None
        for key, queue in self._idle.items():
            if queue and (oldest is None or queue[0].created_at < oldest.created_at):
                oldest_key, oldest = key, queue[0]
        if oldest_key is None:
            return None
        return self._pop_idle(oldest_key)

    def _claim_destroy(self, instance: Instance) -> bool:
        """Mark ``instance`` for destruction. Must be called with the lock held."""
        if instance.destroy_claimed:
            return False
        instance.destroy_claimed = True
        if instance.state != InstanceState.DRAINING:
            instance.transition(InstanceState.DRAINING)
        return True

    def _finish_destroy(self, instance: Instance) -> None:
        """Tear down a claimed instance and free its slot. Called without the lock."""
        try:
            if instance.sandbox is not None:
                self._backend.destroy(instance.sandbox)
        except Exception as e:
            logger.error(f"Failed to destroy instance {instance.instance_id}: {e}")
        finally:
            with self._cond:
                instance.transition(InstanceState.DESTROYED)
                self._instances.pop(instance.instance_id, None)
                self._destroyed_total += 1
                update_live_instances(len(self._instances))
                self._cond.notify_all()
            record_instance_destroyed(instance.language)
            logger.debug(f"Destroyed instance {instance.instance_id}")

    def get_status(self) -> Dict[str, Any]:
        with self._cond:
            states: Dict[str, int] = {state.value: 0 for state in InstanceState}
            for instance in self._instances.values():
                states[instance.state.value] += 1
            return {
                "max_instances": self._max_instances,
                "live": len(self._instances),
                "idle": sum(len(q) for q in self._idle.values()),
                "busy": states[InstanceState.BUSY.value],
                "states": states,
                "provisioned_total": self._provisioned_total,
                "destroyed_total": self._destroyed_total,
                "reuse_instances": self._reuse_instances,
                "instances": [i.to_dict() for i in self._instances.values()],
            }

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Destroy idle instances and wait for borrowed ones to be released.

        Borrowed instances are destroyed on release once the pool is shut down.
        """
        with self._cond:
            self._shutdown = True
            victims = []
            for queue in self._idle.values():
                victims.extend(queue)
            self._idle.clear()
            for instance in victims:
                self._claim_destroy(instance)
        for instance in victims:
            self._finish_destroy(instance)

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._instances:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    logger.warning(f"{len(self._instances)} instances still live at pool shutdown")
                    break
                self._cond.wait(remaining)
        self._backend.shutdown()
        logger.info(
            f"Instance pool shut down: provisioned={self._provisioned_total}, "
            f"destroyed={self._destroyed_total}"
        )
