"""
Sandbox instance representation for the instance pool.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from codejudge.core.limits import ExecutionLimits
from codejudge.exceptions import InstanceError
from codejudge.runtime.base import IsolationBackend, ProcessReport, RuntimeImage, SandboxHandle

logger = logging.getLogger(__name__)


class InstanceState(Enum):
    PROVISIONING = "provisioning"
    READY = "ready"
    BUSY = "busy"
    DRAINING = "draining"
    DESTROYED = "destroyed"


_TRANSITIONS = {
    InstanceState.PROVISIONING: {InstanceState.READY, InstanceState.DRAINING},
    InstanceState.READY: {InstanceState.BUSY, InstanceState.DRAINING},
    InstanceState.BUSY: {InstanceState.READY, InstanceState.DRAINING},
    InstanceState.DRAINING: {InstanceState.DESTROYED},
    InstanceState.DESTROYED: set(),
}


@dataclass(eq=False)
class Instance:
    """One live sandbox, owned by the pool.

    The pool serializes every state change; nothing outside it mutates an
    instance directly.
    """
    instance_id: str
    image: RuntimeImage
    limits: ExecutionLimits
    sandbox: Optional[SandboxHandle] = None
    state: InstanceState = InstanceState.PROVISIONING
    applied_limits: Dict[str, int] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    jobs_served: int = 0
    destroy_claimed: bool = False

    @property
    def language(self) -> str:
        return self.image.language

    @property
    def pool_key(self) -> Tuple[str, ExecutionLimits]:
        return (self.image.language, self.limits)

    def transition(self, new_state: InstanceState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InstanceError(
                f"Invalid instance transition {self.state.value} -> {new_state.value}",
                self.instance_id,
            )
        logger.debug(f"Instance {self.instance_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "language": self.language,
            "state": self.state.value,
            "limits": self.limits.to_dict(),
            "jobs_served": self.jobs_served,
            "created_at": self.created_at,
        }


class InstanceHandle:
    """Borrowed access to one instance for the duration of one job.

    The handle only exposes the operations a job needs; provisioning, limit
    configuration, reset and destruction stay with the pool. Once released the
    handle refuses further use.
    """

    def __init__(self, instance: Instance, backend: IsolationBackend):
        self._instance = instance
        self._backend = backend
        self._lock = threading.Lock()
        self._released = False
        self._tainted = False

    @property
    def instance_id(self) -> str:
        return self._instance.instance_id

    @property
    def instance(self) -> Instance:
        return self._instance

    @property
    def image(self) -> RuntimeImage:
        return self._instance.image

    @property
    def limits(self) -> ExecutionLimits:
        return self._instance.limits

    @property
    def released(self) -> bool:
        return self._released

    @property
    def tainted(self) -> bool:
        return self._tainted

    def taint(self) -> None:
        """Mark the instance untrustworthy; it will be destroyed on release."""
        self._tainted = True

    def _mark_released(self) -> bool:
        with self._lock:
            if self._released:
                return False
            self._released = True
            return True

    def _sandbox(self) -> SandboxHandle:
        if self._released:
            raise InstanceError("Instance handle used after release", self.instance_id)
        return self._instance.sandbox

    def stage(self, source_filename: str, source_code: str, stdin: str) -> None:
        self._backend.stage(self._sandbox(), source_filename, source_code, stdin)

    def compile(self, limits: ExecutionLimits) -> ProcessReport:
        return self._backend.compile(self._sandbox(), limits)

    def run(self, limits: ExecutionLimits) -> ProcessReport:
        return self._backend.run(self._sandbox(), limits)

    def kill(self) -> None:
        """Kill the instance's process tree. Always taints the instance."""
        self._tainted = True
        sandbox = self._instance.sandbox
        if sandbox is not None:
            self._backend.kill(sandbox)

    def __repr__(self) -> str:
        return f"InstanceHandle({self.instance_id}, {self._instance.language}, released={self._released})"
