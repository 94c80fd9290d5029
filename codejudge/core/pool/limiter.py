"""
Resource limiter: attaches ceilings to an instance and classifies which one fired.
"""
import logging
from enum import Enum

from codejudge.core.limits import ExecutionLimits
from codejudge.exceptions import LimitConfigurationError
from codejudge.runtime.base import IsolationBackend, ProcessReport

logger = logging.getLogger(__name__)

REQUIRED_CEILINGS = (
    "cpu_ms",
    "wall_ms",
    "memory_bytes",
    "max_processes",
    "max_output_bytes",
    "max_file_bytes",
)


class LimitViolation(Enum):
    NONE = "none"
    TIMEOUT = "timeout"
    MEMORY = "memory"


class ResourceLimiter:
    def __init__(self, backend: IsolationBackend):
        self._backend = backend

    def apply(self, instance, limits: ExecutionLimits) -> None:
        """Configure every ceiling on ``instance`` before user code runs.

        Either all of them are in force afterwards or this raises.

        Raises:
            LimitConfigurationError: If the backend failed, or reported fewer
                ceilings than required.
        """
        try:
            applied = self._backend.configure_limits(instance.sandbox, limits)
        except LimitConfigurationError:
            raise
        except Exception as e:
            raise LimitConfigurationError(instance.instance_id, cause=str(e)) from e

        missing = [name for name in REQUIRED_CEILINGS if applied.get(name) != getattr(limits, name)]
        if missing:
            raise LimitConfigurationError(instance.instance_id, missing, cause="ceilings not in force")
        instance.applied_limits = dict(applied)
        logger.debug(f"Limits applied to instance {instance.instance_id}: {applied}")

    @staticmethod
    def detect_violation(report: ProcessReport) -> LimitViolation:
        """Which limit, if any, terminated the command described by ``report``."""
        if report.timed_out or report.cpu_exceeded:
            return LimitViolation.TIMEOUT
        if report.oom_killed:
            return LimitViolation.MEMORY
        return LimitViolation.NONE
