"""
Core module for codejudge.
"""
from codejudge.core.limits import ExecutionLimits, LimitPolicy, default_limit_policy

__all__ = [
    "ExecutionLimits",
    "LimitPolicy",
    "default_limit_policy",
    "InstancePool",
    "ExecutionController",
    "Scheduler",
    "Orchestrator",
]


def __getattr__(name: str):
    if name == "Orchestrator":
        from codejudge.core.orchestrator import Orchestrator
        return Orchestrator
    elif name == "Scheduler":
        from codejudge.core.scheduler import Scheduler
        return Scheduler
    elif name == "InstancePool":
        from codejudge.core.pool import InstancePool
        return InstancePool
    elif name == "ExecutionController":
        from codejudge.core.execution import ExecutionController
        return ExecutionController
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
