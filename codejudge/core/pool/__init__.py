"""
Instance pool and resource limiter.
"""
from codejudge.core.pool.instance import Instance, InstanceHandle, InstanceState
from codejudge.core.pool.limiter import LimitViolation, ResourceLimiter
from codejudge.core.pool.pool import InstancePool

__all__ = [
    "Instance",
    "InstanceHandle",
    "InstanceState",
    "LimitViolation",
    "ResourceLimiter",
    "InstancePool",
]
