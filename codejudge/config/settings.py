"""
Top-level orchestrator configuration assembled from the defaults.
"""
from dataclasses import dataclass, field
from typing import Any, Dict

from codejudge.config.defaults import (
    CONTROLLER_DEFAULTS,
    POOL_DEFAULTS,
    SCHEDULER_DEFAULTS,
)


@dataclass
class JudgeConfig:
    backend: str = POOL_DEFAULTS.backend
    max_instances: int = POOL_DEFAULTS.max_instances
    acquire_timeout: float = POOL_DEFAULTS.acquire_timeout
    reuse_instances: bool = POOL_DEFAULTS.reuse_instances
    queue_depth: int = SCHEDULER_DEFAULTS.queue_depth
    max_provision_attempts: int = CONTROLLER_DEFAULTS.max_provision_attempts
    compile_wall_ms: int = CONTROLLER_DEFAULTS.compile_wall_ms
    compile_cpu_ms: int = CONTROLLER_DEFAULTS.compile_cpu_ms
    supervisor_grace_ms: int = CONTROLLER_DEFAULTS.supervisor_grace_ms
    backend_options: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.max_instances < 1:
            raise ValueError(f"max_instances must be at least 1, got {self.max_instances}")
        if self.queue_depth < 0:
            raise ValueError(f"queue_depth must be non-negative, got {self.queue_depth}")
        if self.max_provision_attempts < 1:
            raise ValueError(
                f"max_provision_attempts must be at least 1, got {self.max_provision_attempts}"
            )
