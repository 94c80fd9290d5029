"""
Centralized configuration defaults for codejudge.

This module provides a single source of truth for all default configurations
used across the orchestrator.
"""
from dataclasses import dataclass

MIB = 1024 * 1024


@dataclass(frozen=True)
class LimitDefaults:
    """Default per-job ceilings, used when a language has no stricter policy."""
    cpu_ms: int = 2000
    wall_ms: int = 5000
    memory_bytes: int = 256 * MIB
    max_processes: int = 64
    max_output_bytes: int = 64 * 1024
    max_file_bytes: int = 16 * MIB


@dataclass(frozen=True)
class PoolDefaults:
    """Default instance pool configuration."""
    backend: str = "subprocess"
    max_instances: int = 4
    acquire_timeout: float = 10.0  # seconds
    reuse_instances: bool = True


@dataclass(frozen=True)
class ControllerDefaults:
    """Default execution controller configuration."""
    max_provision_attempts: int = 3
    compile_wall_ms: int = 15000
    compile_cpu_ms: int = 10000
    supervisor_grace_ms: int = 2000


@dataclass(frozen=True)
class SchedulerDefaults:
    """Default scheduler configuration."""
    queue_depth: int = 64
    shutdown_timeout: float = 30.0  # seconds


@dataclass(frozen=True)
class ServerDefaults:
    """Default server configuration."""
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"


@dataclass(frozen=True)
class ClientDefaults:
    """Default client configuration."""
    timeout: int = 60  # seconds for HTTP requests


# Global default instances
LIMIT_DEFAULTS = LimitDefaults()
POOL_DEFAULTS = PoolDefaults()
CONTROLLER_DEFAULTS = ControllerDefaults()
SCHEDULER_DEFAULTS = SchedulerDefaults()
SERVER_DEFAULTS = ServerDefaults()
CLIENT_DEFAULTS = ClientDefaults()
