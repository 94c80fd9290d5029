"""
Runtime images and the isolation backends that run them.

Backends:
- SUBPROCESS: rlimited host processes in throwaway directories
- DOCKER: one hardened container per job (strongest isolation)
"""
from codejudge.runtime.base import (
    BackendType,
    IsolationBackend,
    ProcessReport,
    RuntimeImage,
    SandboxHandle,
)
from codejudge.runtime.registry import (
    RuntimeRegistry,
    extract_java_class_name,
    get_runtime_registry,
    set_runtime_registry,
)
from codejudge.runtime.factory import create_backend

__all__ = [
    "BackendType",
    "IsolationBackend",
    "ProcessReport",
    "RuntimeImage",
    "SandboxHandle",
    "RuntimeRegistry",
    "extract_java_class_name",
    "get_runtime_registry",
    "set_runtime_registry",
    "create_backend",
]
