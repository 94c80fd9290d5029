"""
Isolation backend factory.
"""
from typing import Union

from codejudge.runtime.base import IsolationBackend, BackendType


def create_backend(
    backend_type: Union[BackendType, str] = BackendType.SUBPROCESS,
    **kwargs,
) -> IsolationBackend:
    backend_type = BackendType(backend_type)
    if backend_type == BackendType.SUBPROCESS:
        from codejudge.runtime.subprocess import SubprocessBackend
        return SubprocessBackend(**kwargs)
    elif backend_type == BackendType.DOCKER:
        from codejudge.runtime.docker import DockerBackend
        return DockerBackend(**kwargs)
    else:
        raise ValueError(f"Unknown backend type: {backend_type}")
