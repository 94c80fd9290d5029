"""
Base types for runtime images and isolation backends.

A runtime image describes how one language is compiled and run. An isolation
backend turns an image into live, resource-bounded sandboxes and drives the
compile/run commands inside them. The orchestrator only ever talks to the
``IsolationBackend`` interface, so every language and every backend are
interchangeable behind it.
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from codejudge.core.limits import ExecutionLimits

logger = logging.getLogger(__name__)

STDIN_FILENAME = ".stdin"


class BackendType(str, Enum):
    """Isolation backends."""
    SUBPROCESS = "subprocess"
    DOCKER = "docker"


@dataclass(frozen=True)
class RuntimeImage:
    """Compile/run contract of one language's runtime image.

    Command templates may reference ``{source}`` (the staged file name) and
    ``{stem}`` (the file name without its extension).
    """
    language: str
    extension: str
    run_command: Tuple[str, ...]
    compile_command: Optional[Tuple[str, ...]] = None
    docker_image: str = "code-runner"
    version: str = ""
    aliases: Tuple[str, ...] = ()
    source_namer: Optional[Callable[[str], str]] = None

    @property
    def needs_compile(self) -> bool:
        return self.compile_command is not None

    def source_filename(self, source_code: str) -> str:
        if self.source_namer is not None:
            return self.source_namer(source_code)
        return f"main.{self.extension}"

    def compile_argv(self, source_filename: str) -> List[str]:
        if self.compile_command is None:
            return []
        return self._render(self.compile_command, source_filename)

    def run_argv(self, source_filename: str) -> List[str]:
        return self._render(self.run_command, source_filename)

    @staticmethod
    def _render(template: Tuple[str, ...], source_filename: str) -> List[str]:
        stem = source_filename.rsplit(".", 1)[0]
        return [part.format(source=source_filename, stem=stem) for part in template]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "language": self.language,
            "version": self.version,
            "aliases": list(self.aliases),
            "compiled": self.needs_compile,
            "image": self.docker_image,
        }


@dataclass
class ProcessReport:
    """What the isolation layer observed about one compile or run command."""
    exit_code: Optional[int]
    stdout: bytes = b""
    stderr: bytes = b""
    duration_ms: int = 0
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    timed_out: bool = False
    cpu_exceeded: bool = False
    oom_killed: bool = False
    killed: bool = False
    signal: Optional[int] = None
    cpu_time_ms: int = 0
    memory_peak_bytes: int = 0

    @property
    def output_truncated(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated

    @property
    def combined_output(self) -> str:
        parts = [self.stdout.decode("utf-8", errors="replace"), self.stderr.decode("utf-8", errors="replace")]
        return "".join(p for p in parts if p)


@dataclass(eq=False)
class SandboxHandle:
    """Backend-level state of one sandbox.

    ``active_process`` is the host process currently driving a command and
    ``cgroup`` the leaf cgroup containing it, so a kill from another thread can
    reach both.
    """
    sandbox_id: str
    image: RuntimeImage
    workdir: str
    container: Optional[str] = None
    limits: Optional[ExecutionLimits] = None
    source_file: Optional[str] = None
    killed: bool = False
    active_process: Any = None
    cgroup: Any = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class IsolationBackend(ABC):
    backend_type: BackendType

    @abstractmethod
    def provision(self, image: RuntimeImage, limits: ExecutionLimits) -> SandboxHandle:
        """Create a fresh, empty sandbox for ``image``."""
        pass

    @abstractmethod
    def configure_limits(self, sandbox: SandboxHandle, limits: ExecutionLimits) -> Dict[str, int]:
        """Apply ``limits`` and return the ceilings actually in force, by limit name."""
        pass

    @abstractmethod
    def stage(self, sandbox: SandboxHandle, source_filename: str, source_code: str, stdin: str) -> None:
        """Write the source file and the stdin file into the sandbox work area."""
        pass

    @abstractmethod
    def compile(self, sandbox: SandboxHandle, limits: ExecutionLimits) -> ProcessReport:
        pass

    @abstractmethod
    def run(self, sandbox: SandboxHandle, limits: ExecutionLimits) -> ProcessReport:
        pass

    @abstractmethod
    def kill(self, sandbox: SandboxHandle) -> None:
        """Kill every process running in the sandbox. Safe to call at any time."""
        pass

    @abstractmethod
    def reset(self, sandbox: SandboxHandle) -> None:
        """Wipe staged files and stray processes so the sandbox can serve another job."""
        pass

    @abstractmethod
    def destroy(self, sandbox: SandboxHandle) -> None:
        pass

    def shutdown(self) -> None:
        """Release backend-wide resources."""
        pass
