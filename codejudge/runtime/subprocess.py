"""
Subprocess-based isolation backend.

Each sandbox is a private temporary working directory. Every command runs in a
new session inside its own leaf cgroup, which caps memory and process count for
the whole process tree; CPU-time, file-size and core-dump rlimits are applied in
the child before exec. The memory outcome comes from the leaf's ``oom_kill``
counter and the leaf is killed and removed once the command is over, so nothing
a submission starts outlives it.

Without a delegated cgroup v2 subtree the memory and process-count ceilings
cannot be held per sandbox, and ``configure_limits`` refuses every sandbox. The
Docker backend is the one to use for hostile submissions in production.
"""
import logging
import os
import shutil
import signal
import subprocess
import sys
import tempfile
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional

from codejudge.core.limits import ExecutionLimits
from codejudge.exceptions import InstanceError, LimitConfigurationError, StagingError
from codejudge.runtime.base import (
    BackendType,
    IsolationBackend,
    ProcessReport,
    RuntimeImage,
    SandboxHandle,
    STDIN_FILENAME,
)
from codejudge.runtime.cgroups import CgroupTree
from codejudge.runtime.process import kill_process_group, run_process

try:
    import resource
except ImportError:  # pragma: no cover - non-POSIX hosts
    resource = None

logger = logging.getLogger(__name__)

# limit name -> rlimit constant name
_RLIMITS = {
    "cpu_ms": "RLIMIT_CPU",
    "max_file_bytes": "RLIMIT_FSIZE",
}

# Held by the sandbox's leaf cgroup.
_CGROUP_LIMITS = ("memory_bytes", "max_processes")


def _rlimit_values(limits: ExecutionLimits) -> Dict[str, int]:
    return {
        "cpu_ms": limits.cpu_seconds,
        "max_file_bytes": limits.max_file_bytes,
    }


def _make_preexec(limits: ExecutionLimits, leaf: Optional[Path]) -> Callable[[], None]:
    values = _rlimit_values(limits)

    def _apply() -> None:
        # Join the leaf first so every later fork is accounted to it.
        if leaf is not None:
            CgroupTree.attach_self(leaf)
        # Soft CPU limit raises SIGXCPU, the hard limit one second later SIGKILLs.
        resource.setrlimit(resource.RLIMIT_CPU, (values["cpu_ms"], values["cpu_ms"] + 1))
        resource.setrlimit(resource.RLIMIT_FSIZE, (values["max_file_bytes"], values["max_file_bytes"]))
        resource.setrlimit(resource.RLIMIT_CORE, (0, 0))
        signal.signal(signal.SIGPIPE, signal.SIG_DFL)

    return _apply


class SubprocessBackend(IsolationBackend):
    """Run submissions as cgroup-contained host processes in throwaway directories."""

    backend_type = BackendType.SUBPROCESS

    def __init__(
        self,
        base_dir: Optional[str] = None,
        command_overrides: Optional[Dict[str, str]] = None,
        extra_env: Optional[Dict[str, str]] = None,
        cgroup_root: Optional[str] = None,
        cgroups: Optional[CgroupTree] = None,
    ):
        if resource is None:
            raise InstanceError("The subprocess backend requires a POSIX host.")
        self._base_dir = base_dir
        self._commands = {"python3": sys.executable, "python": sys.executable}
        self._commands.update(command_overrides or {})
        self._extra_env = dict(extra_env or {})
        self._cgroups = cgroups if cgroups is not None else CgroupTree.detect(cgroup_root)
        if self._cgroups is None:
            logger.warning(
                "Subprocess backend has no cgroup v2 subtree: memory and process ceilings "
                "cannot be enforced per sandbox, so every sandbox will be refused"
            )

    @property
    def cgroups(self) -> Optional[CgroupTree]:
        return self._cgroups

    def provision(self, image: RuntimeImage, limits: ExecutionLimits) -> SandboxHandle:
        sandbox_id = uuid.uuid4().hex[:12]
        self._check_toolchain(image)
        try:
            workdir = tempfile.mkdtemp(prefix=f"codejudge-{image.language}-{sandbox_id}-", dir=self._base_dir)
        except OSError as e:
            raise InstanceError(f"Failed to create work area: {e}", sandbox_id) from e
        logger.debug(f"Provisioned subprocess sandbox {sandbox_id} at {workdir}")
        return SandboxHandle(sandbox_id=sandbox_id, image=image, workdir=workdir)

    def _check_toolchain(self, image: RuntimeImage) -> None:
        for argv in (image.compile_argv("x"), image.run_argv("x")):
            if not argv:
                continue
            program = self._resolve(argv)[0]
            if os.sep in program:
                continue
            if shutil.which(program) is None:
                raise InstanceError(f"{image.language} toolchain not found on host: {program}")

    def configure_limits(self, sandbox: SandboxHandle, limits: ExecutionLimits) -> Dict[str, int]:
        applied: Dict[str, int] = {}
        missing: List[str] = []
        for name, value in _rlimit_values(limits).items():
            const = getattr(resource, _RLIMITS[name], None)
            if const is None:
                missing.append(name)
                continue
            _, hard = resource.getrlimit(const)
            if hard != resource.RLIM_INFINITY and value > hard:
                missing.append(name)
                continue
            applied[name] = getattr(limits, name)
        if missing:
            raise LimitConfigurationError(
                sandbox.sandbox_id, missing, cause="host hard limits are below the requested ceilings"
            )

        if self._cgroups is None:
            raise LimitConfigurationError(
                sandbox.sandbox_id, list(_CGROUP_LIMITS), cause="no cgroup v2 subtree to hold them per sandbox"
            )
        # Trial leaf: proves the kernel accepts these ceilings before the sandbox is READY.
        try:
            leaf = self._cgroups.create(
                f"{sandbox.sandbox_id}-limits-{uuid.uuid4().hex[:8]}", limits.memory_bytes, limits.max_processes,
            )
        except OSError as e:
            raise LimitConfigurationError(sandbox.sandbox_id, list(_CGROUP_LIMITS), cause=str(e)) from e
        self._cgroups.remove(leaf)
        for name in _CGROUP_LIMITS:
            applied[name] = getattr(limits, name)

        # Enforced by the process driver rather than the kernel.
        applied["wall_ms"] = limits.wall_ms
        applied["max_output_bytes"] = limits.max_output_bytes
        sandbox.limits = limits
        return applied

    def stage(self, sandbox: SandboxHandle, source_filename: str, source_code: str, stdin: str) -> None:
        try:
            with open(os.path.join(sandbox.workdir, source_filename), "w", encoding="utf-8") as f:
                f.write(source_code)
            with open(os.path.join(sandbox.workdir, STDIN_FILENAME), "w", encoding="utf-8") as f:
                f.write(stdin)
        except OSError as e:
            raise StagingError(sandbox.sandbox_id, str(e)) from e
        sandbox.source_file = source_filename

    def compile(self, sandbox: SandboxHandle, limits: ExecutionLimits) -> ProcessReport:
        argv = sandbox.image.compile_argv(sandbox.source_file)
        return self._execute(sandbox, argv, limits, stdin_path=None)

    def run(self, sandbox: SandboxHandle, limits: ExecutionLimits) -> ProcessReport:
        argv = sandbox.image.run_argv(sandbox.source_file)
        return self._execute(sandbox, argv, limits, stdin_path=os.path.join(sandbox.workdir, STDIN_FILENAME))

    def _resolve(self, argv: List[str]) -> List[str]:
        if argv and argv[0] in self._commands:
            return [self._commands[argv[0]]] + argv[1:]
        return argv

    def _env(self, sandbox: SandboxHandle) -> Dict[str, str]:
        env = {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": sandbox.workdir,
            "TMPDIR": sandbox.workdir,
            "LANG": "C.UTF-8",
            "PYTHONDONTWRITEBYTECODE": "1",
            "PYTHONUNBUFFERED": "1",
        }
        env.update(self._extra_env)
        return env

    def _create_leaf(self, sandbox: SandboxHandle, limits: ExecutionLimits) -> Optional[Path]:
        if self._cgroups is None:
            return None
        name = f"{sandbox.sandbox_id}-{uuid.uuid4().hex[:8]}"
        try:
            return self._cgroups.create(name, limits.memory_bytes, limits.max_processes)
        except OSError as e:
            raise InstanceError(f"Failed to create cgroup for command: {e}", sandbox.sandbox_id) from e

    def _execute(
        self,
        sandbox: SandboxHandle,
        argv: List[str],
        limits: ExecutionLimits,
        stdin_path: Optional[str],
    ) -> ProcessReport:
        if sandbox.killed:
            return ProcessReport(exit_code=None, killed=True)

        leaf = self._create_leaf(sandbox, limits)
        with sandbox.lock:
            sandbox.cgroup = leaf

        def _register(process) -> bool:
            with sandbox.lock:
                sandbox.active_process = process
                return not sandbox.killed

        try:
            report = run_process(
                self._resolve(argv),
                timeout_s=limits.wall_seconds,
                max_output_bytes=limits.max_output_bytes,
                cwd=sandbox.workdir,
                env=self._env(sandbox),
                stdin_path=stdin_path,
                preexec_fn=_make_preexec(limits, leaf),
                on_start=_register,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise InstanceError(f"Failed to start {argv[0]}: {e}", sandbox.sandbox_id) from e
        finally:
            with sandbox.lock:
                sandbox.active_process = None
                sandbox.cgroup = None
            usage = None
            if leaf is not None:
                # Anything still in the leaf escaped the process group; it dies here.
                self._cgroups.kill(leaf)
                usage = self._cgroups.usage(leaf)
                self._cgroups.remove(leaf)

        report.killed = sandbox.killed
        report.cpu_exceeded = report.signal == signal.SIGXCPU or (
            report.signal == signal.SIGKILL and report.cpu_time_ms >= limits.cpu_seconds * 1000
        )
        if usage is not None:
            report.oom_killed = usage.oom_kills > 0
            if usage.memory_peak_bytes:
                report.memory_peak_bytes = usage.memory_peak_bytes
            report.cpu_time_ms = max(report.cpu_time_ms, usage.cpu_time_ms)
        return report

    def kill(self, sandbox: SandboxHandle) -> None:
        with sandbox.lock:
            sandbox.killed = True
            process = sandbox.active_process
            leaf = sandbox.cgroup
        if process is not None:
            logger.info(f"Killing process tree of sandbox {sandbox.sandbox_id}")
            kill_process_group(process)
        if leaf is not None:
            self._cgroups.kill(leaf)

    def reset(self, sandbox: SandboxHandle) -> None:
        if sandbox.killed:
            raise InstanceError("Killed sandboxes cannot be reset", sandbox.sandbox_id)
        try:
            for entry in os.scandir(sandbox.workdir):
                if entry.is_dir(follow_symlinks=False):
                    shutil.rmtree(entry.path)
                else:
                    os.unlink(entry.path)
        except OSError as e:
            raise InstanceError(f"Failed to wipe work area: {e}", sandbox.sandbox_id) from e
        sandbox.source_file = None

    def destroy(self, sandbox: SandboxHandle) -> None:
        self.kill(sandbox)
        shutil.rmtree(sandbox.workdir, ignore_errors=True)
        logger.debug(f"Destroyed subprocess sandbox {sandbox.sandbox_id}")
