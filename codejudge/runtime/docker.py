"""
Docker-based isolation backend.

Provides the strongest isolation: each sandbox is one long-lived container with
no network, no capabilities, a read-only root filesystem and a size-capped tmpfs
work area. Memory, swap, process-count and CPU-share ceilings are applied with
``docker update`` before any user code runs; the CPU-time ceiling is applied
with ``ulimit -t`` around every command, the soft limit one second below the
hard one so an exhausted budget shows up as SIGXCPU. Limits fire inside the
container's cgroup and the backend reads the cgroup counters back to tell the
orchestrator which one fired.
"""
import logging
import shlex
import subprocess
import uuid
from typing import Dict, List, Optional

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
from codejudge.runtime.process import kill_process_group, run_process

logger = logging.getLogger(__name__)

WORKDIR = "/code"
CONTROL_TIMEOUT = 30  # seconds for docker CLI control commands
SIGKILL_EXIT_CODE = 128 + 9
SIGXCPU_EXIT_CODE = 128 + 24
SANDBOX_LABEL = "codejudge.sandbox"
OWNER_LABEL = "codejudge.owner"


def _parse_keyed(text: str) -> Dict[str, int]:
    counters: Dict[str, int] = {}
    for line in text.splitlines():
        key, _, value = line.partition(" ")
        if value.strip().isdigit():
            counters[key] = int(value)
    return counters


class DockerBackend(IsolationBackend):
    """Run submissions inside hardened per-job containers."""

    backend_type = BackendType.DOCKER

    def __init__(
        self,
        docker_binary: str = "docker",
        cpus: float = 1.0,
        tmp_size_mb: int = 16,
        user: Optional[str] = None,
        name_prefix: str = "codejudge",
        owner: Optional[str] = None,
    ):
        self._docker = docker_binary
        self._cpus = cpus
        self._tmp_size_mb = tmp_size_mb
        self._user = user
        self._name_prefix = name_prefix
        # Containers are labelled with this owner so shutdown only sweeps its own.
        self._owner = owner or uuid.uuid4().hex[:12]
        self._check_docker()

    @property
    def owner(self) -> str:
        return self._owner

    def _check_docker(self) -> None:
        """Verify Docker is available and working."""
        try:
            subprocess.run([self._docker, "version"], capture_output=True, check=True, timeout=10)
        except (subprocess.SubprocessError, FileNotFoundError):
            raise InstanceError("Docker is not available.")

    def _control(self, *args: str, input_data: Optional[bytes] = None, check: bool = True) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self._docker, *args],
            input=input_data,
            capture_output=True,
            timeout=CONTROL_TIMEOUT,
            check=check,
        )

    def provision(self, image: RuntimeImage, limits: ExecutionLimits) -> SandboxHandle:
        sandbox_id = uuid.uuid4().hex[:12]
        name = f"{self._name_prefix}-{image.language}-{sandbox_id}"
        cmd = [
            "run", "-d", "--name", name,
            "--network=none",
            "--cap-drop=ALL",
            "--security-opt=no-new-privileges",
            "--read-only",
            f"--tmpfs={WORKDIR}:rw,exec,nosuid,size={limits.max_file_bytes}",
            f"--tmpfs=/tmp:rw,nosuid,size={self._tmp_size_mb}m",
            f"--workdir={WORKDIR}",
            "--label", f"{SANDBOX_LABEL}=1",
            "--label", f"{OWNER_LABEL}={self._owner}",
        ]
        if self._user:
            cmd.extend(["--user", self._user])
        cmd.extend([image.docker_image, "sleep", "infinity"])
        try:
            self._control(*cmd)
        except (subprocess.SubprocessError, OSError) as e:
            stderr = getattr(e, "stderr", b"") or b""
            # A failed run can still leave a created container behind.
            self._control("rm", "-f", name, check=False)
            raise InstanceError(
                f"Failed to start container from {image.docker_image}: {stderr.decode(errors='replace') or e}",
                sandbox_id,
            ) from e
        logger.debug(f"Provisioned container {name}")
        return SandboxHandle(sandbox_id=sandbox_id, image=image, workdir=WORKDIR, container=name)

    def configure_limits(self, sandbox: SandboxHandle, limits: ExecutionLimits) -> Dict[str, int]:
        try:
            self._control(
                "update",
                f"--memory={limits.memory_bytes}",
                f"--memory-swap={limits.memory_bytes}",
                f"--pids-limit={limits.max_processes}",
                f"--cpus={self._cpus}",
                sandbox.container,
            )
            inspected = self._control(
                "inspect", "--format", "{{.HostConfig.Memory}} {{.HostConfig.PidsLimit}}", sandbox.container,
            )
        except (subprocess.SubprocessError, OSError) as e:
            stderr = getattr(e, "stderr", b"") or b""
            raise LimitConfigurationError(
                sandbox.sandbox_id, cause=stderr.decode(errors="replace") or str(e)
            ) from e

        applied: Dict[str, int] = {}
        parts = inspected.stdout.decode().split()
        if len(parts) == 2:
            memory, pids = parts
            if memory.isdigit() and int(memory) == limits.memory_bytes:
                applied["memory_bytes"] = limits.memory_bytes
            if pids.lstrip("-").isdigit() and int(pids) == limits.max_processes:
                applied["max_processes"] = limits.max_processes
        # Enforced per command (ulimit, deadline, capture) and by the tmpfs size.
        applied["cpu_ms"] = limits.cpu_ms
        applied["wall_ms"] = limits.wall_ms
        applied["max_output_bytes"] = limits.max_output_bytes
        applied["max_file_bytes"] = limits.max_file_bytes
        sandbox.limits = limits
        return applied

    def stage(self, sandbox: SandboxHandle, source_filename: str, source_code: str, stdin: str) -> None:
        for filename, content in ((source_filename, source_code), (STDIN_FILENAME, stdin)):
            target = shlex.quote(f"{WORKDIR}/{filename}")
            try:
                self._control(
                    "exec", "-i", sandbox.container, "sh", "-c", f"cat > {target}",
                    input_data=content.encode("utf-8"),
                )
            except (subprocess.SubprocessError, OSError) as e:
                stderr = getattr(e, "stderr", b"") or b""
                raise StagingError(sandbox.sandbox_id, stderr.decode(errors="replace") or str(e)) from e
        sandbox.source_file = source_filename

    def compile(self, sandbox: SandboxHandle, limits: ExecutionLimits) -> ProcessReport:
        argv = sandbox.image.compile_argv(sandbox.source_file)
        return self._execute(sandbox, argv, limits, with_stdin=False)

    def run(self, sandbox: SandboxHandle, limits: ExecutionLimits) -> ProcessReport:
        argv = sandbox.image.run_argv(sandbox.source_file)
        return self._execute(sandbox, argv, limits, with_stdin=True)

    def _exec_argv(self, sandbox: SandboxHandle, argv: List[str], limits: ExecutionLimits, with_stdin: bool) -> List[str]:
        command = " ".join(shlex.quote(part) for part in argv)
        redirect = f" < {shlex.quote(WORKDIR + '/' + STDIN_FILENAME)}" if with_stdin else " < /dev/null"
        # Soft limit below the hard one, so the kernel sends SIGXCPU before SIGKILL.
        cpu = limits.cpu_seconds
        script = f"ulimit -S -t {cpu}; ulimit -H -t {cpu + 1}; exec {command}{redirect}"
        return [self._docker, "exec", sandbox.container, "sh", "-c", script]

    def _read_cgroup(self, sandbox: SandboxHandle, *filenames: str) -> Optional[str]:
        paths = [f"/sys/fs/cgroup/{name}" for name in filenames]
        try:
            result = self._control("exec", sandbox.container, "cat", *paths, check=False)
        except (subprocess.SubprocessError, OSError):
            return None
        if result.returncode != 0:
            return None
        return result.stdout.decode(errors="replace")

    def _counters(self, sandbox: SandboxHandle) -> Optional[Dict[str, int]]:
        """``oom_kill`` and ``usage_usec`` of the container cgroup, None when unreadable.

        cgroup v2 files are tried first, then the v1 memory and cpuacct controllers.
        """
        text = self._read_cgroup(sandbox, "memory.events", "cpu.stat")
        if text is not None:
            counters = _parse_keyed(text)
        else:
            text = self._read_cgroup(sandbox, "memory/memory.oom_control", "cpuacct/cpuacct.usage")
            if text is None:
                return None
            counters = _parse_keyed(text)
            # cpuacct.usage is a bare nanosecond count on the last line.
            last = text.strip().splitlines()[-1].strip() if text.strip() else ""
            if last.isdigit():
                counters["usage_usec"] = int(last) // 1000
        if "oom_kill" not in counters or "usage_usec" not in counters:
            return None
        return counters

    def _execute(self, sandbox: SandboxHandle, argv: List[str], limits: ExecutionLimits, with_stdin: bool) -> ProcessReport:
        if sandbox.killed:
            return ProcessReport(exit_code=None, killed=True)

        def _register(process) -> bool:
            with sandbox.lock:
                sandbox.active_process = process
                return not sandbox.killed

        before = self._counters(sandbox)
        try:
            report = run_process(
                self._exec_argv(sandbox, argv, limits, with_stdin),
                timeout_s=limits.wall_seconds,
                max_output_bytes=limits.max_output_bytes,
                on_start=_register,
            )
        except OSError as e:
            raise InstanceError(f"Failed to exec in {sandbox.container}: {e}", sandbox.sandbox_id) from e
        finally:
            with sandbox.lock:
                sandbox.active_process = None

        if report.timed_out:
            # Killing the docker client does not stop the process inside the container.
            self.kill(sandbox)
            report.killed = False
        else:
            report.killed = sandbox.killed
        if sandbox.killed:
            return report

        after = self._counters(sandbox)
        if before is not None and after is not None:
            report.oom_killed = after["oom_kill"] > before["oom_kill"]
            report.cpu_time_ms = (after["usage_usec"] - before["usage_usec"]) // 1000
            report.cpu_exceeded = report.exit_code == SIGXCPU_EXIT_CODE or (
                report.exit_code == SIGKILL_EXIT_CODE
                and not report.oom_killed
                and report.cpu_time_ms >= limits.cpu_seconds * 1000
            )
        else:
            # SIGXCPU always precedes the hard CPU kill, so a bare SIGKILL is the memory ceiling.
            report.cpu_exceeded = report.exit_code == SIGXCPU_EXIT_CODE
            report.oom_killed = report.exit_code == SIGKILL_EXIT_CODE
        peak = self._read_cgroup(sandbox, "memory.peak")
        if peak is None:
            peak = self._read_cgroup(sandbox, "memory/memory.max_usage_in_bytes")
        if peak and peak.strip().isdigit():
            report.memory_peak_bytes = int(peak.strip())
        return report

    def kill(self, sandbox: SandboxHandle) -> None:
        with sandbox.lock:
            sandbox.killed = True
            process = sandbox.active_process
        logger.info(f"Killing container {sandbox.container}")
        self._control("kill", sandbox.container, check=False)
        kill_process_group(process)

    def reset(self, sandbox: SandboxHandle) -> None:
        if sandbox.killed:
            raise InstanceError("Killed sandboxes cannot be reset", sandbox.sandbox_id)
        # PID 1 ignores signals from inside its namespace, so this only reaps strays.
        self._control("exec", sandbox.container, "sh", "-c", "kill -9 -1", check=False)
        result = self._control(
            "exec", sandbox.container, "sh", "-c", f"rm -rf {WORKDIR}/* {WORKDIR}/.[!.]* /tmp/*", check=False,
        )
        if result.returncode != 0:
            raise InstanceError(
                f"Failed to wipe work area: {result.stderr.decode(errors='replace')}", sandbox.sandbox_id
            )
        sandbox.source_file = None

    def destroy(self, sandbox: SandboxHandle) -> None:
        with sandbox.lock:
            sandbox.killed = True
            process = sandbox.active_process
        kill_process_group(process)
        try:
            self._control("rm", "-f", sandbox.container)
        except (subprocess.SubprocessError, OSError) as e:
            stderr = getattr(e, "stderr", b"") or b""
            raise InstanceError(
                f"Failed to remove container {sandbox.container}: {stderr.decode(errors='replace') or e}",
                sandbox.sandbox_id,
            ) from e
        logger.debug(f"Destroyed container {sandbox.container}")

    def shutdown(self) -> None:
        """Remove any sandbox containers this backend's owner left behind."""
        result = self._control(
            "ps", "-aq",
            "--filter", f"label={SANDBOX_LABEL}=1",
            "--filter", f"label={OWNER_LABEL}={self._owner}",
            check=False,
        )
        leftovers = result.stdout.decode().split()
        if leftovers:
            logger.warning(f"Removing {len(leftovers)} leftover sandbox containers")
            self._control("rm", "-f", *leftovers, check=False)
