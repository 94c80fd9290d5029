"""
Unit tests for DockerBackend with the docker CLI mocked out.
"""
import subprocess
from unittest.mock import Mock, patch

import pytest

from codejudge.core.limits import ExecutionLimits
from codejudge.exceptions import InstanceError, LimitConfigurationError, StagingError
from codejudge.runtime.base import ProcessReport, SandboxHandle
from codejudge.runtime.docker import DockerBackend
from codejudge.runtime.registry import RuntimeRegistry


def _completed(stdout=b"", returncode=0, stderr=b""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def docker_run():
    with patch("codejudge.runtime.docker.subprocess.run") as run:
        run.return_value = _completed()
        yield run


@pytest.fixture
def backend(docker_run):
    backend = DockerBackend()
    docker_run.reset_mock()
    return backend


@pytest.fixture
def python_image():
    return RuntimeRegistry().resolve("python")


@pytest.fixture
def sandbox(python_image):
    return SandboxHandle(
        sandbox_id="abc123",
        image=python_image,
        workdir="/code",
        container="codejudge-python-abc123",
        source_file="main.py",
    )


def _argv(call):
    return call.args[0]


class TestAvailability:
    def test_docker_missing(self):
        with patch("codejudge.runtime.docker.subprocess.run", side_effect=FileNotFoundError("docker")):
            with pytest.raises(InstanceError):
                DockerBackend()

    def test_docker_daemon_down(self):
        error = subprocess.CalledProcessError(1, ["docker", "version"])
        with patch("codejudge.runtime.docker.subprocess.run", side_effect=error):
            with pytest.raises(InstanceError):
                DockerBackend()


class TestProvision:
    def test_hardened_container(self, backend, docker_run, python_image):
        limits = ExecutionLimits(max_file_bytes=1024)
        sandbox = backend.provision(python_image, limits)

        argv = _argv(docker_run.call_args)
        assert argv[:3] == ["docker", "run", "-d"]
        assert "--network=none" in argv
        assert "--cap-drop=ALL" in argv
        assert "--read-only" in argv
        assert any(a.startswith("--tmpfs=/code:") and "size=1024" in a for a in argv)
        assert f"codejudge.owner={backend.owner}" in argv
        assert argv[-3:] == ["python:3.11-slim", "sleep", "infinity"]
        assert sandbox.container.startswith("codejudge-python-")
        assert sandbox.workdir == "/code"

    def test_runs_as_configured_user(self, docker_run, python_image):
        backend = DockerBackend(user="65534")
        backend.provision(python_image, ExecutionLimits())
        argv = _argv(docker_run.call_args)
        assert argv[argv.index("--user") + 1] == "65534"

    def test_failed_run_removes_container(self, backend, docker_run, python_image):
        docker_run.side_effect = [
            subprocess.CalledProcessError(125, ["docker", "run"], stderr=b"no such image"),
            _completed(),
        ]

        with pytest.raises(InstanceError) as exc_info:
            backend.provision(python_image, ExecutionLimits())

        assert "no such image" in exc_info.value.message
        assert _argv(docker_run.call_args)[:3] == ["docker", "rm", "-f"]


class TestConfigureLimits:
    def test_applies_and_verifies(self, backend, docker_run, sandbox):
        limits = ExecutionLimits(memory_bytes=64 * 1024 * 1024, max_processes=16)
        docker_run.side_effect = [_completed(), _completed(stdout=f"{64 * 1024 * 1024} 16\n".encode())]

        applied = backend.configure_limits(sandbox, limits)

        update = _argv(docker_run.call_args_list[0])
        assert f"--memory={limits.memory_bytes}" in update
        assert f"--memory-swap={limits.memory_bytes}" in update
        assert "--pids-limit=16" in update
        assert applied == limits.to_dict()
        assert sandbox.limits == limits

    def test_unverified_ceiling_is_left_out(self, backend, docker_run, sandbox):
        limits = ExecutionLimits(max_processes=16)
        docker_run.side_effect = [_completed(), _completed(stdout=b"0 16\n")]

        applied = backend.configure_limits(sandbox, limits)

        assert "memory_bytes" not in applied
        assert applied["max_processes"] == 16

    def test_update_failure(self, backend, docker_run, sandbox):
        docker_run.side_effect = subprocess.CalledProcessError(
            1, ["docker", "update"], stderr=b"cgroup v1 memory controller missing"
        )

        with pytest.raises(LimitConfigurationError) as exc_info:
            backend.configure_limits(sandbox, ExecutionLimits())

        assert "memory controller" in exc_info.value.message


class TestStage:
    def test_writes_source_and_stdin(self, backend, docker_run, sandbox):
        backend.stage(sandbox, "main.py", "print(1)", "5\n")

        first, second = docker_run.call_args_list
        assert _argv(first)[-1] == "cat > /code/main.py"
        assert first.kwargs["input"] == b"print(1)"
        assert _argv(second)[-1] == "cat > /code/.stdin"
        assert second.kwargs["input"] == b"5\n"

    def test_failure(self, backend, docker_run, sandbox):
        docker_run.side_effect = subprocess.CalledProcessError(1, ["docker", "exec"], stderr=b"no space left")
        with pytest.raises(StagingError):
            backend.stage(sandbox, "main.py", "print(1)", "")


class TestExecute:
    def _control_results(self, oom_before=0, oom_after=0, cpu_before_ms=0, cpu_after_ms=10, peak="1048576"):
        def counters(oom, cpu_ms):
            return _completed(stdout=f"oom 0\noom_kill {oom}\nusage_usec {cpu_ms * 1000}\nuser_usec 0\n".encode())

        outputs = iter([
            counters(oom_before, cpu_before_ms),
            counters(oom_after, cpu_after_ms),
            _completed(stdout=f"{peak}\n".encode()),
        ])
        return lambda *args, **kwargs: next(outputs)

    def test_run_command(self, backend, docker_run, sandbox):
        docker_run.side_effect = self._control_results()
        with patch("codejudge.runtime.docker.run_process", return_value=ProcessReport(exit_code=0)) as run:
            report = backend.run(sandbox, ExecutionLimits(cpu_ms=1500, wall_ms=3000))

        argv = run.call_args.args[0]
        assert argv[:3] == ["docker", "exec", sandbox.container]
        assert argv[-1] == "ulimit -S -t 2; ulimit -H -t 3; exec python3 main.py < /code/.stdin"
        assert run.call_args.kwargs["timeout_s"] == 3.0
        assert report.memory_peak_bytes == 1048576
        assert report.cpu_time_ms == 10
        assert not report.oom_killed
        assert not report.cpu_exceeded

    def test_counters_read_in_one_exec(self, backend, docker_run, sandbox):
        docker_run.side_effect = self._control_results()
        with patch("codejudge.runtime.docker.run_process", return_value=ProcessReport(exit_code=0)):
            backend.run(sandbox, ExecutionLimits())

        first = _argv(docker_run.call_args_list[0])
        assert first[-2:] == ["/sys/fs/cgroup/memory.events", "/sys/fs/cgroup/cpu.stat"]

    def test_oom_kill_detected_from_cgroup(self, backend, docker_run, sandbox):
        docker_run.side_effect = self._control_results(oom_before=0, oom_after=1)
        with patch("codejudge.runtime.docker.run_process", return_value=ProcessReport(exit_code=137)):
            report = backend.run(sandbox, ExecutionLimits())
        assert report.oom_killed
        assert not report.cpu_exceeded

    def test_sigxcpu_is_cpu_limit(self, backend, docker_run, sandbox):
        docker_run.side_effect = self._control_results(cpu_after_ms=2100)
        with patch("codejudge.runtime.docker.run_process", return_value=ProcessReport(exit_code=152)):
            report = backend.run(sandbox, ExecutionLimits(cpu_ms=2000))
        assert report.cpu_exceeded
        assert not report.oom_killed

    def test_sigkill_with_cpu_budget_spent_is_cpu_limit(self, backend, docker_run, sandbox):
        docker_run.side_effect = self._control_results(cpu_before_ms=50, cpu_after_ms=3100)
        with patch("codejudge.runtime.docker.run_process", return_value=ProcessReport(exit_code=137)):
            report = backend.run(sandbox, ExecutionLimits(cpu_ms=2000))

        assert report.cpu_exceeded
        assert not report.oom_killed

    def test_sigkill_without_oom_or_cpu_is_neither(self, backend, docker_run, sandbox):
        docker_run.side_effect = self._control_results(cpu_after_ms=20)
        with patch("codejudge.runtime.docker.run_process", return_value=ProcessReport(exit_code=137)):
            report = backend.run(sandbox, ExecutionLimits(cpu_ms=2000))

        assert not report.cpu_exceeded
        assert not report.oom_killed

    def test_memory_text_on_stderr_is_not_oom(self, backend, docker_run, sandbox):
        docker_run.side_effect = self._control_results()
        written = ProcessReport(exit_code=1, stderr=b"out of memory\n")
        with patch("codejudge.runtime.docker.run_process", return_value=written):
            report = backend.run(sandbox, ExecutionLimits())
        assert not report.oom_killed

    def test_cgroup_v1_counters(self, backend, docker_run, sandbox):
        def v1_counters(oom, cpu_ns):
            return _completed(stdout=f"oom_kill_disable 0\nunder_oom 0\noom_kill {oom}\n{cpu_ns}\n".encode())

        docker_run.side_effect = [
            _completed(returncode=1),
            v1_counters(0, 40_000_000),
            _completed(returncode=1),
            v1_counters(1, 90_000_000),
            _completed(returncode=1),
            _completed(stdout=b"134217728\n"),
        ]
        with patch("codejudge.runtime.docker.run_process", return_value=ProcessReport(exit_code=137)):
            report = backend.run(sandbox, ExecutionLimits(cpu_ms=2000))

        assert report.oom_killed
        assert not report.cpu_exceeded
        assert report.cpu_time_ms == 50
        assert report.memory_peak_bytes == 128 * 1024 * 1024
        assert _argv(docker_run.call_args_list[1])[-2:] == [
            "/sys/fs/cgroup/memory/memory.oom_control", "/sys/fs/cgroup/cpuacct/cpuacct.usage",
        ]

    def test_fallback_without_cgroup(self, backend, docker_run, sandbox):
        docker_run.return_value = _completed(returncode=1)
        with patch("codejudge.runtime.docker.run_process", return_value=ProcessReport(exit_code=137)):
            report = backend.run(sandbox, ExecutionLimits())
        assert report.oom_killed
        assert not report.cpu_exceeded

        with patch("codejudge.runtime.docker.run_process", return_value=ProcessReport(exit_code=152)):
            report = backend.run(sandbox, ExecutionLimits())
        assert report.cpu_exceeded
        assert not report.oom_killed

        crashed = ProcessReport(exit_code=1, stderr=b"MemoryError\n")
        with patch("codejudge.runtime.docker.run_process", return_value=crashed):
            report = backend.run(sandbox, ExecutionLimits())
        assert not report.oom_killed

    def test_timeout_kills_container(self, backend, docker_run, sandbox):
        docker_run.return_value = _completed()
        timed_out = ProcessReport(exit_code=137, timed_out=True)
        with patch("codejudge.runtime.docker.run_process", return_value=timed_out):
            report = backend.run(sandbox, ExecutionLimits())

        assert report.timed_out
        assert not report.killed
        assert sandbox.killed
        assert ["docker", "kill", sandbox.container] in [_argv(c) for c in docker_run.call_args_list]

    def test_killed_sandbox_does_not_run(self, backend, sandbox):
        sandbox.killed = True
        with patch("codejudge.runtime.docker.run_process") as run:
            report = backend.run(sandbox, ExecutionLimits())
        run.assert_not_called()
        assert report.killed


class TestLifecycle:
    def test_reset_wipes_workdir(self, backend, docker_run, sandbox):
        backend.reset(sandbox)
        scripts = [_argv(c)[-1] for c in docker_run.call_args_list]
        assert scripts[0] == "kill -9 -1"
        assert scripts[1].startswith("rm -rf /code/*")
        assert sandbox.source_file is None

    def test_reset_killed_sandbox_refused(self, backend, sandbox):
        sandbox.killed = True
        with pytest.raises(InstanceError):
            backend.reset(sandbox)

    def test_reset_failure(self, backend, docker_run, sandbox):
        docker_run.side_effect = [_completed(), _completed(returncode=1, stderr=b"busy")]
        with pytest.raises(InstanceError):
            backend.reset(sandbox)

    def test_kill_terminates_active_client(self, backend, docker_run, sandbox):
        process = Mock(pid=4321)
        sandbox.active_process = process
        with patch("codejudge.runtime.docker.kill_process_group") as killpg:
            backend.kill(sandbox)

        killpg.assert_called_once_with(process)
        assert _argv(docker_run.call_args) == ["docker", "kill", sandbox.container]
        assert sandbox.killed

    def test_destroy(self, backend, docker_run, sandbox):
        backend.destroy(sandbox)
        assert _argv(docker_run.call_args) == ["docker", "rm", "-f", sandbox.container]

    def test_destroy_failure(self, backend, docker_run, sandbox):
        docker_run.side_effect = subprocess.CalledProcessError(1, ["docker", "rm"], stderr=b"daemon gone")
        with pytest.raises(InstanceError):
            backend.destroy(sandbox)

    def test_shutdown_removes_own_leftovers(self, docker_run):
        backend = DockerBackend(owner="judge-a")
        docker_run.side_effect = [_completed(stdout=b"c1\nc2\n"), _completed()]

        backend.shutdown()

        ps, rm = docker_run.call_args_list[-2:]
        assert "label=codejudge.sandbox=1" in _argv(ps)
        assert "label=codejudge.owner=judge-a" in _argv(ps)
        assert _argv(rm) == ["docker", "rm", "-f", "c1", "c2"]

    def test_owners_are_distinct_by_default(self, docker_run):
        assert DockerBackend().owner != DockerBackend().owner
