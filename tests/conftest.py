"""
Shared test fixtures for codejudge tests.

``FakeBackend`` is an in-memory isolation backend. The staged source code is
read as a tiny script that decides what the "process" reports:

    hello            prints "hello world"
    echo             copies stdin to stdout
    exit N           exits with code N
    loop             runs until the wall deadline (or a kill)
    hang             never reports until killed
    oom              killed by the memory ceiling
    cpu              killed by the CPU ceiling
    spam / spam-fail floods stdout past the output cap (exit 0 / exit 1)
    sleep S          sleeps S seconds, then prints "done"
    compile-error    (compile phase) fails to compile
    compile-loop     (compile phase) exceeds the compile deadline
"""
import threading
import time
import uuid
from typing import Dict, List, Optional, Tuple

import pytest

from codejudge.core.limits import ExecutionLimits
from codejudge.core.pool.pool import InstancePool
from codejudge.core.execution.result import ResultAggregator
from codejudge.exceptions import InstanceError, StagingError
from codejudge.runtime.base import (
    BackendType,
    IsolationBackend,
    ProcessReport,
    RuntimeImage,
    SandboxHandle,
)
from codejudge.runtime.registry import RuntimeRegistry


class FakeBackend(IsolationBackend):
    backend_type = BackendType.SUBPROCESS

    def __init__(self):
        self._lock = threading.Lock()
        self.provisioned: List[str] = []
        self.destroyed: List[str] = []
        self.resets: List[str] = []
        self.kills: List[str] = []
        self.compiled: List[str] = []
        self.ran: List[str] = []
        self.staged: Dict[str, Tuple[str, str, str]] = {}
        self.fail_provision = 0
        self.fail_stage = 0
        self.fail_reset = False
        self.drop_limits: Tuple[str, ...] = ()
        self.active = 0
        self.max_active = 0
        self.shutdown_called = False
        self._kill_events: Dict[str, threading.Event] = {}
        self.running = threading.Event()

    def provision(self, image: RuntimeImage, limits: ExecutionLimits) -> SandboxHandle:
        with self._lock:
            if self.fail_provision > 0:
                self.fail_provision -= 1
                raise InstanceError("fake provisioning failure")
            sandbox_id = uuid.uuid4().hex[:12]
            self.provisioned.append(sandbox_id)
            self._kill_events[sandbox_id] = threading.Event()
        return SandboxHandle(sandbox_id=sandbox_id, image=image, workdir=f"/fake/{sandbox_id}")

    def configure_limits(self, sandbox: SandboxHandle, limits: ExecutionLimits) -> Dict[str, int]:
        applied = {k: v for k, v in limits.to_dict().items() if k not in self.drop_limits}
        sandbox.limits = limits
        return applied

    def stage(self, sandbox: SandboxHandle, source_filename: str, source_code: str, stdin: str) -> None:
        with self._lock:
            if self.fail_stage > 0:
                self.fail_stage -= 1
                raise StagingError(sandbox.sandbox_id, "fake staging failure")
            self.staged[sandbox.sandbox_id] = (source_filename, source_code, stdin)
        sandbox.source_file = source_filename

    def compile(self, sandbox: SandboxHandle, limits: ExecutionLimits) -> ProcessReport:
        with self._lock:
            self.compiled.append(sandbox.sandbox_id)
        _, source, _ = self.staged[sandbox.sandbox_id]
        if sandbox.killed:
            return ProcessReport(exit_code=None, killed=True)
        if "compile-error" in source:
            return ProcessReport(exit_code=1, stderr=b"main.cpp:1: error: expected ';'\n", duration_ms=5)
        if "compile-loop" in source:
            return ProcessReport(exit_code=137, timed_out=True, duration_ms=limits.wall_ms)
        return ProcessReport(exit_code=0, duration_ms=5)

    def run(self, sandbox: SandboxHandle, limits: ExecutionLimits) -> ProcessReport:
        with self._lock:
            self.ran.append(sandbox.sandbox_id)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            return self._script(sandbox, limits)
        finally:
            with self._lock:
                self.active -= 1

    def _script(self, sandbox: SandboxHandle, limits: ExecutionLimits) -> ProcessReport:
        _, source, stdin = self.staged[sandbox.sandbox_id]
        killed = self._kill_events[sandbox.sandbox_id]
        if sandbox.killed:
            return ProcessReport(exit_code=None, killed=True)
        self.running.set()
        command, _, arg = source.strip().partition(" ")

        if command == "hello":
            return ProcessReport(exit_code=0, stdout=b"hello world\n", duration_ms=3)
        if command == "echo":
            return ProcessReport(exit_code=0, stdout=stdin.encode(), duration_ms=3)
        if command == "exit":
            return ProcessReport(exit_code=int(arg), stderr=b"boom\n", duration_ms=3)
        if command == "loop":
            start = time.monotonic()
            if killed.wait(limits.wall_seconds):
                return ProcessReport(exit_code=137, killed=True, signal=9)
            return ProcessReport(
                exit_code=137, timed_out=True, signal=9,
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        if command == "hang":
            killed.wait()
            return ProcessReport(exit_code=137, killed=True, signal=9)
        if command == "oom":
            return ProcessReport(exit_code=137, oom_killed=True, stderr=b"Killed\n", memory_peak_bytes=limits.memory_bytes)
        if command == "cpu":
            return ProcessReport(exit_code=152, cpu_exceeded=True, signal=24)
        if command in ("spam", "spam-fail"):
            return ProcessReport(
                exit_code=0 if command == "spam" else 1,
                stdout=b"x" * limits.max_output_bytes,
                stdout_truncated=True,
            )
        if command == "sleep":
            if killed.wait(float(arg)):
                return ProcessReport(exit_code=137, killed=True, signal=9)
            return ProcessReport(exit_code=0, stdout=b"done\n", duration_ms=int(float(arg) * 1000))
        return ProcessReport(exit_code=0, duration_ms=1)

    def kill(self, sandbox: SandboxHandle) -> None:
        with sandbox.lock:
            sandbox.killed = True
        with self._lock:
            self.kills.append(sandbox.sandbox_id)
        self._kill_events[sandbox.sandbox_id].set()

    def reset(self, sandbox: SandboxHandle) -> None:
        if self.fail_reset:
            raise InstanceError("fake reset failure", sandbox.sandbox_id)
        with self._lock:
            self.resets.append(sandbox.sandbox_id)
            self.staged.pop(sandbox.sandbox_id, None)

    def destroy(self, sandbox: SandboxHandle) -> None:
        with self._lock:
            self.destroyed.append(sandbox.sandbox_id)
        self._kill_events[sandbox.sandbox_id].set()

    def shutdown(self) -> None:
        self.shutdown_called = True


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def registry():
    return RuntimeRegistry()


@pytest.fixture
def make_pool(fake_backend, registry):
    pools = []

    def _make(max_instances: int = 2, acquire_timeout: float = 1.0, reuse_instances: bool = True) -> InstancePool:
        pool = InstancePool(
            fake_backend,
            registry=registry,
            max_instances=max_instances,
            acquire_timeout=acquire_timeout,
            reuse_instances=reuse_instances,
        )
        pools.append(pool)
        return pool

    yield _make
    for pool in pools:
        pool.shutdown(timeout=5)


@pytest.fixture
def pool(make_pool):
    return make_pool()


@pytest.fixture
def aggregator():
    return ResultAggregator()


@pytest.fixture
def small_limits():
    return ExecutionLimits(wall_ms=500, cpu_ms=500, max_output_bytes=1024)


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def waiter():
    return wait_for
