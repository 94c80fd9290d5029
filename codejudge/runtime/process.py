"""
Host process driver shared by the isolation backends.

Runs one command in its own session, captures stdout/stderr incrementally with
per-stream byte caps, enforces a wall-clock deadline by killing the whole
process group, and reports resource usage from ``wait4``.
"""
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from typing import Callable, Dict, IO, List, Optional

from codejudge.runtime.base import ProcessReport

logger = logging.getLogger(__name__)

READ_CHUNK = 65536
DRAIN_TIMEOUT = 1.0  # seconds to wait for pipes after the process is gone


class _StreamCollector(threading.Thread):
    """Reads a pipe to EOF, keeping at most ``limit`` bytes.

    Bytes past the cap are read and discarded so a chatty process never
    blocks on a full pipe.
    """

    def __init__(self, stream: IO[bytes], limit: int, name: str):
        super().__init__(name=name, daemon=True)
        self._stream = stream
        self._limit = limit
        self._chunks: List[bytes] = []
        self._size = 0
        self.truncated = False

    def run(self) -> None:
        fd = self._stream.fileno()
        while True:
            try:
                chunk = os.read(fd, READ_CHUNK)
            except OSError:
                break
            if not chunk:
                break
            room = self._limit - self._size
            if room <= 0:
                self.truncated = True
                continue
            if len(chunk) > room:
                chunk = chunk[:room]
                self.truncated = True
            self._chunks.append(chunk)
            self._size += len(chunk)

    @property
    def data(self) -> bytes:
        return b"".join(self._chunks)


def kill_process_group(process: Optional[subprocess.Popen]) -> None:
    """SIGKILL the session started for ``process``, ignoring already-dead groups."""
    if process is None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    except AttributeError:
        # No process groups on this platform.
        try:
            process.kill()
        except OSError:
            pass


def _maxrss_bytes(ru_maxrss: int) -> int:
    # Linux reports kilobytes, macOS bytes.
    return ru_maxrss if sys.platform == "darwin" else ru_maxrss * 1024


def run_process(
    argv: List[str],
    *,
    timeout_s: float,
    max_output_bytes: int,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    stdin_path: Optional[str] = None,
    preexec_fn: Optional[Callable[[], None]] = None,
    on_start: Optional[Callable[[subprocess.Popen], bool]] = None,
) -> ProcessReport:
    """Run ``argv`` to completion or until ``timeout_s`` elapses.

    Args:
        argv: Command and arguments.
        timeout_s: Wall-clock deadline; the process group is killed when it passes.
        max_output_bytes: Cap applied separately to stdout and stderr.
        cwd: Working directory.
        env: Environment for the child.
        stdin_path: File fed to the child's stdin; ``/dev/null`` when omitted.
        preexec_fn: Run in the child before exec (used to apply rlimits).
        on_start: Called with the started process; returning False kills it
            immediately (the sandbox was killed while the command was starting).

    Returns:
        ProcessReport describing exit status, captured output and usage.

    Raises:
        OSError: If the command cannot be started.
    """
    stdin_file = open(stdin_path, "rb") if stdin_path else subprocess.DEVNULL
    try:
        start = time.monotonic()
        process = subprocess.Popen(
            argv,
            cwd=cwd,
            env=env,
            stdin=stdin_file,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            preexec_fn=preexec_fn,
            start_new_session=True,
        )
    finally:
        if stdin_path:
            stdin_file.close()

    logger.debug(f"Started pid={process.pid}: {argv}")
    stdout_collector = _StreamCollector(process.stdout, max_output_bytes, f"stdout-{process.pid}")
    stderr_collector = _StreamCollector(process.stderr, max_output_bytes, f"stderr-{process.pid}")
    stdout_collector.start()
    stderr_collector.start()

    wait_result: Dict[str, object] = {}

    def _wait() -> None:
        if hasattr(os, "wait4"):
            _, status, rusage = os.wait4(process.pid, 0)
            process.returncode = os.waitstatus_to_exitcode(status)
            wait_result["rusage"] = rusage
        else:
            process.wait()

    waiter = threading.Thread(target=_wait, name=f"wait-{process.pid}", daemon=True)
    waiter.start()

    if on_start is not None and not on_start(process):
        kill_process_group(process)

    timed_out = False
    waiter.join(timeout_s)
    if waiter.is_alive():
        timed_out = True
        logger.debug(f"pid={process.pid} exceeded wall deadline of {timeout_s:.3f}s, killing")
        kill_process_group(process)
        waiter.join()
    duration_ms = int((time.monotonic() - start) * 1000)

    # Reap anything the command left behind in its process group.
    kill_process_group(process)
    stdout_collector.join(DRAIN_TIMEOUT)
    stderr_collector.join(DRAIN_TIMEOUT)
    for stream in (process.stdout, process.stderr):
        try:
            stream.close()
        except OSError:
            pass

    returncode = process.returncode
    sig = None
    exit_code = returncode
    if returncode is not None and returncode < 0:
        sig = -returncode
        exit_code = 128 + sig

    cpu_time_ms = 0
    memory_peak = 0
    rusage = wait_result.get("rusage")
    if rusage is not None:
        cpu_time_ms = int((rusage.ru_utime + rusage.ru_stime) * 1000)
        memory_peak = _maxrss_bytes(rusage.ru_maxrss)

    return ProcessReport(
        exit_code=exit_code,
        stdout=stdout_collector.data,
        stderr=stderr_collector.data,
        duration_ms=duration_ms,
        stdout_truncated=stdout_collector.truncated,
        stderr_truncated=stderr_collector.truncated,
        timed_out=timed_out,
        signal=sig,
        cpu_time_ms=cpu_time_ms,
        memory_peak_bytes=memory_peak,
    )
