"""
Execution results, the closed outcome vocabulary, and the result aggregator.
"""
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from codejudge.observability.metrics import record_job_finished
from codejudge.runtime.base import ProcessReport

logger = logging.getLogger(__name__)

DELIVERED_HISTORY = 10000


class Outcome(str, Enum):
    SUCCESS = "success"
    COMPILE_ERROR = "compile_error"
    RUNTIME_ERROR = "runtime_error"
    TIMEOUT = "timeout"
    MEMORY_EXCEEDED = "memory_exceeded"
    OUTPUT_TRUNCATED = "output_truncated"
    INTERNAL_ERROR = "internal_error"
    OVERLOADED = "overloaded"
    CANCELLED = "cancelled"

    @property
    def is_user_outcome(self) -> bool:
        """True when the outcome describes the submitted code, not the service."""
        return self in _USER_OUTCOMES


_USER_OUTCOMES = frozenset({
    Outcome.SUCCESS,
    Outcome.COMPILE_ERROR,
    Outcome.RUNTIME_ERROR,
    Outcome.TIMEOUT,
    Outcome.MEMORY_EXCEEDED,
    Outcome.OUTPUT_TRUNCATED,
})


class Phase(str, Enum):
    """Last phase a job reached."""
    QUEUED = "queued"
    PROVISIONING = "provisioning"
    STAGING = "staging"
    COMPILE = "compile"
    RUN = "run"


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class ExecutionResult:
    job_id: str
    language: str
    outcome: Outcome
    phase: Phase
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    memory_peak_bytes: int = 0
    compile_log: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    message: Optional[str] = None

    @property
    def is_user_outcome(self) -> bool:
        return self.outcome.is_user_outcome

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "language": self.language,
            "outcome": self.outcome.value,
            "phase": self.phase.value,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": self.duration_ms,
            "memory_peak_bytes": self.memory_peak_bytes,
            "compile_log": self.compile_log,
            "stdout_truncated": self.stdout_truncated,
            "stderr_truncated": self.stderr_truncated,
            "message": self.message,
            "user_outcome": self.is_user_outcome,
        }


ResultListener = Callable[[ExecutionResult], None]


class ResultAggregator:
    """Turns whatever a controller ended with into one ``ExecutionResult``.

    ``normalize`` never raises, and ``publish`` delivers each job's result at
    most once; later results for an already-delivered job are dropped.
    """

    def __init__(self, history: int = DELIVERED_HISTORY):
        self._lock = threading.Lock()
        self._delivered: "OrderedDict[str, Outcome]" = OrderedDict()
        self._history = history
        self._listeners: List[ResultListener] = []
        self._counts: Dict[str, int] = {outcome.value: 0 for outcome in Outcome}
        self._duplicates = 0

    def add_listener(self, listener: ResultListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def normalize(
        self,
        job_id: str,
        language: str,
        outcome: Outcome,
        phase: Phase,
        report: Optional[ProcessReport] = None,
        compile_report: Optional[ProcessReport] = None,
        message: Optional[str] = None,
    ) -> ExecutionResult:
        try:
            compile_log = compile_report.combined_output if compile_report is not None else ""
            if report is None:
                return ExecutionResult(
                    job_id=job_id,
                    language=language,
                    outcome=outcome,
                    phase=phase,
                    exit_code=compile_report.exit_code if compile_report is not None else None,
                    duration_ms=compile_report.duration_ms if compile_report is not None else 0,
                    compile_log=compile_log,
                    message=message,
                )
            return ExecutionResult(
                job_id=job_id,
                language=language,
                outcome=outcome,
                phase=phase,
                exit_code=report.exit_code,
                stdout=_decode(report.stdout),
                stderr=_decode(report.stderr),
                duration_ms=report.duration_ms,
                memory_peak_bytes=report.memory_peak_bytes,
                compile_log=compile_log,
                stdout_truncated=report.stdout_truncated,
                stderr_truncated=report.stderr_truncated,
                message=message,
            )
        except Exception as e:
            logger.exception(f"Failed to normalize result for job {job_id}")
            return ExecutionResult(
                job_id=job_id,
                language=language,
                outcome=Outcome.INTERNAL_ERROR,
                phase=phase if isinstance(phase, Phase) else Phase.QUEUED,
                message=f"Result normalization failed: {e}",
            )

    def publish(self, result: ExecutionResult, duration: float = 0.0) -> bool:
        """Deliver ``result`` to listeners. Returns False for a duplicate."""
        with self._lock:
            if result.job_id in self._delivered:
                self._duplicates += 1
                logger.error(
                    f"Dropping duplicate result for job {result.job_id}: "
                    f"{result.outcome.value} (already delivered {self._delivered[result.job_id].value})"
                )
                return False
            self._delivered[result.job_id] = result.outcome
            while len(self._delivered) > self._history:
                self._delivered.popitem(last=False)
            self._counts[result.outcome.value] += 1
            listeners = list(self._listeners)

        record_job_finished(result.language, result.outcome.value, duration)
        for listener in listeners:
            try:
                listener(result)
            except Exception:
                logger.exception(f"Result listener failed for job {result.job_id}")
        return True

    def is_delivered(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._delivered

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "outcomes": dict(self._counts),
                "delivered": sum(self._counts.values()),
                "duplicates_dropped": self._duplicates,
            }
