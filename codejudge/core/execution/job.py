"""
Job model: one caller-submitted execution request.
"""
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from codejudge.core.limits import ExecutionLimits


class JobState(Enum):
    QUEUED = "queued"
    PROVISIONING = "provisioning"
    STAGING = "staging"
    COMPILING = "compiling"
    RUNNING = "running"
    COLLECTING = "collecting"
    RELEASING = "releasing"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class Job:
    """Immutable once admitted. ``language`` is the canonical runtime id."""
    language: str
    source_code: str
    stdin: str = ""
    limits: ExecutionLimits = field(default_factory=ExecutionLimits)
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    submitted_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "language": self.language,
            "stdin_bytes": len(self.stdin.encode("utf-8")),
            "source_bytes": len(self.source_code.encode("utf-8")),
            "limits": self.limits.to_dict(),
            "submitted_at": self.submitted_at,
        }
