"""
Per-job execution: job model, controller state machine and results.
"""
from codejudge.core.execution.job import Job, JobState
from codejudge.core.execution.result import ExecutionResult, Outcome, Phase, ResultAggregator
from codejudge.core.execution.controller import ExecutionController

__all__ = [
    "Job",
    "JobState",
    "ExecutionResult",
    "Outcome",
    "Phase",
    "ResultAggregator",
    "ExecutionController",
]
