"""
codejudge - Sandboxed multi-language code execution.
"""
from codejudge.config.settings import JudgeConfig
from codejudge.core.limits import ExecutionLimits
from codejudge.core.execution.result import ExecutionResult, Outcome
from codejudge.client import JudgeClient

__version__ = "0.1.0"

__all__ = [
    "JudgeConfig",
    "ExecutionLimits",
    "ExecutionResult",
    "Outcome",
    "JudgeClient",
    "Orchestrator",
]


def __getattr__(name: str):
    if name == "Orchestrator":
        from codejudge.core.orchestrator import Orchestrator
        return Orchestrator
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
