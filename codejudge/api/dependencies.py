"""
Shared dependencies for API routes.

This module provides a unified orchestrator access pattern used by all route modules.
"""
from typing import Optional

from codejudge.exceptions import SchedulerNotInitializedError

_orchestrator: Optional["Orchestrator"] = None


def set_orchestrator(orchestrator: Optional["Orchestrator"]) -> None:
    """
    Set the global orchestrator instance.

    This should be called once during application startup from server.py.
    """
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> "Orchestrator":
    """
    Get the global orchestrator instance.

    Raises:
        SchedulerNotInitializedError: If the orchestrator has not been set.
    """
    if _orchestrator is None:
        raise SchedulerNotInitializedError()
    return _orchestrator
