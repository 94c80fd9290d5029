"""
Scheduler and admission queue.
"""
from codejudge.core.scheduler.admission import AdmissionQueue
from codejudge.core.scheduler.scheduler import Scheduler

__all__ = [
    "AdmissionQueue",
    "Scheduler",
]
