"""
Bounded FIFO admission queue.

Holds jobs that were admitted while every worker was busy. When the queue is
at capacity further offers are refused instead of blocking, so a flood of
submissions can never grow memory without bound.
"""
import logging
from collections import deque
from typing import Any, Deque, Dict, Generic, List, Optional, TypeVar

from codejudge.config.defaults import SCHEDULER_DEFAULTS

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AdmissionQueue(Generic[T]):
    """FIFO queue with a hard capacity. Not thread-safe; the scheduler serializes access."""

    def __init__(self, capacity: int = SCHEDULER_DEFAULTS.queue_depth, name: str = "admission"):
        if capacity < 0:
            raise ValueError(f"capacity must be non-negative, got {capacity}")
        self._capacity = capacity
        self._name = name
        self._items: Deque[T] = deque()

    @property
    def name(self) -> str:
        return self._name

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def is_full(self) -> bool:
        return len(self._items) >= self._capacity

    def offer(self, item: T) -> bool:
        """Append ``item`` unless the queue is full. Returns whether it was admitted."""
        if self.is_full():
            logger.warning(f"{self._name} queue is full ({self._capacity} jobs)")
            return False
        self._items.append(item)
        return True

    def poll(self) -> Optional[T]:
        """Remove and return the oldest item, or None when empty."""
        if not self._items:
            return None
        return self._items.popleft()

    def remove(self, item: T) -> bool:
        try:
            self._items.remove(item)
            return True
        except ValueError:
            return False

    def drain(self) -> List[T]:
        items = list(self._items)
        self._items.clear()
        return items

    def get_backpressure_status(self) -> Dict[str, Any]:
        return {
            "queue_name": self._name,
            "size": len(self._items),
            "capacity": self._capacity,
            "utilization": len(self._items) / self._capacity if self._capacity else 1.0,
            "is_full": self.is_full(),
        }
