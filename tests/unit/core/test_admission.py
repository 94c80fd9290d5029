"""
Unit tests for AdmissionQueue.
"""
import pytest

from codejudge.core.scheduler.admission import AdmissionQueue


class TestAdmissionQueue:
    def test_fifo_order(self):
        queue = AdmissionQueue(capacity=3)
        for item in ("a", "b", "c"):
            queue.offer(item)

        assert [queue.poll(), queue.poll(), queue.poll()] == ["a", "b", "c"]
        assert queue.poll() is None

    def test_room_after_poll(self):
        queue = AdmissionQueue(capacity=1)
        queue.offer("a")
        assert queue.offer("b") is False

        queue.poll()

        assert queue.offer("b")

    def test_remove(self):
        queue = AdmissionQueue(capacity=3)
        queue.offer("a")
        queue.offer("b")

        assert queue.remove("a")
        assert queue.remove("missing") is False
        assert queue.poll() == "b"

    def test_drain(self):
        queue = AdmissionQueue(capacity=3)
        queue.offer("a")
        queue.offer("b")

        assert queue.drain() == ["a", "b"]
        assert len(queue) == 0

    def test_negative_capacity(self):
        with pytest.raises(ValueError):
            AdmissionQueue(capacity=-1)

    def test_name(self):
        assert AdmissionQueue(capacity=1, name="jobs").get_backpressure_status()["queue_name"] == "jobs"
