"""
Unit tests for ExecutionResult, Outcome and ResultAggregator.
"""
from unittest.mock import patch

from codejudge.core.execution.job import Job
from codejudge.core.execution.result import (
    ExecutionResult,
    Outcome,
    Phase,
    ResultAggregator,
)
from codejudge.runtime.base import ProcessReport


class TestOutcome:
    def test_user_outcomes(self):
        assert Outcome.SUCCESS.is_user_outcome
        assert Outcome.COMPILE_ERROR.is_user_outcome
        assert Outcome.OUTPUT_TRUNCATED.is_user_outcome

    def test_service_outcomes(self):
        assert not Outcome.INTERNAL_ERROR.is_user_outcome
        assert not Outcome.OVERLOADED.is_user_outcome
        assert not Outcome.CANCELLED.is_user_outcome

    def test_values_are_strings(self):
        assert Outcome("memory_exceeded") is Outcome.MEMORY_EXCEEDED


class TestNormalize:
    def test_run_report(self, aggregator):
        report = ProcessReport(
            exit_code=0,
            stdout=b"42\n",
            stderr=b"",
            duration_ms=12,
            memory_peak_bytes=4096,
        )
        compile_report = ProcessReport(exit_code=0, stderr=b"warning: unused\n")

        result = aggregator.normalize(
            "job-1", "cpp", Outcome.SUCCESS, Phase.RUN, report, compile_report,
        )

        assert result.stdout == "42\n"
        assert result.duration_ms == 12
        assert result.memory_peak_bytes == 4096
        assert result.compile_log == "warning: unused\n"

    def test_compile_only(self, aggregator):
        compile_report = ProcessReport(exit_code=1, stderr=b"error\n", duration_ms=30)

        result = aggregator.normalize(
            "job-1", "c", Outcome.COMPILE_ERROR, Phase.COMPILE, compile_report=compile_report,
        )

        assert result.exit_code == 1
        assert result.duration_ms == 30
        assert result.stdout == ""
        assert result.compile_log == "error\n"

    def test_no_reports(self, aggregator):
        result = aggregator.normalize("job-1", "python", Outcome.OVERLOADED, Phase.PROVISIONING, message="full")
        assert result.exit_code is None
        assert result.message == "full"

    def test_invalid_utf8_replaced(self, aggregator):
        report = ProcessReport(exit_code=0, stdout=b"\xff\xfeok")
        result = aggregator.normalize("job-1", "python", Outcome.SUCCESS, Phase.RUN, report)
        assert result.stdout.endswith("ok")

    def test_never_raises(self, aggregator):
        result = aggregator.normalize("job-1", "python", Outcome.SUCCESS, Phase.RUN, report="garbage")
        assert result.outcome == Outcome.INTERNAL_ERROR
        assert "normalization failed" in result.message


class TestPublish:
    def _result(self, job_id="job-1", outcome=Outcome.SUCCESS):
        return ExecutionResult(job_id=job_id, language="python", outcome=outcome, phase=Phase.RUN)

    def test_delivers_once(self, aggregator):
        delivered = []
        aggregator.add_listener(delivered.append)

        assert aggregator.publish(self._result())
        assert aggregator.publish(self._result(outcome=Outcome.TIMEOUT)) is False

        assert [r.outcome for r in delivered] == [Outcome.SUCCESS]
        stats = aggregator.get_stats()
        assert stats["delivered"] == 1
        assert stats["duplicates_dropped"] == 1
        assert stats["outcomes"]["success"] == 1

    def test_failing_listener_does_not_block_others(self, aggregator):
        delivered = []

        def broken(result):
            raise RuntimeError("listener bug")

        aggregator.add_listener(broken)
        aggregator.add_listener(delivered.append)

        assert aggregator.publish(self._result())
        assert len(delivered) == 1

    def test_history_is_bounded(self):
        aggregator = ResultAggregator(history=2)
        for i in range(3):
            aggregator.publish(self._result(job_id=f"job-{i}"))

        assert not aggregator.is_delivered("job-0")
        assert aggregator.is_delivered("job-2")

    def test_records_metrics(self, aggregator):
        with patch("codejudge.core.execution.result.record_job_finished") as record:
            aggregator.publish(self._result(), duration=1.5)
        record.assert_called_once_with("python", "success", 1.5)


class TestSerialization:
    def test_result_to_dict(self):
        result = ExecutionResult(job_id="j", language="python", outcome=Outcome.TIMEOUT, phase=Phase.RUN)
        data = result.to_dict()

        assert data["outcome"] == "timeout"
        assert data["phase"] == "run"
        assert data["user_outcome"] is True

    def test_job_to_dict(self):
        job = Job(language="python", source_code="print('é')", stdin="1\n")
        data = job.to_dict()

        assert len(data["job_id"]) == 32
        assert data["source_bytes"] == len("print('é')".encode("utf-8"))
        assert data["stdin_bytes"] == 2
