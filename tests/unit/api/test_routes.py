"""
Unit tests for API routes.
"""
import asyncio

import pytest
from unittest.mock import ANY, AsyncMock, MagicMock
from fastapi import FastAPI
from fastapi.testclient import TestClient

from codejudge.api.dependencies import set_orchestrator
from codejudge.api.models.schemas import ExecuteRequest
from codejudge.api.routes import execution
from codejudge.core.execution.result import ExecutionResult, Outcome, Phase
from codejudge.exceptions import (
    ExecutorError,
    InvalidLimitsError,
    JobNotFoundError,
    OverloadedError,
    UnsupportedLanguageError,
)


@pytest.fixture
def mock_orchestrator():
    orchestrator = MagicMock()
    orchestrator.execute_async = AsyncMock()
    return orchestrator


@pytest.fixture
def app(mock_orchestrator):
    app = FastAPI()
    set_orchestrator(mock_orchestrator)
    app.include_router(execution.router)
    yield app
    set_orchestrator(None)


@pytest.fixture
def client(app):
    return TestClient(app)


def _result(outcome=Outcome.SUCCESS, **kwargs):
    return ExecutionResult(
        job_id="a" * 32,
        language="python",
        outcome=outcome,
        phase=Phase.RUN,
        **kwargs,
    )


class TestExecuteRoute:
    def test_success(self, client, mock_orchestrator):
        mock_orchestrator.execute_async.return_value = _result(exit_code=0, stdout="3\n", duration_ms=12)

        response = client.post("/execute", json={
            "language": "python",
            "source_code": "print(1 + 2)",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["outcome"] == "success"
        assert data["stdout"] == "3\n"
        assert data["user_outcome"] is True
        mock_orchestrator.execute_async.assert_awaited_once_with(
            language="python", source_code="print(1 + 2)", stdin="", limits=None, job_id=ANY,
        )

    def test_limits_forwarded_without_unset_fields(self, client, mock_orchestrator):
        mock_orchestrator.execute_async.return_value = _result()

        client.post("/execute", json={
            "language": "python",
            "source_code": "print(1)",
            "stdin": "5\n",
            "limits": {"wall_ms": 500, "memory_bytes": 1048576},
        })

        kwargs = mock_orchestrator.execute_async.await_args.kwargs
        assert kwargs["limits"] == {"wall_ms": 500, "memory_bytes": 1048576}
        assert kwargs["stdin"] == "5\n"

    def test_caller_job_id_forwarded(self, client, mock_orchestrator):
        mock_orchestrator.execute_async.return_value = _result()

        response = client.post("/execute", json={
            "language": "python",
            "source_code": "print(1)",
            "job_id": "grader-7",
        })

        assert response.status_code == 200
        assert mock_orchestrator.execute_async.await_args.kwargs["job_id"] == "grader-7"

    def test_generated_job_id_when_absent(self, client, mock_orchestrator):
        mock_orchestrator.execute_async.return_value = _result()

        client.post("/execute", json={"language": "python", "source_code": "print(1)"})

        job_id = mock_orchestrator.execute_async.await_args.kwargs["job_id"]
        assert len(job_id) == 32

    @pytest.mark.parametrize("job_id", ["", "has space", "../etc", "x" * 65])
    def test_malformed_job_id(self, client, job_id):
        response = client.post("/execute", json={"language": "python", "source_code": "x", "job_id": job_id})
        assert response.status_code == 422

    def test_client_disconnect_cancels_job(self, mock_orchestrator, monkeypatch):
        monkeypatch.setattr(execution, "DISCONNECT_POLL_SECONDS", 0.01)
        abandoned = []

        async def never_finishes(**kwargs):
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                abandoned.append(kwargs["job_id"])
                raise

        mock_orchestrator.execute_async.side_effect = never_finishes
        set_orchestrator(mock_orchestrator)
        http_request = MagicMock()
        http_request.is_disconnected = AsyncMock(return_value=True)
        request = ExecuteRequest(language="python", source_code="while True: pass", job_id="gone")

        try:
            response = asyncio.run(execution.execute(request=request, http_request=http_request))
        finally:
            set_orchestrator(None)

        assert response.status_code == execution.CLIENT_CLOSED_REQUEST
        assert abandoned == ["gone"]

    def test_user_failure_is_still_200(self, client, mock_orchestrator):
        mock_orchestrator.execute_async.return_value = _result(Outcome.TIMEOUT, message="Time limit exceeded")

        response = client.post("/execute", json={"language": "python", "source_code": "while True: pass"})

        assert response.status_code == 200
        assert response.json()["outcome"] == "timeout"

    def test_service_outcome_flagged(self, client, mock_orchestrator):
        mock_orchestrator.execute_async.return_value = _result(Outcome.INTERNAL_ERROR)

        response = client.post("/execute", json={"language": "python", "source_code": "x"})

        assert response.json()["user_outcome"] is False

    def test_unsupported_language(self, client, mock_orchestrator):
        mock_orchestrator.execute_async.side_effect = UnsupportedLanguageError("cobol", ["python"])

        response = client.post("/execute", json={"language": "cobol", "source_code": "x"})

        assert response.status_code == 400
        assert response.json()["detail"]["supported"] == ["python"]

    def test_invalid_limits(self, client, mock_orchestrator):
        mock_orchestrator.execute_async.side_effect = InvalidLimitsError("too loose", "wall_ms")

        response = client.post("/execute", json={"language": "python", "source_code": "x"})

        assert response.status_code == 400
        assert response.json()["detail"]["field"] == "wall_ms"

    def test_overloaded(self, client, mock_orchestrator):
        mock_orchestrator.execute_async.side_effect = OverloadedError(
            queue_name="admission", current_size=64, capacity=64
        )

        response = client.post("/execute", json={"language": "python", "source_code": "x"})

        assert response.status_code == 503
        assert response.headers["retry-after"] == "1"
        assert response.json()["detail"]["capacity"] == 64

    def test_executor_error(self, client, mock_orchestrator):
        mock_orchestrator.execute_async.side_effect = ExecutorError("backend exploded")

        response = client.post("/execute", json={"language": "python", "source_code": "x"})

        assert response.status_code == 500

    def test_missing_fields(self, client):
        response = client.post("/execute", json={"language": "python"})
        assert response.status_code == 422

    def test_not_initialized(self, client):
        set_orchestrator(None)
        response = client.post("/execute", json={"language": "python", "source_code": "x"})
        assert response.status_code == 503


class TestCancelRoute:
    def test_cancel(self, client, mock_orchestrator):
        mock_orchestrator.cancel.return_value = True

        response = client.delete("/jobs/job-1")

        assert response.status_code == 200
        assert response.json() == {"status": "success", "job_id": "job-1", "cancelled": True}

    def test_cancel_unknown_job(self, client, mock_orchestrator):
        mock_orchestrator.cancel.side_effect = JobNotFoundError("job-1")
        assert client.delete("/jobs/job-1").status_code == 404


class TestInfoRoutes:
    def test_languages(self, client, mock_orchestrator):
        mock_orchestrator.list_languages.return_value = [{
            "language": "python",
            "version": "3.11",
            "aliases": ["py"],
            "compiled": False,
            "image": "python:3.11-slim",
            "default_limits": {"wall_ms": 5000},
        }]

        response = client.get("/languages")

        assert response.status_code == 200
        assert response.json()["languages"][0]["language"] == "python"

    def test_status(self, client, mock_orchestrator):
        mock_orchestrator.get_status.return_value = {"initialized": True}

        response = client.get("/status")

        assert response.json() == {"status": "success", "data": {"initialized": True}}

    def test_health(self, client, mock_orchestrator):
        mock_orchestrator.is_initialized.return_value = True
        assert client.get("/health").json() == {"status": "ok", "initialized": True}

    def test_health_without_orchestrator(self, client):
        set_orchestrator(None)
        assert client.get("/health").json() == {"status": "unavailable", "initialized": False}
