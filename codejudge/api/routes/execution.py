"""
Execution API routes.
"""
import asyncio
import logging
import uuid

from fastapi import APIRouter, Request, Response

from codejudge.api.models.schemas import (
    CancelResponse,
    ExecuteRequest,
    ExecuteResponse,
    HealthResponse,
    LanguageInfo,
    LanguagesResponse,
    StatusResponse,
)
from codejudge.api.dependencies import get_orchestrator
from codejudge.api.exceptions import handle_route_exceptions
from codejudge.exceptions import SchedulerNotInitializedError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["execution"])

DISCONNECT_POLL_SECONDS = 0.5
CLIENT_CLOSED_REQUEST = 499


@router.post("/execute", response_model=ExecuteResponse)
@handle_route_exceptions
async def execute(request: ExecuteRequest, http_request: Request):
    orchestrator = get_orchestrator()
    limits = None
    if request.limits is not None:
        limits = request.limits.model_dump(exclude_none=True)
    job_id = request.job_id or uuid.uuid4().hex
    task = asyncio.ensure_future(orchestrator.execute_async(
        language=request.language,
        source_code=request.source_code,
        stdin=request.stdin,
        limits=limits,
        job_id=job_id,
    ))
    try:
        while not task.done():
            await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if not task.done() and await http_request.is_disconnected():
                logger.info(f"Client disconnected, cancelling job {job_id}")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    return Response(status_code=CLIENT_CLOSED_REQUEST)
    except asyncio.CancelledError:
        # The server dropped this request; the job goes with it.
        task.cancel()
        raise
    result = task.result()
    return ExecuteResponse(status="success", **result.to_dict())


@router.delete("/jobs/{job_id}", response_model=CancelResponse)
@handle_route_exceptions
async def cancel_job(job_id: str):
    cancelled = get_orchestrator().cancel(job_id)
    return CancelResponse(status="success", job_id=job_id, cancelled=cancelled)


@router.get("/languages", response_model=LanguagesResponse)
@handle_route_exceptions
async def list_languages():
    languages = [LanguageInfo(**info) for info in get_orchestrator().list_languages()]
    return LanguagesResponse(status="success", languages=languages)


@router.get("/status", response_model=StatusResponse)
@handle_route_exceptions
async def get_status():
    return StatusResponse(status="success", data=get_orchestrator().get_status())


@router.get("/health", response_model=HealthResponse)
async def health():
    try:
        initialized = get_orchestrator().is_initialized()
    except SchedulerNotInitializedError:
        initialized = False
    return HealthResponse(status="ok" if initialized else "unavailable", initialized=initialized)
