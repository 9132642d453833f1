"""FastAPI routes for SSE progress streaming.

Polls the orchestrator and pushes one status event per interval until the
job reaches a terminal status.
"""

import asyncio
import json
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from shiprate.api.dependencies import get_orchestrator, get_owner
from shiprate.db.models import JobStatus
from shiprate.services.orchestrator import JobOrchestrator

router = APIRouter(tags=["progress"])

_TERMINAL = {JobStatus.completed.value, JobStatus.failed.value}


def _status_payload(status: dict) -> str:
    return json.dumps({
        "jobId": status["job_id"],
        "status": status["status"],
        "processedCount": status["processed_count"],
        "totalCount": status["total_count"],
        "orphanedCount": status["orphaned_count"],
        "error": status["error"],
    })


async def _event_generator(
    request: Request,
    orchestrator: JobOrchestrator,
    job_id: str,
    owner: str,
    interval: float,
) -> AsyncGenerator[dict, None]:
    """Yield status events until the job is terminal or the client leaves.

    Args:
        request: FastAPI request object for disconnect detection.
        orchestrator: Source of job status.
        job_id: The job UUID.
        owner: Owner the job must belong to.
        interval: Seconds between polls.

    Yields:
        Event dictionaries with 'event' and 'data' keys.
    """
    while True:
        if await request.is_disconnected():
            break
        status = await asyncio.to_thread(orchestrator.get_status, job_id, owner)
        yield {"event": "status", "data": _status_payload(status)}
        if status["status"] in _TERMINAL:
            break
        await asyncio.sleep(interval)


@router.get("/jobs/{job_id}/progress/stream")
async def stream_progress(
    request: Request,
    job_id: str,
    owner: str = Depends(get_owner),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> EventSourceResponse:
    """Stream job progress as Server-Sent Events.

    Raises:
        NotFoundError: If the job does not exist for this owner (404).
    """
    # Fail before opening the stream so unknown jobs get a plain 404
    await asyncio.to_thread(orchestrator.get_status, job_id, owner)
    interval = orchestrator.config.api.progress_poll_seconds
    return EventSourceResponse(
        _event_generator(request, orchestrator, job_id, owner, interval)
    )
