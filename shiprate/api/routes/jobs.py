"""FastAPI routes for analysis jobs.

Provides submission, status polling, job listing, result retrieval and
the per-shipment candidate breakdown.
Every route is scoped to the owner identified by the bearer token; a job
belonging to someone else is reported as not found.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from shiprate.api.dependencies import get_orchestrator, get_owner
from shiprate.api.schemas import (
    AnalysisRequest,
    JobCreatedResponse,
    JobListResponse,
    JobResultsResponse,
    JobStatusResponse,
    JobSummaryResponse,
    ShipmentRateResponse,
    ShipmentRatesResponse,
    ShipmentResultResponse,
)
from shiprate.db.connection import get_db
from shiprate.db.models import AnalysisJob
from shiprate.errors import NotFoundError
from shiprate.services import JobService
from shiprate.services.orchestrator import JobOrchestrator

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_service(db: Session = Depends(get_db)) -> JobService:
    """Dependency to get JobService instance."""
    return JobService(db)


def _owned_job(job_svc: JobService, job_id: str, owner: str) -> AnalysisJob:
    job = job_svc.get_job(job_id)
    if job is None or job.owner != owner:
        raise NotFoundError("Job", job_id)
    return job


@router.post("", response_model=JobCreatedResponse, status_code=202)
async def submit_analysis(
    payload: AnalysisRequest,
    owner: str = Depends(get_owner),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobCreatedResponse:
    """Start a rate-shopping analysis.

    Returns as soon as the job exists; processing continues in the
    background. Poll GET /jobs/{job_id} for progress.

    Raises:
        ValidationError: Malformed submission or unusable carrier accounts (400).
    """
    job_id = await orchestrator.submit(
        owner, payload.to_inputs(), payload.carrier_account_ids
    )
    return JobCreatedResponse(job_id=job_id)


@router.get("", response_model=JobListResponse)
def list_jobs(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    owner: str = Depends(get_owner),
    job_svc: JobService = Depends(get_job_service),
) -> JobListResponse:
    """List the caller's jobs, newest first."""
    jobs = job_svc.list_jobs(owner=owner, limit=limit, offset=offset)
    return JobListResponse(
        jobs=[JobSummaryResponse.model_validate(j) for j in jobs],
        total=len(jobs),
    )


@router.get("/{job_id}", response_model=JobStatusResponse)
def get_job_status(
    job_id: str,
    owner: str = Depends(get_owner),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobStatusResponse:
    """Return status, processedCount and totalCount for a job.

    Raises:
        NotFoundError: If the job does not exist for this owner (404).
    """
    return JobStatusResponse(**orchestrator.get_status(job_id, owner=owner))


@router.get("/{job_id}/results", response_model=JobResultsResponse)
def get_job_results(
    job_id: str,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    owner: str = Depends(get_owner),
    job_svc: JobService = Depends(get_job_service),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobResultsResponse:
    """Return stored results, priced and orphaned listed separately.

    Both lists are paginated independently with the same limit/offset,
    in completion order.
    """
    job = _owned_job(job_svc, job_id, owner)
    store = orchestrator.result_store
    priced = store.list_results(job_id, orphaned=False, limit=limit, offset=offset)
    orphaned = store.list_results(job_id, orphaned=True, limit=limit, offset=offset)
    return JobResultsResponse(
        job_id=job.id,
        status=job.status,
        results=[ShipmentResultResponse.model_validate(r) for r in priced],
        orphaned=[ShipmentResultResponse.model_validate(r) for r in orphaned],
        limit=limit,
        offset=offset,
    )


@router.get("/{job_id}/shipments/{shipment_id}/rates", response_model=ShipmentRatesResponse)
def get_shipment_rates(
    job_id: str,
    shipment_id: str,
    owner: str = Depends(get_owner),
    job_svc: JobService = Depends(get_job_service),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> ShipmentRatesResponse:
    """Return every rate considered for one shipment, cheapest first.

    An orphaned or unknown shipment has no rates and yields an empty list.

    Raises:
        NotFoundError: If the job does not exist for this owner (404).
    """
    _owned_job(job_svc, job_id, owner)
    rates = orchestrator.result_store.list_rates(job_id, shipment_id)
    return ShipmentRatesResponse(
        job_id=job_id,
        shipment_id=shipment_id,
        rates=[ShipmentRateResponse.model_validate(r) for r in rates],
    )
