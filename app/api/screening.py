"""
Screening API

Endpoints:
    POST /screening/trigger                 Queue one application
    POST /screening/bulk                    Queue several applications
    POST /screening/{application_id}/retry  Re-run a FAILED (or forced) screening
    POST /screening/{application_id}/cancel Cancel a PENDING/PROCESSING screening
    GET  /screening/{application_id}        Screening result
    GET  /screening                         List results (job, status, min score)
    GET  /screening/stats                   Counts, averages and queue state
    POST /screening/jobs/{job_posting_id}/reprocess  Re-screen a whole job posting
    GET  /screening/jobs/{job_posting_id}/similar    Résumés closest to the job text

The service layer uses synchronous sessions, so handlers are plain `def`
and run in FastAPI's threadpool.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List, Optional

from app.database import session_scope
from app.exceptions import InputError, InvalidStateError, NotFoundError
from app.schemas.screening import (
    BulkScreeningRequest,
    BulkScreeningResponse,
    CancelScreeningRequest,
    RetryScreeningRequest,
    ScreeningResultResponse,
    ScreeningStatsResponse,
    SimilarApplication,
    TriggerScreeningRequest,
)
from app.services.screening import ScreeningService

router = APIRouter()


def get_screening_service() -> ScreeningService:
    return ScreeningService()


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidStateError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


@router.post("/trigger", response_model=ScreeningResultResponse, status_code=202)
def trigger_screening(
    request: TriggerScreeningRequest,
    service: ScreeningService = Depends(get_screening_service),
):
    try:
        result = service.trigger_screening(request.application_id, request.priority)
    except (NotFoundError, InvalidStateError, InputError, ValueError) as e:
        raise _http_error(e)
    return ScreeningResultResponse.model_validate(result)


@router.post("/bulk", response_model=BulkScreeningResponse, status_code=202)
def trigger_bulk_screening(
    request: BulkScreeningRequest,
    service: ScreeningService = Depends(get_screening_service),
):
    try:
        return service.trigger_bulk_screening(request.application_ids, request.priority)
    except ValueError as e:
        raise _http_error(e)


@router.get("/stats", response_model=ScreeningStatsResponse)
def screening_stats(
    job_posting_id: Optional[int] = Query(None),
    service: ScreeningService = Depends(get_screening_service),
):
    stats = service.get_screening_stats(job_posting_id)
    stats["queue"] = service.queue.get_queue_stats()
    return stats


@router.get("", response_model=List[ScreeningResultResponse])
def list_screening_results(
    job_posting_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
    min_score: Optional[float] = Query(None, ge=0, le=100),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: ScreeningService = Depends(get_screening_service),
):
    results = service.list_screening_results(job_posting_id, status, min_score, limit, offset)
    return [ScreeningResultResponse.model_validate(r) for r in results]


@router.get("/jobs/{job_posting_id}/similar", response_model=List[SimilarApplication])
def similar_applications(
    job_posting_id: int,
    limit: int = Query(10, ge=1, le=100),
    threshold: float = Query(0.5, ge=0, le=1),
):
    from app.services.embeddings import get_embedding_service

    embeddings = get_embedding_service(use_cache=False)
    with session_scope() as session:
        return embeddings.find_similar_applications(session, job_posting_id, limit, threshold)


@router.post("/jobs/{job_posting_id}/reprocess", response_model=BulkScreeningResponse, status_code=202)
def reprocess_job(
    job_posting_id: int,
    priority: int = Query(0, ge=0, le=10),
    service: ScreeningService = Depends(get_screening_service),
):
    try:
        return service.reprocess_job_applications(job_posting_id, priority)
    except (NotFoundError, ValueError) as e:
        raise _http_error(e)


@router.get("/{application_id}", response_model=ScreeningResultResponse)
def get_screening_result(
    application_id: int,
    service: ScreeningService = Depends(get_screening_service),
):
    result = service.get_screening_result(application_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Screening result not found")
    return ScreeningResultResponse.model_validate(result)


@router.post("/{application_id}/retry", response_model=ScreeningResultResponse, status_code=202)
def retry_screening(
    application_id: int,
    request: Optional[RetryScreeningRequest] = None,
    service: ScreeningService = Depends(get_screening_service),
):
    force = request.force if request else False
    try:
        result = service.retry_screening(application_id, force=force)
    except (NotFoundError, InvalidStateError, ValueError) as e:
        raise _http_error(e)
    return ScreeningResultResponse.model_validate(result)


@router.post("/{application_id}/cancel", response_model=ScreeningResultResponse)
def cancel_screening(
    application_id: int,
    request: Optional[CancelScreeningRequest] = None,
    service: ScreeningService = Depends(get_screening_service),
):
    reason = request.reason if request else None
    try:
        result = service.cancel_screening(application_id, reason)
    except (NotFoundError, InvalidStateError, ValueError) as e:
        raise _http_error(e)
    return ScreeningResultResponse.model_validate(result)
