from fastapi import APIRouter, Depends, HTTPException, Query, status

from ingest_api.core.auth import CRAWL_ADMIN, CRAWL_READ, CRAWL_WRITE
from ingest_api.core.config import Settings, get_settings
from ingest_api.core.security import get_machine_principal, require_scopes
from ingest_api.schemas.crawl import (
    CrawlJobOut,
    CrawlJobStatus,
    DispatchSummaryOut,
    EnqueueRequest,
    EnqueueResponse,
)
from ingest_api.services.dispatcher import dispatch_pending_jobs
from ingest_api.services.extraction import get_extractor
from ingest_api.services.provider import get_crawl_provider
from ingest_api.services.refresh import enqueue_for_entity
from ingest_api.services.repository import (
    CrawlJobRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


def job_to_out(job: CrawlJobRecord) -> CrawlJobOut:
    return CrawlJobOut(
        id=job.id,
        entity_id=job.entity_id,
        domain=job.domain,
        status=job.status,
        attempts=job.attempts,
        external_job_id=job.external_job_id,
        accumulated_page_count=len(job.accumulated_pages),
        scheduled_at=job.scheduled_at,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


@router.post("/enqueue", response_model=EnqueueResponse)
async def enqueue_crawl(
    payload: EnqueueRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> EnqueueResponse:
    require_scopes(principal, {CRAWL_WRITE})

    try:
        job, created = await enqueue_for_entity(repository, payload.entity_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return EnqueueResponse(job=job_to_out(job), created=created)


@router.post("/dispatch", response_model=DispatchSummaryOut)
async def dispatch_crawls(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    provider=Depends(get_crawl_provider),
    extractor=Depends(get_extractor),
    settings: Settings = Depends(get_settings),
    limit: int | None = Query(default=None, ge=1, le=100),
) -> DispatchSummaryOut:
    require_scopes(principal, {CRAWL_WRITE})

    try:
        summary = await dispatch_pending_jobs(
            repository,
            provider,
            extractor,
            limit=limit or settings.dispatch_batch_size,
            callback_url=settings.webhook_callback_url,
            concurrency=settings.dispatch_concurrency,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DispatchSummaryOut(**summary.as_dict())


@router.get("/jobs", response_model=list[CrawlJobOut])
async def list_crawl_jobs(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    status_filter: CrawlJobStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[CrawlJobOut]:
    require_scopes(principal, {CRAWL_READ})

    try:
        jobs = await repository.list_crawl_jobs(status=status_filter, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return [job_to_out(job) for job in jobs]


@router.post("/jobs/{job_id}/reset", response_model=CrawlJobOut)
async def reset_crawl_job(
    job_id: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> CrawlJobOut:
    require_scopes(principal, {CRAWL_ADMIN})

    try:
        job = await repository.reset_failed_job(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return job_to_out(job)
