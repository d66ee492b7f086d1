from fastapi import APIRouter, Depends, HTTPException, Query, status

from ingest_api.core.auth import CRAWL_WRITE, FACTS_WRITE
from ingest_api.core.config import Settings, get_settings
from ingest_api.core.security import get_machine_principal, require_scopes
from ingest_api.schemas.crawl import NormalizeRunOut, RefreshRunOut
from ingest_api.services.normalize_runner import run_normalization
from ingest_api.services.refresh import StalenessThresholds, enqueue_stale
from ingest_api.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.post("/refresh/run", response_model=RefreshRunOut)
async def run_refresh(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
    limit: int | None = Query(default=None, ge=1, le=500),
) -> RefreshRunOut:
    require_scopes(principal, {CRAWL_WRITE})

    thresholds = StalenessThresholds.from_days(
        unverified_days=settings.staleness_unverified_days,
        verified_days=settings.staleness_verified_days,
    )
    try:
        result = await enqueue_stale(repository, limit=limit or settings.refresh_batch_size, thresholds=thresholds)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return RefreshRunOut(**result)


@router.post("/normalize/run", response_model=NormalizeRunOut)
async def run_normalize(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
    limit: int | None = Query(default=None, ge=1, le=100),
) -> NormalizeRunOut:
    require_scopes(principal, {FACTS_WRITE})

    try:
        result = await run_normalization(repository, limit=limit or settings.normalize_batch_size)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return NormalizeRunOut(**result)
