from fastapi import APIRouter, Depends, HTTPException, Query, status

from ingest_api.core.auth import CRAWL_READ, FACTS_WRITE
from ingest_api.core.security import get_machine_principal, require_scopes
from ingest_api.schemas.entities import ChangesOut, FactOut, FactVerifyRequest, SnapshotOut
from ingest_api.services.changes import detect_snapshot_changes
from ingest_api.services.refresh import verify_fact
from ingest_api.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()


@router.get("/{entity_id}/snapshots", response_model=list[SnapshotOut])
async def list_entity_snapshots(
    entity_id: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=10, ge=1, le=100),
) -> list[SnapshotOut]:
    require_scopes(principal, {CRAWL_READ})

    try:
        snapshots = await repository.list_snapshots(entity_id, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [
        SnapshotOut(
            id=snapshot.id,
            entity_id=snapshot.entity_id,
            domain=snapshot.domain,
            as_of=snapshot.as_of,
            raw_json=snapshot.raw_json,
            extract_confidence=snapshot.extract_confidence,
        )
        for snapshot in snapshots
    ]


@router.get("/{entity_id}/facts", response_model=list[FactOut])
async def list_entity_facts(
    entity_id: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    fact_key: str | None = Query(default=None, min_length=1, max_length=100),
) -> list[FactOut]:
    require_scopes(principal, {CRAWL_READ})

    try:
        facts = await repository.list_facts(entity_id, fact_key=fact_key)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [FactOut.model_validate(fact, from_attributes=True) for fact in facts]


@router.get("/{entity_id}/changes", response_model=ChangesOut)
async def get_entity_changes(
    entity_id: str,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> ChangesOut:
    require_scopes(principal, {CRAWL_READ})

    try:
        changed = await detect_snapshot_changes(repository, entity_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ChangesOut(entity_id=entity_id, changed_keys=changed)


@router.post("/{entity_id}/facts/verify", response_model=FactOut)
async def verify_entity_fact(
    entity_id: str,
    payload: FactVerifyRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> FactOut:
    require_scopes(principal, {FACTS_WRITE})

    try:
        fact = await verify_fact(
            repository,
            entity_id=entity_id,
            fact_key=payload.fact_key,
            verified_by=payload.verified_by or principal.module_id,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return FactOut.model_validate(fact, from_attributes=True)
