from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from opentelemetry import trace

from ingest_api.services.repository import (
    CrawlJobRecord,
    FactRecord,
    RefreshCandidate,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CANDIDATE_PAGE_SIZE = 200


@dataclass(slots=True, frozen=True)
class StalenessThresholds:
    unverified: timedelta = timedelta(days=7)
    verified: timedelta = timedelta(days=90)

    @classmethod
    def from_days(cls, *, unverified_days: int, verified_days: int) -> StalenessThresholds:
        return cls(unverified=timedelta(days=unverified_days), verified=timedelta(days=verified_days))


def is_stale(
    last_snapshot_at: datetime | None,
    verified: bool,
    now: datetime,
    thresholds: StalenessThresholds,
) -> bool:
    if last_snapshot_at is None:
        return True
    if last_snapshot_at.tzinfo is None:
        last_snapshot_at = last_snapshot_at.replace(tzinfo=timezone.utc)
    threshold = thresholds.verified if verified else thresholds.unverified
    return last_snapshot_at < now - threshold


async def find_stale_entities(
    repository: Any,
    *,
    limit: int,
    now: datetime,
    thresholds: StalenessThresholds,
) -> list[RefreshCandidate]:
    stale: list[RefreshCandidate] = []
    cursor: str | None = None
    while len(stale) < limit:
        page = await repository.list_refresh_candidates(after_entity_id=cursor, limit=CANDIDATE_PAGE_SIZE)
        if not page:
            break
        for candidate in page:
            if is_stale(candidate.last_snapshot_at, candidate.is_verified, now, thresholds):
                stale.append(candidate)
                if len(stale) >= limit:
                    break
        cursor = page[-1].entity_id
    return stale


async def enqueue_stale(
    repository: Any,
    *,
    limit: int,
    thresholds: StalenessThresholds | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    current = now or datetime.now(timezone.utc)
    policy = thresholds or StalenessThresholds()
    result: dict[str, Any] = {"enqueued": 0, "skipped": 0, "errors": []}

    with tracer.start_as_current_span("crawl.refresh") as span:
        stale = await find_stale_entities(repository, limit=limit, now=current, thresholds=policy)
        span.set_attribute("crawl.refresh.stale", len(stale))

        for candidate in stale:
            if not (candidate.domain or "").strip() or candidate.has_active_job:
                result["skipped"] += 1
                continue

            try:
                job = await repository.enqueue_crawl_job(entity_id=candidate.entity_id, domain=candidate.domain)
            except RepositoryConflictError:
                result["skipped"] += 1
                continue
            except RepositoryError as exc:
                logger.warning("refresh enqueue failed entity_id=%s error=%s", candidate.entity_id, exc)
                result["errors"].append({"entity_id": candidate.entity_id, "error": str(exc)})
                continue

            logger.debug("refresh enqueued entity_id=%s job_id=%s", candidate.entity_id, job.id)
            result["enqueued"] += 1

        span.set_attribute("crawl.refresh.enqueued", result["enqueued"])

    logger.info(
        "refresh finished stale=%s enqueued=%s skipped=%s errors=%s",
        len(stale),
        result["enqueued"],
        result["skipped"],
        len(result["errors"]),
    )
    return result


async def enqueue_for_entity(repository: Any, entity_id: str) -> tuple[CrawlJobRecord, bool]:
    """Queue a crawl for one entity, reusing its in-flight job if it has one.

    Returns the job and whether it was newly created.
    """
    entity = await repository.get_entity(entity_id)
    if entity is None:
        raise RepositoryNotFoundError("entity not found")
    if not (entity.domain or "").strip():
        raise RepositoryValidationError("entity has no domain to crawl")

    existing = await repository.find_active_job(entity_id)
    if existing is not None:
        return existing, False

    try:
        job = await repository.enqueue_crawl_job(entity_id=entity_id, domain=entity.domain)
    except RepositoryConflictError:
        existing = await repository.find_active_job(entity_id)
        if existing is None:
            raise
        return existing, False

    logger.info("crawl job enqueued entity_id=%s job_id=%s", entity_id, job.id)
    return job, True


async def verify_fact(repository: Any, *, entity_id: str, fact_key: str, verified_by: str | None) -> FactRecord:
    fact = await repository.append_verified_fact(entity_id=entity_id, fact_key=fact_key, verified_by=verified_by)
    logger.info("fact verified entity_id=%s fact_key=%s verified_by=%s", entity_id, fact_key, verified_by)
    return fact
