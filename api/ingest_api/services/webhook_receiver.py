from __future__ import annotations

import logging
from typing import Any

from opentelemetry import trace

from ingest_api.services.errors import CorrelationError, DataAbsenceError, ExtractionError
from ingest_api.services.repository import CrawlJobRecord, RepositoryConflictError
from ingest_api.services.webhook_events import (
    CompletedEvent,
    FailedEvent,
    PageEvent,
    WebhookEvent,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CLAIMABLE_STATUSES = ("pending", "queued")


async def handle_webhook_event(event: WebhookEvent, *, repository: Any, extractor: Any) -> dict[str, Any]:
    with tracer.start_as_current_span("crawl.webhook.handle") as span:
        span.set_attribute("crawl.webhook.event", event.kind)
        if event.raw_type:
            span.set_attribute("crawl.webhook.raw_type", event.raw_type)
        if event.correlation.job_id:
            span.set_attribute("crawl.job_id", event.correlation.job_id)

        if isinstance(event, PageEvent):
            return await _handle_page(event, repository=repository)
        if isinstance(event, CompletedEvent):
            return await _handle_completed(event, repository=repository, extractor=extractor)
        if isinstance(event, FailedEvent):
            return await _handle_failed(event, repository=repository)

        logger.info(
            "webhook event ignored event=%s raw_type=%s job_id=%s",
            event.kind,
            event.raw_type,
            event.correlation.job_id,
        )
        return _ack(event, action="ignored")


def resolve_result_set(event: CompletedEvent, accumulated_pages: list[Any]) -> list[Any]:
    """Pick the authoritative pages for a completion.

    The event's own ``data`` wins; otherwise pages streamed earlier through
    page events; otherwise the alternate top-level payload fields.
    """
    if event.data:
        return list(event.data)
    if accumulated_pages:
        return list(accumulated_pages)
    alternate = event.alternate_results()
    if alternate:
        return alternate
    raise DataAbsenceError("completed event carried no results and nothing was accumulated")


async def _handle_page(event: PageEvent, *, repository: Any) -> dict[str, Any]:
    job_id = event.correlation.job_id
    if not job_id:
        return _uncorrelated(event)
    if not event.pages:
        return _ack(event, action="ignored", reason="no_data")

    page_count = await repository.append_accumulated_pages(job_id, event.pages)
    if page_count is None:
        logger.warning("webhook page dropped job_id=%s reason=unknown_or_terminal_job", job_id)
        return _ack(event, action="ignored", reason="unknown_or_terminal_job")

    logger.info("webhook page accumulated job_id=%s added=%s total=%s", job_id, len(event.pages), page_count)
    return _ack(event, action="accumulated", page_count=page_count)


async def _handle_completed(event: CompletedEvent, *, repository: Any, extractor: Any) -> dict[str, Any]:
    job_id = event.correlation.job_id
    if not job_id:
        return _uncorrelated(event)

    try:
        job = await _load_job(repository, job_id)
    except CorrelationError as exc:
        logger.warning("webhook completion uncorrelated job_id=%s error=%s", job_id, exc)
        return _ack(event, action="ignored", reason="unknown_job")

    if job.is_terminal:
        logger.info("webhook completion duplicate job_id=%s status=%s", job.id, job.status)
        return _ack(event, action="duplicate", status=job.status)

    previous_status = job.status
    claimed = await repository.transition_job(job.id, from_statuses=CLAIMABLE_STATUSES, to_status="processing")
    if claimed is None:
        logger.info("webhook completion lost claim job_id=%s", job.id)
        return _ack(event, action="duplicate")

    try:
        return await _complete_claimed(event, claimed, repository=repository, extractor=extractor)
    except BaseException:
        # Hand the claim back so a redelivered completion can take it.
        await _release_claim(repository, claimed.id, previous_status)
        raise


async def _complete_claimed(
    event: CompletedEvent,
    claimed: CrawlJobRecord,
    *,
    repository: Any,
    extractor: Any,
) -> dict[str, Any]:
    try:
        result_set = resolve_result_set(event, claimed.accumulated_pages)
    except DataAbsenceError as exc:
        logger.warning("crawl job failed job_id=%s reason=no_data error=%s", claimed.id, exc)
        await repository.mark_job_failed(claimed.id)
        return _ack(event, action="failed", reason="no_data")

    try:
        extracted, confidence = await _extract(extractor, result_set)
    except ExtractionError as exc:
        logger.warning("crawl job failed job_id=%s reason=extraction error=%s", claimed.id, exc)
        await repository.mark_job_failed(claimed.id)
        return _ack(event, action="failed", reason="extraction_failed", error=str(exc))

    try:
        snapshot = await repository.complete_job_with_snapshot(
            claimed.id,
            entity_id=claimed.entity_id,
            domain=claimed.domain,
            raw_json=extracted,
            extract_confidence=confidence,
        )
    except RepositoryConflictError:
        logger.info("webhook completion raced job_id=%s", claimed.id)
        return _ack(event, action="duplicate")

    logger.info(
        "crawl job completed job_id=%s entity_id=%s pages=%s snapshot_id=%s",
        claimed.id,
        claimed.entity_id,
        len(result_set),
        snapshot.id,
    )
    return _ack(event, action="completed", snapshot_id=snapshot.id, page_count=len(result_set))


async def _handle_failed(event: FailedEvent, *, repository: Any) -> dict[str, Any]:
    job_id = event.correlation.job_id
    if not job_id:
        return _uncorrelated(event)

    failed = await repository.mark_job_failed(job_id)
    if failed is None:
        logger.info("webhook failure ignored job_id=%s reason=unknown_or_terminal_job", job_id)
        return _ack(event, action="ignored", reason="unknown_or_terminal_job")

    logger.warning("crawl job failed job_id=%s reason=provider error=%s", job_id, event.error)
    return _ack(event, action="failed", reason="provider_failed")


async def _release_claim(repository: Any, job_id: str, status: str) -> None:
    try:
        released = await repository.transition_job(job_id, from_statuses=("processing",), to_status=status)
    except Exception:
        logger.exception("could not release completion claim job_id=%s", job_id)
        return
    if released is not None:
        logger.warning("completion claim released job_id=%s status=%s", job_id, status)


async def _load_job(repository: Any, job_id: str) -> CrawlJobRecord:
    job = await repository.get_crawl_job(job_id)
    if job is None:
        raise CorrelationError(f"no crawl job for id {job_id}")
    return job


async def _extract(extractor: Any, pages: list[Any]) -> tuple[dict[str, Any], float | None]:
    try:
        result = await extractor.extract(pages)
    except ExtractionError:
        raise
    except Exception as exc:
        logger.exception("extraction raised unexpectedly pages=%s", len(pages))
        raise ExtractionError(str(exc)) from exc

    if not result.success or not isinstance(result.extracted, dict):
        raise ExtractionError(result.error or "extraction returned no data")
    return result.extracted, result.confidence


def _uncorrelated(event: WebhookEvent) -> dict[str, Any]:
    logger.warning("webhook without correlation id event=%s raw_type=%s", event.kind, event.raw_type)
    return _ack(event, action="ignored", reason="missing_job_id")


def _ack(event: WebhookEvent, *, action: str, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "received": True,
        "event": event.kind,
        "job_id": event.correlation.job_id,
        "action": action,
    }
    payload.update(extra)
    return payload
