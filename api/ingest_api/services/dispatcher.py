from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from opentelemetry import trace

from ingest_api.services.errors import ExtractionError, ProviderSubmissionError
from ingest_api.services.repository import CrawlJobRecord

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class DispatchSummary:
    mode: str
    processed: int = 0
    queued: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


async def dispatch_pending_jobs(
    repository: Any,
    provider: Any,
    extractor: Any,
    *,
    limit: int,
    callback_url: str | None,
    concurrency: int = 5,
) -> DispatchSummary:
    """Hand the oldest pending jobs to the crawl provider.

    With a callback URL each job is submitted and parked in ``queued`` until
    the webhook reports back; without one the crawl runs inline and the
    snapshot is written before returning. A failing job never stops the batch.
    """
    mode = "async" if callback_url else "sync"
    summary = DispatchSummary(mode=mode)

    with tracer.start_as_current_span("crawl.dispatch") as span:
        span.set_attribute("crawl.dispatch.mode", mode)
        jobs = await repository.list_pending_jobs(limit)
        span.set_attribute("crawl.dispatch.selected", len(jobs))
        if not jobs:
            return summary

        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def run_one(job: CrawlJobRecord) -> None:
            async with semaphore:
                with tracer.start_as_current_span("crawl.dispatch.job") as job_span:
                    job_span.set_attribute("crawl.job_id", job.id)
                    job_span.set_attribute("crawl.entity_id", job.entity_id)
                    try:
                        if mode == "async":
                            outcome, error = await _submit_job(repository, provider, job, callback_url or "")
                        else:
                            outcome, error = await _crawl_job_inline(repository, provider, extractor, job)
                    except Exception as exc:
                        logger.exception("dispatch failed job_id=%s entity_id=%s", job.id, job.entity_id)
                        await _fail_after_error(repository, job.id)
                        outcome, error = "failed", str(exc) or exc.__class__.__name__

                    job_span.set_attribute("crawl.dispatch.outcome", outcome)
                    _record(summary, job, outcome, error)

        await asyncio.gather(*(run_one(job) for job in jobs))
        span.set_attribute("crawl.dispatch.failed", summary.failed)

    logger.info(
        "dispatch finished mode=%s processed=%s queued=%s completed=%s failed=%s skipped=%s",
        summary.mode,
        summary.processed,
        summary.queued,
        summary.completed,
        summary.failed,
        summary.skipped,
    )
    return summary


async def _submit_job(
    repository: Any,
    provider: Any,
    job: CrawlJobRecord,
    callback_url: str,
) -> tuple[str, str | None]:
    claimed = await repository.transition_job(job.id, from_statuses=("pending",), to_status="queued")
    if claimed is None:
        return "skipped", None

    try:
        result = await provider.submit(
            job.domain,
            mode="async",
            callback_url=callback_url,
            correlation={"jobId": job.id, "entityId": job.entity_id, "domain": job.domain},
        )
        if not result.success:
            raise ProviderSubmissionError(result.error or "crawl submission failed")
    except ProviderSubmissionError as exc:
        logger.warning("crawl submission failed job_id=%s domain=%s error=%s", job.id, job.domain, exc)
        await repository.mark_job_failed(job.id)
        return "failed", str(exc)

    await repository.set_external_job_id(job.id, result.provider_job_id)
    logger.info("crawl job queued job_id=%s provider_job_id=%s", job.id, result.provider_job_id)
    return "queued", None


async def _crawl_job_inline(
    repository: Any,
    provider: Any,
    extractor: Any,
    job: CrawlJobRecord,
) -> tuple[str, str | None]:
    claimed = await repository.transition_job(job.id, from_statuses=("pending",), to_status="processing")
    if claimed is None:
        return "skipped", None

    try:
        pages = await provider.crawl(job.domain)
        result = await extractor.extract(pages)
        if not result.success or not isinstance(result.extracted, dict):
            raise ExtractionError(result.error or "extraction returned no data")
    except (ProviderSubmissionError, ExtractionError) as exc:
        logger.warning("crawl job failed job_id=%s domain=%s error=%s", job.id, job.domain, exc)
        await repository.mark_job_failed(job.id)
        return "failed", str(exc)

    snapshot = await repository.complete_job_with_snapshot(
        job.id,
        entity_id=job.entity_id,
        domain=job.domain,
        raw_json=result.extracted,
        extract_confidence=result.confidence,
    )
    logger.info("crawl job completed job_id=%s pages=%s snapshot_id=%s", job.id, len(pages), snapshot.id)
    return "completed", None


async def _fail_after_error(repository: Any, job_id: str) -> None:
    try:
        await repository.mark_job_failed(job_id)
    except Exception:
        logger.exception("could not mark job failed job_id=%s", job_id)


def _record(summary: DispatchSummary, job: CrawlJobRecord, outcome: str, error: str | None) -> None:
    summary.processed += 1
    if outcome == "queued":
        summary.queued += 1
    elif outcome == "completed":
        summary.completed += 1
    elif outcome == "failed":
        summary.failed += 1
    else:
        summary.skipped += 1
    if error:
        summary.errors.append({"id": job.id, "error": error})
