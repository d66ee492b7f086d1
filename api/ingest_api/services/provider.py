from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Literal

import httpx

from ingest_api.core.config import get_settings
from ingest_api.services.errors import ProviderSubmissionError

logger = logging.getLogger(__name__)

SubmitMode = Literal["async", "sync"]

WEBHOOK_EVENTS = ("page", "completed", "failed")
TERMINAL_CRAWL_STATES = {"completed", "failed", "cancelled"}
MAX_RESULT_PAGES_FOLLOWED = 20


@dataclass(slots=True)
class SubmitResult:
    success: bool
    provider_job_id: str | None = None
    error: str | None = None


class FirecrawlProvider:
    def __init__(
        self,
        api_key: str | None,
        base_url: str,
        *,
        page_limit: int = 15,
        submit_timeout_seconds: float = 30.0,
        sync_deadline_seconds: float = 360.0,
        poll_interval_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.page_limit = page_limit
        self.submit_timeout_seconds = submit_timeout_seconds
        self.sync_deadline_seconds = sync_deadline_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._transport = transport

    async def submit(
        self,
        domain: str,
        *,
        mode: SubmitMode = "async",
        callback_url: str | None = None,
        correlation: dict[str, Any] | None = None,
    ) -> SubmitResult:
        if not self.api_key:
            return SubmitResult(success=False, error="CRAWL_FIRECRAWL_API_KEY is not configured")
        if mode == "async" and not callback_url:
            return SubmitResult(success=False, error="async crawl requires a callback url")

        payload: dict[str, Any] = {
            "url": to_crawl_url(domain),
            "limit": self.page_limit,
            "scrapeOptions": {"formats": ["markdown"]},
        }
        if mode == "async":
            payload["webhook"] = {
                "url": callback_url,
                # The provider only echoes string metadata values.
                "metadata": {key: str(value) for key, value in (correlation or {}).items() if value is not None},
                "events": list(WEBHOOK_EVENTS),
            }

        try:
            async with self._client(self.submit_timeout_seconds) as client:
                response = await client.post(f"{self.base_url}/v1/crawl", json=payload, headers=self._headers())
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("crawl submission failed domain=%s mode=%s error=%s", domain, mode, exc)
            return SubmitResult(success=False, error=str(exc) or exc.__class__.__name__)

        if not isinstance(body, dict) or body.get("success") is False:
            error = body.get("error") if isinstance(body, dict) else None
            return SubmitResult(success=False, error=str(error or "provider rejected crawl"))

        provider_job_id = _provider_job_id(body)
        logger.info("crawl submitted domain=%s mode=%s provider_job_id=%s", domain, mode, provider_job_id)
        return SubmitResult(success=True, provider_job_id=provider_job_id)

    async def crawl(self, domain: str) -> list[Any]:
        """Run a crawl to completion and return its pages.

        Submission and polling share one deadline; on timeout the provider-side
        crawl is left running and the caller treats the job as failed.
        """
        submitted = await self.submit(domain, mode="sync")
        if not submitted.success:
            raise ProviderSubmissionError(submitted.error or "crawl submission failed")
        if not submitted.provider_job_id:
            raise ProviderSubmissionError("crawl submission returned no job id")

        try:
            return await asyncio.wait_for(
                self._wait_for_pages(submitted.provider_job_id),
                timeout=self.sync_deadline_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderSubmissionError(
                f"crawl {submitted.provider_job_id} did not finish within {self.sync_deadline_seconds:.0f}s"
            ) from exc

    async def _wait_for_pages(self, provider_job_id: str) -> list[Any]:
        status_url = f"{self.base_url}/v1/crawl/{provider_job_id}"
        async with self._client(self.submit_timeout_seconds) as client:
            while True:
                body = await self._get_json(client, status_url)
                state = str(body.get("status") or "").lower()
                if state in TERMINAL_CRAWL_STATES:
                    break
                await asyncio.sleep(self.poll_interval_seconds)

            if state != "completed":
                raise ProviderSubmissionError(f"crawl {provider_job_id} ended with status={state}")

            pages = list(body.get("data") or [])
            next_url = body.get("next")
            followed = 0
            while isinstance(next_url, str) and next_url and followed < MAX_RESULT_PAGES_FOLLOWED:
                body = await self._get_json(client, next_url)
                pages.extend(body.get("data") or [])
                next_url = body.get("next")
                followed += 1

        logger.info("crawl finished provider_job_id=%s pages=%s", provider_job_id, len(pages))
        return pages

    async def _get_json(self, client: httpx.AsyncClient, url: str) -> dict[str, Any]:
        try:
            response = await client.get(url, headers=self._headers())
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderSubmissionError(f"crawl status request failed: {exc}") from exc
        if not isinstance(body, dict):
            raise ProviderSubmissionError("crawl status response is not an object")
        return body

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}


def to_crawl_url(domain: str) -> str:
    cleaned = domain.strip()
    if cleaned.startswith(("http://", "https://")):
        return cleaned
    return f"https://{cleaned}"


def _provider_job_id(body: dict[str, Any]) -> str | None:
    nested = body.get("job")
    for candidate in (body.get("id"), body.get("jobId"), nested.get("id") if isinstance(nested, dict) else None):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


@lru_cache
def get_crawl_provider() -> FirecrawlProvider:
    settings = get_settings()
    return FirecrawlProvider(
        settings.firecrawl_api_key,
        settings.firecrawl_base_url,
        page_limit=settings.firecrawl_page_limit,
        submit_timeout_seconds=settings.provider_submit_timeout_seconds,
        sync_deadline_seconds=settings.provider_sync_deadline_seconds,
        poll_interval_seconds=settings.provider_poll_interval_seconds,
    )
