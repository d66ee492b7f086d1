"""LLM-backed extraction of a structured school profile from crawled pages.

Pages are flattened into one markdown document, sent to an OpenAI-compatible
chat model in JSON mode, and validated against ``ExtractedSchoolData``. The
result becomes a Snapshot's raw payload.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from openai import AsyncOpenAI, OpenAIError
from pydantic import ValidationError

from ingest_api.core.config import get_settings
from ingest_api.schemas.extraction import ExtractedSchoolData
from ingest_api.services.errors import ExtractionError

logger = logging.getLogger(__name__)

PAGE_URL_FIELDS = ("url", "sourceURL", "link")
PAGE_TEXT_FIELDS = ("markdown", "content", "text")
MISSING_PAGE_MARKERS = ("404", "page not found", "not found", "error 404", "this page doesn't exist")

SYSTEM_PROMPT = "You extract flight school information from website content and answer with a single JSON object."

EXTRACTION_PROMPT = """Extract flight school information from the following website content.
The content is from multiple pages of a flight school website that have been crawled and converted to markdown.

IMPORTANT: If the content indicates a 404 error, "PAGE NOT FOUND", or similar error page, set siteStatus to "404" and extract whatever minimal information is available.

Return a JSON object with these keys:
- programs: list of training programs offered (e.g. Private Pilot, Instrument, Commercial, CFI, CFII, Multi-Engine)
- pricing: tuition or hourly rates with numbers and units (e.g. "$150/hour", "$15,000 total program cost")
- fleet: aircraft types and counts in the fleet (e.g. "2x Cessna 172", "1x Piper Arrow")
- location: primary address or airport code
- contact: contact information, only if email/phone cannot be separated
- email: contact email address
- phone: contact phone number
- locations: all locations, each with address, airportCode, city, state
- financingAvailable: whether financing is offered (true/false)
- financingUrl: URL to a financing page if mentioned
- financingTypes: types of financing (e.g. ["VA", "lender", "scholarship", "payment plans"])
- trainingType: training types offered (e.g. ["Part 61", "Part 141"])
- simulatorAvailable: whether flight simulators are available (true/false)
- instructorCount: number of instructors as a string (e.g. "5", "10+")
- typicalTimeline: object with minMonths and maxMonths for the primary program
- siteStatus: "active" if normal, "404" if page not found, "down" if site unavailable, "error" for other errors

If information is not found use [] for lists, "" or null for strings, false for booleans and null for objects.

Website content:
"""


@dataclass(slots=True)
class ExtractResult:
    success: bool
    extracted: dict[str, Any] | None = None
    confidence: float | None = None
    error: str | None = None


def combine_page_markdown(pages: list[Any]) -> str:
    parts: list[str] = []
    for page in pages:
        page_obj: dict[str, Any] = page if isinstance(page, dict) else {}
        page_url = _first_text(page_obj, PAGE_URL_FIELDS) or "unknown"
        markdown = _first_text(page_obj, PAGE_TEXT_FIELDS)
        if not markdown:
            logger.debug("crawled page has no markdown url=%s", page_url)
            continue
        parts.append(f"# Page: {page_url}\n\n{markdown}\n\n---\n\n")
    return "\n\n".join(parts)


def looks_like_missing_page(markdown: str) -> bool:
    lowered = markdown.lower()
    return any(marker in lowered for marker in MISSING_PAGE_MARKERS)


def fill_derived_fields(payload: dict[str, Any]) -> dict[str, Any]:
    """Backfill the single-string ``contact`` and ``location`` fields.

    Models often answer with the split ``email``/``phone`` and ``locations``
    fields only; the fact normalizer reads the single-string forms.
    """
    if not _text(payload.get("contact")):
        contact = " ".join(part for part in (_text(payload.get("email")), _text(payload.get("phone"))) if part)
        if contact:
            payload["contact"] = contact

    if not _text(payload.get("location")):
        locations = payload.get("locations")
        if isinstance(locations, list) and locations and isinstance(locations[0], dict):
            primary = locations[0]
            location = _text(primary.get("airportCode")) or _text(primary.get("address"))
            if location:
                payload["location"] = location
    return payload


class Extractor:
    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str | None = None,
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 60.0,
        max_input_chars: int = 100_000,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_input_chars = max_input_chars
        self._client = client

    async def extract(self, pages: list[Any]) -> ExtractResult:
        try:
            extracted = await self._extract(pages)
        except ExtractionError as exc:
            logger.warning("extraction failed pages=%s error=%s", len(pages), exc)
            return ExtractResult(success=False, error=str(exc))
        # The model does not report a confidence score.
        return ExtractResult(success=True, extracted=extracted, confidence=None)

    async def _extract(self, pages: list[Any]) -> dict[str, Any]:
        if not pages:
            raise ExtractionError("no pages found when crawling the site")

        markdown = combine_page_markdown(pages)
        if not markdown:
            raise ExtractionError("no markdown content found in crawled pages")

        client = self._get_client()
        prompt = EXTRACTION_PROMPT + markdown[: self.max_input_chars]
        try:
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=self.model,
                    temperature=0.1,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ExtractionError(f"extraction timed out after {self.timeout_seconds:.0f}s") from exc
        except OpenAIError as exc:
            raise ExtractionError(f"extraction request failed: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise ExtractionError("no data extracted from crawled content")

        try:
            data = ExtractedSchoolData.model_validate_json(content)
        except ValidationError as exc:
            raise ExtractionError(f"extraction returned an invalid payload: {exc.error_count()} errors") from exc

        payload = fill_derived_fields(data.to_payload())
        if looks_like_missing_page(markdown) and not payload.get("siteStatus"):
            payload["siteStatus"] = "404"
        return payload

    def _get_client(self) -> AsyncOpenAI:
        if self._client is not None:
            return self._client
        if not self.api_key:
            raise ExtractionError("CRAWL_LLM_API_KEY is not configured")
        self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url or None, timeout=self.timeout_seconds)
        return self._client


def _first_text(page: dict[str, Any], fields: tuple[str, ...]) -> str | None:
    for name in fields:
        value = _text(page.get(name))
        if value:
            return value
    return None


def _text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


@lru_cache
def get_extractor() -> Extractor:
    settings = get_settings()
    return Extractor(
        api_key=settings.llm_api_key,
        base_url=settings.llm_base_url,
        model=settings.llm_model,
        timeout_seconds=settings.llm_timeout_seconds,
        max_input_chars=settings.llm_max_input_chars,
    )
