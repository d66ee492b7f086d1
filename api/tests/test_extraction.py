from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import Any

from ingest_api.schemas.extraction import ExtractedSchoolData
from ingest_api.services.extraction import Extractor, combine_page_markdown, fill_derived_fields


class FakeCompletions:
    def __init__(self, content: str | None) -> None:
        self.content = content
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> SimpleNamespace:
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(content: str | None) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=FakeCompletions(content)))


def _extractor(client: Any, **kwargs: Any) -> Extractor:
    return Extractor(api_key=None, client=client, **kwargs)


PAGES = [
    {"url": "https://example-flight.com", "markdown": "# Welcome to Example Flight"},
    {"sourceURL": "https://example-flight.com/fleet", "content": "Two Cessna 172s"},
    {"url": "https://example-flight.com/empty", "markdown": "   "},
]


def test_combine_page_markdown_skips_pages_without_text() -> None:
    combined = combine_page_markdown(PAGES)

    assert combined.count("# Page: ") == 2
    assert combined.startswith("# Page: https://example-flight.com\n\n# Welcome to Example Flight")
    assert "# Page: https://example-flight.com/fleet\n\nTwo Cessna 172s" in combined
    assert "empty" not in combined


def test_fill_derived_fields_backfills_contact_and_location() -> None:
    payload = fill_derived_fields(
        {
            "email": "ops@flyhere.com",
            "phone": "(555) 123-4567",
            "locations": [{"address": "1 Airport Way", "airportCode": "KPAO"}],
        }
    )

    assert payload["contact"] == "ops@flyhere.com (555) 123-4567"
    assert payload["location"] == "KPAO"


def test_fill_derived_fields_keeps_existing_values() -> None:
    payload = fill_derived_fields({"contact": "call us", "location": "KSQL", "email": "a@b.co"})

    assert payload["contact"] == "call us"
    assert payload["location"] == "KSQL"


def test_schema_coerces_loose_model_output() -> None:
    data = ExtractedSchoolData.model_validate(
        {"programs": None, "instructorCount": 12, "siteStatus": "maintenance", "unexpected": True}
    )

    assert data.programs == []
    assert data.instructor_count == "12"
    assert data.site_status == "unknown"
    assert ExtractedSchoolData.model_validate({"siteStatus": 404}).site_status == "404"


def test_extract_returns_validated_payload() -> None:
    content = json.dumps(
        {
            "programs": ["Private Pilot"],
            "pricing": ["$165/hour"],
            "email": "ops@flyhere.com",
            "typicalTimeline": {"minMonths": 3, "maxMonths": 6},
            "siteStatus": "active",
        }
    )
    client = _client(content)

    result = asyncio.run(_extractor(client, model="test-model").extract(PAGES))

    assert result.success is True
    assert result.extracted["programs"] == ["Private Pilot"]
    assert result.extracted["contact"] == "ops@flyhere.com"
    assert result.extracted["typicalTimeline"] == {"minMonths": 3, "maxMonths": 6}
    assert result.extracted["siteStatus"] == "active"

    call = client.chat.completions.calls[0]
    assert call["model"] == "test-model"
    assert call["response_format"] == {"type": "json_object"}
    assert "Two Cessna 172s" in call["messages"][1]["content"]


def test_extract_marks_missing_pages() -> None:
    client = _client(json.dumps({"programs": []}))
    pages = [{"url": "https://gone.example", "markdown": "PAGE NOT FOUND"}]

    result = asyncio.run(_extractor(client).extract(pages))

    assert result.success is True
    assert result.extracted["siteStatus"] == "404"


def test_extract_truncates_input() -> None:
    client = _client(json.dumps({}))
    pages = [{"url": "https://example-flight.com", "markdown": "x" * 500}]

    asyncio.run(_extractor(client, max_input_chars=50).extract(pages))

    prompt = client.chat.completions.calls[0]["messages"][1]["content"]
    assert prompt.endswith("# Page: https://example-flight.com\n\n" + "x" * 14)


def test_extract_failures_are_reported_not_raised() -> None:
    empty = asyncio.run(_extractor(_client("{}")).extract([]))
    no_text = asyncio.run(_extractor(_client("{}")).extract([{"url": "https://a.example"}]))
    blank = asyncio.run(_extractor(_client("  ")).extract(PAGES))
    invalid = asyncio.run(_extractor(_client('{"programs": "not a list"}')).extract(PAGES))
    unconfigured = asyncio.run(Extractor(api_key=None).extract(PAGES))

    assert empty.error == "no pages found when crawling the site"
    assert no_text.error == "no markdown content found in crawled pages"
    assert blank.error == "no data extracted from crawled content"
    assert invalid.success is False
    assert invalid.error.startswith("extraction returned an invalid payload")
    assert unconfigured.success is False
    assert unconfigured.error == "CRAWL_LLM_API_KEY is not configured"
