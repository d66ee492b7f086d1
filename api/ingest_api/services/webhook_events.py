from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

EventKind = Literal["page", "completed", "failed", "started", "other"]

ALTERNATE_RESULT_FIELDS = ("results", "pages")


@dataclass(slots=True)
class Correlation:
    job_id: str | None
    entity_id: str | None = None
    domain: str | None = None
    provider_job_id: str | None = None


@dataclass(slots=True)
class PageEvent:
    correlation: Correlation
    pages: list[Any]
    raw: dict[str, Any] = field(repr=False)
    raw_type: str | None = None
    kind: EventKind = "page"


@dataclass(slots=True)
class CompletedEvent:
    correlation: Correlation
    data: list[Any]
    raw: dict[str, Any] = field(repr=False)
    raw_type: str | None = None
    inferred: bool = False
    kind: EventKind = "completed"

    def alternate_results(self) -> list[Any]:
        for name in ALTERNATE_RESULT_FIELDS:
            candidate = self.raw.get(name)
            if isinstance(candidate, list) and candidate:
                return list(candidate)
        return []


@dataclass(slots=True)
class FailedEvent:
    correlation: Correlation
    raw: dict[str, Any] = field(repr=False)
    raw_type: str | None = None
    error: str | None = None
    kind: EventKind = "failed"


@dataclass(slots=True)
class StartedEvent:
    correlation: Correlation
    raw: dict[str, Any] = field(repr=False)
    raw_type: str | None = None
    kind: EventKind = "started"


@dataclass(slots=True)
class OtherEvent:
    correlation: Correlation
    raw: dict[str, Any] = field(repr=False)
    raw_type: str | None = None
    kind: EventKind = "other"


WebhookEvent = PageEvent | CompletedEvent | FailedEvent | StartedEvent | OtherEvent


def classify_event_type(raw_type: str | None) -> EventKind | None:
    if raw_type is None:
        return None
    lowered = raw_type.strip().lower()
    if not lowered:
        return None
    if "completed" in lowered:
        return "completed"
    if "failed" in lowered:
        return "failed"
    if "started" in lowered:
        return "started"
    if "page" in lowered:
        return "page"
    return "other"


def parse_webhook_event(body: dict[str, Any]) -> WebhookEvent:
    raw_type = _first_text(body.get("event"), body.get("type"), body.get("status"))
    correlation = extract_correlation(body)
    kind = classify_event_type(raw_type)

    if kind == "page":
        return PageEvent(correlation=correlation, pages=as_result_list(body.get("data")), raw=body, raw_type=raw_type)
    if kind == "completed":
        return CompletedEvent(
            correlation=correlation,
            data=as_result_list(body.get("data")),
            raw=body,
            raw_type=raw_type,
        )
    if kind == "failed":
        return FailedEvent(
            correlation=correlation,
            raw=body,
            raw_type=raw_type,
            error=_first_text(body.get("error"), body.get("message")),
        )
    if kind == "started":
        return StartedEvent(correlation=correlation, raw=body, raw_type=raw_type)

    data = body.get("data")
    if kind is None and isinstance(data, list) and data:
        # No event marker at all, but a result array: treat as completion.
        return CompletedEvent(correlation=correlation, data=list(data), raw=body, inferred=True)
    return OtherEvent(correlation=correlation, raw=body, raw_type=raw_type)


def extract_correlation(body: dict[str, Any]) -> Correlation:
    raw_metadata = body.get("metadata")
    metadata: dict[str, Any] = raw_metadata if isinstance(raw_metadata, dict) else {}
    return Correlation(
        job_id=_first_text(metadata.get("jobId"), metadata.get("job_id"), metadata.get("queueId")),
        entity_id=_first_text(metadata.get("entityId"), metadata.get("entity_id")),
        domain=_first_text(metadata.get("domain")),
        provider_job_id=_first_text(body.get("id"), body.get("jobId")),
    )


def as_result_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return list(value)
    if isinstance(value, (dict, str)) and not value:
        return []
    return [value]


def _first_text(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str):
            stripped = value.strip()
            if stripped:
                return stripped
    return None
