from __future__ import annotations

import hashlib
import uuid
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

from ingest_api.core.config import Settings, get_settings
from ingest_api.main import app
from ingest_api.services.extraction import ExtractResult, get_extractor
from ingest_api.services.provider import SubmitResult, get_crawl_provider
from ingest_api.services.repository import (
    ACTIVE_JOB_STATUSES,
    CRAWL_PROVENANCE,
    TERMINAL_JOB_STATUSES,
    CrawlJobRecord,
    EntityRecord,
    FactRecord,
    MachineCredentialRecord,
    RefreshCandidate,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    SnapshotRecord,
    get_repository,
)

TEST_MODULE_ID = "test-worker"
TEST_API_KEY = "test-worker-key"
MACHINE_HEADERS = {"X-Module-Id": TEST_MODULE_ID, "X-API-Key": TEST_API_KEY}
ALL_SCOPES = ["crawl:read", "crawl:write", "crawl:admin", "facts:write"]
WEBHOOK_SECRET = "test-webhook-secret"


class FakeCrawlRepository:
    def __init__(self, *, scopes: list[str] | None = None) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.scopes = list(ALL_SCOPES if scopes is None else scopes)
        self.entities: dict[str, EntityRecord] = {}
        self.jobs: dict[str, CrawlJobRecord] = {}
        self.snapshots: list[SnapshotRecord] = []
        self.facts: list[FactRecord] = []
        self.normalized_snapshot_ids: set[str] = set()

    def tick(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now

    def add_entity(self, entity_id: str, domain: str | None = "example-flight.com") -> EntityRecord:
        entity = EntityRecord(id=entity_id, canonical_name=f"School {entity_id}", domain=domain)
        self.entities[entity_id] = entity
        return entity

    def add_job(self, entity_id: str, *, status: str = "pending", pages: list[Any] | None = None) -> CrawlJobRecord:
        entity = self.entities.get(entity_id) or self.add_entity(entity_id)
        created = self.tick()
        job = CrawlJobRecord(
            id=str(uuid.uuid4()),
            entity_id=entity_id,
            domain=entity.domain or "",
            status=status,
            attempts=0,
            scheduled_at=created,
            created_at=created,
            updated_at=created,
            accumulated_pages=list(pages or []),
        )
        self.jobs[job.id] = job
        return job

    def add_snapshot(self, entity_id: str, raw_json: Any, *, as_of: datetime | None = None) -> SnapshotRecord:
        entity = self.entities.get(entity_id) or self.add_entity(entity_id)
        snapshot = SnapshotRecord(
            id=str(uuid.uuid4()),
            entity_id=entity_id,
            domain=entity.domain,
            as_of=as_of or self.tick(),
            raw_json=raw_json,
            extract_confidence=None,
        )
        self.snapshots.append(snapshot)
        return snapshot

    def add_fact(self, entity_id: str, fact_key: str, fact_value: Any, *, verified: bool = False) -> FactRecord:
        as_of = self.tick()
        fact = FactRecord(
            entity_id=entity_id,
            fact_key=fact_key,
            fact_value=fact_value,
            provenance=CRAWL_PROVENANCE,
            as_of=as_of,
            verified_by="moderator" if verified else None,
            verified_at=as_of if verified else None,
            created_at=as_of,
        )
        self.facts.append(fact)
        return fact

    def snapshots_for(self, entity_id: str) -> list[SnapshotRecord]:
        return [snapshot for snapshot in self.snapshots if snapshot.entity_id == entity_id]

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        if module_id != TEST_MODULE_ID:
            return []
        return [
            MachineCredentialRecord(
                module_db_id="00000000-0000-0000-0000-000000000001",
                module_id=TEST_MODULE_ID,
                scopes=list(self.scopes),
                key_hash=hashlib.sha256(TEST_API_KEY.encode("utf-8")).hexdigest(),
            )
        ]

    async def get_entity(self, entity_id: str) -> EntityRecord | None:
        return self.entities.get(entity_id)

    async def list_refresh_candidates(self, *, after_entity_id: str | None, limit: int) -> list[RefreshCandidate]:
        candidates: list[RefreshCandidate] = []
        for entity_id in sorted(self.entities):
            entity = self.entities[entity_id]
            if not (entity.domain or "").strip():
                continue
            if after_entity_id is not None and entity_id <= after_entity_id:
                continue
            snapshot_times = [snapshot.as_of for snapshot in self.snapshots_for(entity_id)]
            candidates.append(
                RefreshCandidate(
                    entity_id=entity_id,
                    domain=entity.domain,
                    last_snapshot_at=max(snapshot_times) if snapshot_times else None,
                    is_verified=any(
                        fact.entity_id == entity_id and fact.verified_at is not None for fact in self.facts
                    ),
                    has_active_job=any(
                        job.entity_id == entity_id and job.status in ACTIVE_JOB_STATUSES for job in self.jobs.values()
                    ),
                )
            )
            if len(candidates) >= limit:
                break
        return candidates

    async def enqueue_crawl_job(self, *, entity_id: str, domain: str) -> CrawlJobRecord:
        if not (domain or "").strip():
            raise RepositoryValidationError("domain must be a non-empty string")
        if entity_id not in self.entities:
            raise RepositoryNotFoundError("entity not found")
        if await self.find_active_job(entity_id) is not None:
            raise RepositoryConflictError("entity already has an active crawl job")
        return self.add_job(entity_id)

    async def find_active_job(self, entity_id: str) -> CrawlJobRecord | None:
        for job in self.jobs.values():
            if job.entity_id == entity_id and job.status in ACTIVE_JOB_STATUSES:
                return job
        return None

    async def get_crawl_job(self, job_id: str) -> CrawlJobRecord | None:
        return self.jobs.get(job_id)

    async def list_pending_jobs(self, limit: int) -> list[CrawlJobRecord]:
        pending = [job for job in self.jobs.values() if job.status == "pending"]
        return sorted(pending, key=lambda job: job.scheduled_at)[:limit]

    async def list_crawl_jobs(self, *, status: str | None, limit: int, offset: int) -> list[CrawlJobRecord]:
        jobs = [job for job in self.jobs.values() if status is None or job.status == status]
        jobs.sort(key=lambda job: job.scheduled_at, reverse=True)
        return jobs[offset : offset + limit]

    async def transition_job(
        self,
        job_id: str,
        *,
        from_statuses: tuple[str, ...],
        to_status: str,
    ) -> CrawlJobRecord | None:
        job = self.jobs.get(job_id)
        if job is None or job.status not in from_statuses:
            return None
        job.status = to_status
        job.updated_at = self.tick()
        return job

    async def set_external_job_id(self, job_id: str, external_job_id: str | None) -> None:
        self.jobs[job_id].external_job_id = external_job_id

    async def append_accumulated_pages(self, job_id: str, pages: list[Any]) -> int | None:
        job = self.jobs.get(job_id)
        if job is None or job.status in TERMINAL_JOB_STATUSES:
            return None
        job.accumulated_pages.extend(pages)
        return len(job.accumulated_pages)

    async def mark_job_failed(self, job_id: str) -> CrawlJobRecord | None:
        job = self.jobs.get(job_id)
        if job is None or job.status in TERMINAL_JOB_STATUSES:
            return None
        job.status = "failed"
        job.attempts += 1
        job.updated_at = self.tick()
        return job

    async def complete_job_with_snapshot(
        self,
        job_id: str,
        *,
        entity_id: str,
        domain: str | None,
        raw_json: dict[str, Any],
        extract_confidence: float | None,
    ) -> SnapshotRecord:
        job = self.jobs.get(job_id)
        if job is None or job.status != "processing":
            raise RepositoryConflictError("job is not processing")
        job.status = "completed"
        job.accumulated_pages = []
        job.updated_at = self.tick()
        snapshot = SnapshotRecord(
            id=str(uuid.uuid4()),
            entity_id=entity_id,
            domain=domain,
            as_of=self.tick(),
            raw_json=raw_json,
            extract_confidence=extract_confidence,
        )
        self.snapshots.append(snapshot)
        return snapshot

    async def reset_failed_job(self, job_id: str) -> CrawlJobRecord:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("crawl job not found")
        if job.status != "failed":
            raise RepositoryConflictError("only failed jobs can be reset")
        job.status = "pending"
        job.attempts += 1
        job.accumulated_pages = []
        job.external_job_id = None
        job.scheduled_at = self.tick()
        return job

    async def list_snapshots(self, entity_id: str, *, limit: int) -> list[SnapshotRecord]:
        rows = sorted(self.snapshots_for(entity_id), key=lambda snapshot: snapshot.as_of, reverse=True)
        return rows[:limit]

    async def list_unnormalized_snapshots(self, limit: int) -> list[SnapshotRecord]:
        rows = [
            snapshot
            for snapshot in self.snapshots
            if snapshot.raw_json is not None and snapshot.id not in self.normalized_snapshot_ids
        ]
        return sorted(rows, key=lambda snapshot: snapshot.as_of)[:limit]

    async def store_snapshot_facts(
        self,
        snapshot_id: str,
        *,
        entity_id: str,
        as_of: datetime,
        facts: list[tuple[str, Any]],
        provenance: str = CRAWL_PROVENANCE,
    ) -> int:
        existing = {(fact.entity_id, fact.fact_key, fact.as_of) for fact in self.facts}
        inserted = 0
        for fact_key, fact_value in facts:
            if (entity_id, fact_key, as_of) in existing:
                continue
            self.facts.append(
                FactRecord(
                    entity_id=entity_id,
                    fact_key=fact_key,
                    fact_value=fact_value,
                    provenance=provenance,
                    as_of=as_of,
                    created_at=self.now,
                )
            )
            existing.add((entity_id, fact_key, as_of))
            inserted += 1
        self.normalized_snapshot_ids.add(snapshot_id)
        return inserted

    async def list_facts(self, entity_id: str, *, fact_key: str | None = None) -> list[FactRecord]:
        rows = [
            fact
            for fact in self.facts
            if fact.entity_id == entity_id and (fact_key is None or fact.fact_key == fact_key)
        ]
        return sorted(rows, key=lambda fact: fact.as_of, reverse=True)

    async def append_verified_fact(self, *, entity_id: str, fact_key: str, verified_by: str | None) -> FactRecord:
        history = await self.list_facts(entity_id, fact_key=fact_key)
        if not history:
            raise RepositoryNotFoundError("fact not found")
        latest = history[0]
        as_of = self.tick()
        fact = FactRecord(
            entity_id=entity_id,
            fact_key=fact_key,
            fact_value=latest.fact_value,
            provenance=latest.provenance,
            moderation_status=latest.moderation_status,
            verified_by=verified_by,
            verified_at=as_of,
            as_of=as_of,
            created_at=as_of,
        )
        self.facts.append(fact)
        return fact


class FakeProvider:
    def __init__(self) -> None:
        self.submissions: list[dict[str, Any]] = []
        self.crawled: list[str] = []
        self.submit_result = SubmitResult(success=True, provider_job_id="fc-123")
        self.pages: list[Any] = [{"url": "https://example-flight.com", "markdown": "# Welcome"}]
        self.failing_domains: set[str] = set()

    async def submit(
        self,
        domain: str,
        *,
        mode: str = "async",
        callback_url: str | None = None,
        correlation: dict[str, Any] | None = None,
    ) -> SubmitResult:
        if domain in self.failing_domains:
            raise RuntimeError(f"provider exploded for {domain}")
        self.submissions.append(
            {"domain": domain, "mode": mode, "callback_url": callback_url, "correlation": correlation}
        )
        return self.submit_result

    async def crawl(self, domain: str) -> list[Any]:
        if domain in self.failing_domains:
            raise RuntimeError(f"provider exploded for {domain}")
        self.crawled.append(domain)
        return list(self.pages)


class FakeExtractor:
    def __init__(self, result: ExtractResult | None = None) -> None:
        self.calls: list[list[Any]] = []
        self.result = result

    async def extract(self, pages: list[Any]) -> ExtractResult:
        self.calls.append(list(pages))
        if self.result is not None:
            return self.result
        return ExtractResult(
            success=True,
            extracted={"programs": ["Private Pilot License"], "page_count": len(pages)},
            confidence=0.8,
        )


@pytest.fixture
def fake_repository() -> FakeCrawlRepository:
    return FakeCrawlRepository()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def fake_extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def machine_headers() -> dict[str, str]:
    return dict(MACHINE_HEADERS)


@pytest.fixture
def webhook_secret() -> str:
    return WEBHOOK_SECRET


@pytest.fixture
def api_settings() -> Settings:
    return Settings(
        webhook_secret=WEBHOOK_SECRET,
        public_base_url="https://ingest.example.test",
        otel_enabled=False,
    )


@pytest.fixture
def api_client(
    fake_repository: FakeCrawlRepository,
    fake_provider: FakeProvider,
    fake_extractor: FakeExtractor,
    api_settings: Settings,
) -> Iterator[TestClient]:
    app.dependency_overrides[get_repository] = lambda: fake_repository
    app.dependency_overrides[get_crawl_provider] = lambda: fake_provider
    app.dependency_overrides[get_extractor] = lambda: fake_extractor
    app.dependency_overrides[get_settings] = lambda: api_settings

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
