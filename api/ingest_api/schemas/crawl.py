from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

CrawlJobStatus = Literal["pending", "queued", "processing", "completed", "failed"]


class CrawlJobOut(BaseModel):
    id: str
    entity_id: str
    domain: str
    status: CrawlJobStatus
    attempts: int
    external_job_id: str | None = None
    accumulated_page_count: int = 0
    scheduled_at: datetime
    created_at: datetime
    updated_at: datetime


class EnqueueRequest(BaseModel):
    entity_id: str = Field(min_length=1, max_length=200)


class EnqueueResponse(BaseModel):
    job: CrawlJobOut
    created: bool


class JobError(BaseModel):
    id: str
    error: str


class DispatchSummaryOut(BaseModel):
    mode: Literal["async", "sync"]
    processed: int
    queued: int
    completed: int
    failed: int
    skipped: int
    errors: list[JobError] = Field(default_factory=list)


class EntityError(BaseModel):
    entity_id: str
    error: str


class RefreshRunOut(BaseModel):
    enqueued: int
    skipped: int
    errors: list[EntityError] = Field(default_factory=list)


class SnapshotError(BaseModel):
    snapshot_id: str
    error: str


class NormalizeRunOut(BaseModel):
    processed: int
    inserted: int
    errors: list[SnapshotError] = Field(default_factory=list)
