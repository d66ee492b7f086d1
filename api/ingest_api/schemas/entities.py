from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class SnapshotOut(BaseModel):
    id: str
    entity_id: str
    domain: str | None = None
    as_of: datetime
    raw_json: Any = None
    extract_confidence: float | None = None


class FactOut(BaseModel):
    entity_id: str
    fact_key: str
    fact_value: Any = None
    provenance: str
    moderation_status: str
    verified_by: str | None = None
    verified_at: datetime | None = None
    as_of: datetime
    created_at: datetime | None = None


class FactVerifyRequest(BaseModel):
    fact_key: str = Field(min_length=1, max_length=100)
    verified_by: str | None = Field(default=None, max_length=200)


class ChangesOut(BaseModel):
    entity_id: str
    changed_keys: list[str] = Field(default_factory=list)
