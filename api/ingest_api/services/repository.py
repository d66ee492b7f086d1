from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from ingest_api.core.config import get_settings


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


JOB_STATUSES = ("pending", "queued", "processing", "completed", "failed")
ACTIVE_JOB_STATUSES = ("pending", "queued", "processing")
TERMINAL_JOB_STATUSES = ("completed", "failed")
CRAWL_PROVENANCE = "CRAWL"

_JOB_COLUMNS = """
  id::text as id,
  entity_id,
  domain,
  status,
  attempts,
  external_job_id,
  accumulated_pages,
  scheduled_at,
  created_at,
  updated_at
"""

_SNAPSHOT_COLUMNS = """
  id::text as id,
  entity_id,
  domain,
  as_of,
  raw_json,
  extract_confidence
"""

_FACT_COLUMNS = """
  entity_id,
  fact_key,
  fact_value,
  provenance,
  moderation_status,
  verified_by,
  verified_at,
  as_of,
  created_at
"""


@dataclass(slots=True)
class MachineCredentialRecord:
    module_db_id: str
    module_id: str
    scopes: list[str]
    key_hash: str


@dataclass(slots=True)
class EntityRecord:
    id: str
    canonical_name: str | None
    domain: str | None


@dataclass(slots=True)
class RefreshCandidate:
    entity_id: str
    domain: str | None
    last_snapshot_at: datetime | None
    is_verified: bool
    has_active_job: bool


@dataclass(slots=True)
class CrawlJobRecord:
    id: str
    entity_id: str
    domain: str
    status: str
    attempts: int
    scheduled_at: datetime
    created_at: datetime
    updated_at: datetime
    external_job_id: str | None = None
    accumulated_pages: list[Any] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass(slots=True)
class SnapshotRecord:
    id: str
    entity_id: str
    domain: str | None
    as_of: datetime
    raw_json: Any
    extract_confidence: float | None


@dataclass(slots=True)
class FactRecord:
    entity_id: str
    fact_key: str
    fact_value: Any
    provenance: str
    as_of: datetime
    moderation_status: str = "APPROVED"
    verified_by: str | None = None
    verified_at: datetime | None = None
    created_at: datetime | None = None


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              m.id::text as module_db_id,
              m.module_id,
              m.scopes,
              mc.key_hash
            from modules m
            join module_credentials mc on mc.module_id = m.id
            where m.module_id = $1
              and m.enabled = true
              and mc.is_active = true
              and mc.revoked_at is null
              and (mc.expires_at is null or mc.expires_at > now())
            """,
            module_id,
        )
        return [
            MachineCredentialRecord(
                module_db_id=row["module_db_id"],
                module_id=row["module_id"],
                scopes=list(row["scopes"] or []),
                key_hash=row["key_hash"],
            )
            for row in rows
        ]

    async def get_entity(self, entity_id: str) -> EntityRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "select id, canonical_name, domain from entities where id = $1",
            entity_id,
        )
        if not row:
            return None
        return EntityRecord(id=row["id"], canonical_name=row["canonical_name"], domain=row["domain"])

    async def list_refresh_candidates(self, *, after_entity_id: str | None, limit: int) -> list[RefreshCandidate]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              e.id as entity_id,
              e.domain,
              (select max(s.as_of) from snapshots s where s.entity_id = e.id) as last_snapshot_at,
              exists (
                select 1 from facts f
                where f.entity_id = e.id and f.verified_at is not null
              ) as is_verified,
              exists (
                select 1 from crawl_queue q
                where q.entity_id = e.id
                  and q.status in ('pending', 'queued', 'processing')
              ) as has_active_job
            from entities e
            where e.domain is not null
              and btrim(e.domain) <> ''
              and ($1::text is null or e.id > $1::text)
            order by e.id asc
            limit $2
            """,
            after_entity_id,
            max(1, min(limit, 1000)),
        )
        return [
            RefreshCandidate(
                entity_id=row["entity_id"],
                domain=row["domain"],
                last_snapshot_at=row["last_snapshot_at"],
                is_verified=bool(row["is_verified"]),
                has_active_job=bool(row["has_active_job"]),
            )
            for row in rows
        ]

    async def enqueue_crawl_job(self, *, entity_id: str, domain: str) -> CrawlJobRecord:
        normalized_domain = self._coerce_text(domain)
        if not normalized_domain:
            raise RepositoryValidationError("domain must be a non-empty string")

        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into crawl_queue (entity_id, domain, status, attempts, scheduled_at)
                values ($1, $2, 'pending', 0, now())
                returning {_JOB_COLUMNS}
                """,
                entity_id,
                normalized_domain,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("entity already has an active crawl job") from exc
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("entity not found") from exc
        except asyncpg.PostgresError as exc:
            raise RepositoryError(f"crawl job insert failed: {exc}") from exc
        return self._job_row_to_record(row)

    async def find_active_job(self, entity_id: str) -> CrawlJobRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_JOB_COLUMNS}
            from crawl_queue
            where entity_id = $1 and status in ('pending', 'queued', 'processing')
            order by created_at desc
            limit 1
            """,
            entity_id,
        )
        return self._job_row_to_record(row) if row else None

    async def get_crawl_job(self, job_id: str) -> CrawlJobRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_JOB_COLUMNS} from crawl_queue where id = $1::uuid",
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._job_row_to_record(row) if row else None

    async def list_pending_jobs(self, limit: int) -> list[CrawlJobRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from crawl_queue
            where status = 'pending'
            order by scheduled_at asc, created_at asc
            limit $1
            """,
            max(1, min(limit, 1000)),
        )
        return [self._job_row_to_record(row) for row in rows]

    async def list_crawl_jobs(self, *, status: str | None, limit: int, offset: int) -> list[CrawlJobRecord]:
        if status is not None and status not in JOB_STATUSES:
            raise RepositoryValidationError(f"status must be one of: {', '.join(JOB_STATUSES)}")

        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from crawl_queue
            where ($1::text is null or status = $1::text)
            order by scheduled_at desc, created_at desc
            limit $2
            offset $3
            """,
            status,
            limit,
            offset,
        )
        return [self._job_row_to_record(row) for row in rows]

    async def transition_job(
        self,
        job_id: str,
        *,
        from_statuses: tuple[str, ...],
        to_status: str,
    ) -> CrawlJobRecord | None:
        """Move a job between statuses if it is currently in ``from_statuses``.

        Returns ``None`` when the job is missing or in another status; callers
        use this as the atomic claim for competing deliveries.
        """
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update crawl_queue
            set status = $2, updated_at = now()
            where id = $1::uuid and status = any($3::text[])
            returning {_JOB_COLUMNS}
            """,
            job_id,
            to_status,
            list(from_statuses),
        )
        return self._job_row_to_record(row) if row else None

    async def set_external_job_id(self, job_id: str, external_job_id: str | None) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update crawl_queue
            set external_job_id = $2, updated_at = now()
            where id = $1::uuid
            """,
            job_id,
            external_job_id,
        )

    async def append_accumulated_pages(self, job_id: str, pages: list[Any]) -> int | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                update crawl_queue
                set
                  accumulated_pages = coalesce(accumulated_pages, '[]'::jsonb) || $2::jsonb,
                  updated_at = now()
                where id = $1::uuid and status not in ('completed', 'failed')
                returning jsonb_array_length(accumulated_pages) as page_count
                """,
                job_id,
                json.dumps(pages),
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return int(row["page_count"]) if row else None

    async def mark_job_failed(self, job_id: str) -> CrawlJobRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update crawl_queue
                set status = 'failed', attempts = attempts + 1, updated_at = now()
                where id = $1::uuid and status not in ('completed', 'failed')
                returning {_JOB_COLUMNS}
                """,
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._job_row_to_record(row) if row else None

    async def complete_job_with_snapshot(
        self,
        job_id: str,
        *,
        entity_id: str,
        domain: str | None,
        raw_json: dict[str, Any],
        extract_confidence: float | None,
    ) -> SnapshotRecord:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                completed = await conn.fetchval(
                    """
                    update crawl_queue
                    set status = 'completed', accumulated_pages = null, updated_at = now()
                    where id = $1::uuid and status = 'processing'
                    returning id::text
                    """,
                    job_id,
                )
                if not completed:
                    raise RepositoryConflictError("job is not processing")

                row = await conn.fetchrow(
                    f"""
                    insert into snapshots (entity_id, domain, as_of, raw_json, extract_confidence)
                    values ($1, $2, now(), $3::jsonb, $4)
                    returning {_SNAPSHOT_COLUMNS}
                    """,
                    entity_id,
                    domain,
                    json.dumps(raw_json),
                    extract_confidence,
                )
                return self._snapshot_row_to_record(row)

    async def reset_failed_job(self, job_id: str) -> CrawlJobRecord:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update crawl_queue
                        set
                          status = 'pending',
                          attempts = attempts + 1,
                          accumulated_pages = null,
                          external_job_id = null,
                          scheduled_at = now(),
                          updated_at = now()
                        where id = $1::uuid and status = 'failed'
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                    )
                    if not row:
                        exists = await conn.fetchval("select 1 from crawl_queue where id = $1::uuid", job_id)
                        if not exists:
                            raise RepositoryNotFoundError("crawl job not found")
                        raise RepositoryConflictError("only failed jobs can be reset")
                    return self._job_row_to_record(row)
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("entity already has an active crawl job") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("crawl job not found") from exc

    async def list_snapshots(self, entity_id: str, *, limit: int) -> list[SnapshotRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_SNAPSHOT_COLUMNS}
            from snapshots
            where entity_id = $1
            order by as_of desc
            limit $2
            """,
            entity_id,
            limit,
        )
        return [self._snapshot_row_to_record(row) for row in rows]

    async def list_unnormalized_snapshots(self, limit: int) -> list[SnapshotRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_SNAPSHOT_COLUMNS}
            from snapshots s
            where s.raw_json is not null and s.normalized_at is null
            order by s.as_of asc
            limit $1
            """,
            max(1, min(limit, 1000)),
        )
        return [self._snapshot_row_to_record(row) for row in rows]

    async def store_snapshot_facts(
        self,
        snapshot_id: str,
        *,
        entity_id: str,
        as_of: datetime,
        facts: list[tuple[str, Any]],
        provenance: str = CRAWL_PROVENANCE,
    ) -> int:
        """Insert a snapshot's facts and mark the snapshot normalized in one transaction.

        An empty ``facts`` list still marks the snapshot, so fact-less payloads
        leave the runner's queue.
        """
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    inserted = 0
                    for fact_key, fact_value in facts:
                        status = await conn.execute(
                            """
                            insert into facts (entity_id, fact_key, fact_value, provenance, as_of)
                            values ($1, $2, $3::jsonb, $4, $5)
                            on conflict (entity_id, fact_key, as_of) do nothing
                            """,
                            entity_id,
                            fact_key,
                            json.dumps(fact_value),
                            provenance,
                            as_of,
                        )
                        inserted += self._affected_rows(status)
                    await conn.execute(
                        "update snapshots set normalized_at = now() where id = $1::uuid",
                        snapshot_id,
                    )
                    return inserted
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("entity not found") from exc
        except asyncpg.PostgresError as exc:
            raise RepositoryError(f"fact insert failed: {exc}") from exc

    async def list_facts(self, entity_id: str, *, fact_key: str | None = None) -> list[FactRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_FACT_COLUMNS}
            from facts
            where entity_id = $1 and ($2::text is null or fact_key = $2::text)
            order by as_of desc, fact_key asc
            """,
            entity_id,
            fact_key,
        )
        return [self._fact_row_to_record(row) for row in rows]

    async def append_verified_fact(self, *, entity_id: str, fact_key: str, verified_by: str | None) -> FactRecord:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                latest = await conn.fetchrow(
                    f"""
                    select {_FACT_COLUMNS}
                    from facts
                    where entity_id = $1 and fact_key = $2
                    order by as_of desc
                    limit 1
                    """,
                    entity_id,
                    fact_key,
                )
                if not latest:
                    raise RepositoryNotFoundError("fact not found")

                row = await conn.fetchrow(
                    f"""
                    insert into facts (
                      entity_id,
                      fact_key,
                      fact_value,
                      provenance,
                      moderation_status,
                      verified_by,
                      verified_at,
                      as_of
                    )
                    values ($1, $2, $3::jsonb, $4, $5, $6, now(), now())
                    returning {_FACT_COLUMNS}
                    """,
                    entity_id,
                    fact_key,
                    json.dumps(self._coerce_json_value(latest["fact_value"])),
                    latest["provenance"],
                    latest["moderation_status"],
                    self._coerce_text(verified_by),
                )
                return self._fact_row_to_record(row)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("CRAWL_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @classmethod
    def _job_row_to_record(cls, row: asyncpg.Record) -> CrawlJobRecord:
        pages = cls._coerce_json_value(row["accumulated_pages"])
        return CrawlJobRecord(
            id=row["id"],
            entity_id=row["entity_id"],
            domain=row["domain"],
            status=row["status"],
            attempts=int(row["attempts"]),
            external_job_id=row["external_job_id"],
            accumulated_pages=pages if isinstance(pages, list) else [],
            scheduled_at=row["scheduled_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def _snapshot_row_to_record(cls, row: asyncpg.Record) -> SnapshotRecord:
        confidence = row["extract_confidence"]
        return SnapshotRecord(
            id=row["id"],
            entity_id=row["entity_id"],
            domain=row["domain"],
            as_of=row["as_of"],
            raw_json=cls._coerce_json_value(row["raw_json"]),
            extract_confidence=float(confidence) if confidence is not None else None,
        )

    @classmethod
    def _fact_row_to_record(cls, row: asyncpg.Record) -> FactRecord:
        return FactRecord(
            entity_id=row["entity_id"],
            fact_key=row["fact_key"],
            fact_value=cls._coerce_json_value(row["fact_value"]),
            provenance=row["provenance"],
            moderation_status=row["moderation_status"],
            verified_by=row["verified_by"],
            verified_at=row["verified_at"],
            as_of=row["as_of"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _affected_rows(status: str) -> int:
        # asyncpg returns command tags such as "INSERT 0 1".
        try:
            return int(status.rsplit(" ", 1)[-1])
        except (AttributeError, ValueError):
            return 0

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_json_value(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value
        return value


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
