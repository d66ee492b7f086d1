from __future__ import annotations

import asyncio
from typing import Any

from ingest_api.services.normalize_runner import collapse_repeated_keys, run_normalization
from ingest_api.services.normalizer import normalize_snapshot
from ingest_api.services.repository import RepositoryError


def test_run_normalization_persists_facts_once(fake_repository) -> None:
    snapshot = fake_repository.add_snapshot(
        "school-1",
        {"programs": ["Private Pilot", "Instrument Rating"], "pricing": ["$9,500"], "location": "KSQL"},
    )

    first = asyncio.run(run_normalization(fake_repository, limit=20))
    second = asyncio.run(run_normalization(fake_repository, limit=20))

    assert first == {"processed": 1, "inserted": 4, "errors": []}
    assert second == {"processed": 0, "inserted": 0, "errors": []}
    stored = {fact.fact_key: fact.fact_value for fact in fake_repository.facts}
    assert stored == {
        "program.type": ["PPL", "IR"],
        "cost.band": "LOW",
        "cost.notes": "$9,500",
        "location.airport_code": "KSQL",
    }
    assert all(fact.as_of == snapshot.as_of and fact.provenance == "CRAWL" for fact in fake_repository.facts)


def test_non_object_payload_is_reported_without_stopping_batch(fake_repository) -> None:
    broken = fake_repository.add_snapshot("school-1", ["not", "an", "object"])
    fake_repository.add_snapshot("school-2", {"contact": "hello@flyhere.com"})

    result = asyncio.run(run_normalization(fake_repository, limit=20))

    assert result["processed"] == 2
    assert result["inserted"] == 1
    assert result["errors"] == [{"snapshot_id": broken.id, "error": "snapshot payload is not an object"}]


def test_collapse_repeated_keys_keeps_single_values_scalar(fake_repository) -> None:
    snapshot = fake_repository.add_snapshot("school-1", {"programs": ["CFI instructor course"], "location": "KSQL"})
    facts = normalize_snapshot(snapshot.raw_json, snapshot.as_of)

    assert collapse_repeated_keys(facts) == [("program.type", "CFI"), ("location.airport_code", "KSQL")]


def test_factless_snapshots_do_not_block_newer_ones(fake_repository) -> None:
    empty = fake_repository.add_snapshot("school-1", {"siteStatus": "404"})
    fake_repository.add_snapshot("school-2", {"programs": ["Private Pilot"]})

    first = asyncio.run(run_normalization(fake_repository, limit=1))
    second = asyncio.run(run_normalization(fake_repository, limit=1))
    third = asyncio.run(run_normalization(fake_repository, limit=1))

    assert first == {"processed": 1, "inserted": 0, "errors": []}
    assert second == {"processed": 1, "inserted": 1, "errors": []}
    assert third == {"processed": 0, "inserted": 0, "errors": []}
    assert empty.id in fake_repository.normalized_snapshot_ids
    assert [(fact.entity_id, fact.fact_value) for fact in fake_repository.facts] == [("school-2", "PPL")]


def test_non_object_payload_is_reported_once(fake_repository) -> None:
    broken = fake_repository.add_snapshot("school-1", "plain text")

    first = asyncio.run(run_normalization(fake_repository, limit=5))
    second = asyncio.run(run_normalization(fake_repository, limit=5))

    assert first["errors"] == [{"snapshot_id": broken.id, "error": "snapshot payload is not an object"}]
    assert second == {"processed": 0, "inserted": 0, "errors": []}


def test_store_failure_leaves_snapshot_queued(fake_repository) -> None:
    snapshot = fake_repository.add_snapshot("school-1", {"location": "KSQL"})
    store = fake_repository.store_snapshot_facts
    outages = [RepositoryError("fact insert failed: connection reset")]

    async def flaky_store(*args: Any, **kwargs: Any) -> int:
        if outages:
            raise outages.pop()
        return await store(*args, **kwargs)

    fake_repository.store_snapshot_facts = flaky_store

    failed = asyncio.run(run_normalization(fake_repository, limit=5))
    retried = asyncio.run(run_normalization(fake_repository, limit=5))

    assert failed["errors"] == [{"snapshot_id": snapshot.id, "error": "fact insert failed: connection reset"}]
    assert retried == {"processed": 1, "inserted": 1, "errors": []}
