from __future__ import annotations

import logging
from typing import Any

from opentelemetry import trace

from ingest_api.services.normalizer import NormalizedFact, normalize_snapshot
from ingest_api.services.repository import CRAWL_PROVENANCE, RepositoryError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def collapse_repeated_keys(facts: list[NormalizedFact]) -> list[tuple[str, Any]]:
    """Fold facts that share a key into one list-valued fact.

    A snapshot persists at most one row per (entity, key, as_of), so the
    several ``program.type`` codes of one pass are stored together, first-seen
    order preserved.
    """
    grouped: dict[str, list[Any]] = {}
    for fact in facts:
        grouped.setdefault(fact.fact_key, []).append(fact.fact_value)
    return [(key, values[0] if len(values) == 1 else values) for key, values in grouped.items()]


async def run_normalization(repository: Any, *, limit: int) -> dict[str, Any]:
    result: dict[str, Any] = {"processed": 0, "inserted": 0, "errors": []}

    with tracer.start_as_current_span("facts.normalize") as span:
        snapshots = await repository.list_unnormalized_snapshots(limit)
        span.set_attribute("facts.normalize.selected", len(snapshots))

        for snapshot in snapshots:
            result["processed"] += 1
            pairs: list[tuple[str, Any]] = []
            if isinstance(snapshot.raw_json, dict):
                pairs = collapse_repeated_keys(normalize_snapshot(snapshot.raw_json, snapshot.as_of))
                if not pairs:
                    logger.debug("snapshot produced no facts snapshot_id=%s", snapshot.id)
            else:
                result["errors"].append({"snapshot_id": snapshot.id, "error": "snapshot payload is not an object"})

            # An empty list still marks the snapshot evaluated.
            try:
                inserted = await repository.store_snapshot_facts(
                    snapshot.id,
                    entity_id=snapshot.entity_id,
                    as_of=snapshot.as_of,
                    facts=pairs,
                    provenance=CRAWL_PROVENANCE,
                )
            except RepositoryError as exc:
                logger.warning("fact insert failed snapshot_id=%s error=%s", snapshot.id, exc)
                result["errors"].append({"snapshot_id": snapshot.id, "error": str(exc)})
                continue

            result["inserted"] += inserted

        span.set_attribute("facts.normalize.inserted", result["inserted"])

    logger.info(
        "normalization finished processed=%s inserted=%s errors=%s",
        result["processed"],
        result["inserted"],
        len(result["errors"]),
    )
    return result
