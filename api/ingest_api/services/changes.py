from __future__ import annotations

import json
import logging
from typing import Any

from ingest_api.services.normalizer import (
    FACT_COST_BAND,
    FACT_COST_NOTES,
    FACT_FLEET_AIRCRAFT,
    FACT_FLEET_COUNT,
    normalize_snapshot,
)

logger = logging.getLogger(__name__)

VOLATILE_FACT_KEYS = (FACT_COST_BAND, FACT_COST_NOTES, FACT_FLEET_AIRCRAFT, FACT_FLEET_COUNT)

_MISSING = object()


def fact_values_equal(left: Any, right: Any) -> bool:
    """Compare fact values; lists compare as multisets, booleans never equal numbers."""
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, list) and isinstance(right, list):
        if len(left) != len(right):
            return False
        ordered_left = sorted(left, key=_sort_key)
        ordered_right = sorted(right, key=_sort_key)
        return all(fact_values_equal(a, b) for a, b in zip(ordered_left, ordered_right))
    if isinstance(left, list) or isinstance(right, list):
        return False
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def diff_fact_maps(latest: dict[str, Any], previous: dict[str, Any]) -> list[str]:
    changed: list[str] = []
    for key in VOLATILE_FACT_KEYS:
        current = latest.get(key, _MISSING)
        prior = previous.get(key, _MISSING)
        if current is _MISSING and prior is _MISSING:
            continue
        if current is _MISSING or prior is _MISSING or not fact_values_equal(current, prior):
            changed.append(key)
    return changed


async def detect_snapshot_changes(repository: Any, entity_id: str) -> list[str]:
    snapshots = await repository.list_snapshots(entity_id, limit=2)
    if len(snapshots) < 2:
        return []

    latest, previous = snapshots[0], snapshots[1]
    if not isinstance(latest.raw_json, dict) or not isinstance(previous.raw_json, dict):
        return []

    latest_facts = {fact.fact_key: fact.fact_value for fact in normalize_snapshot(latest.raw_json, latest.as_of)}
    previous_facts = {fact.fact_key: fact.fact_value for fact in normalize_snapshot(previous.raw_json, previous.as_of)}
    changed = diff_fact_maps(latest_facts, previous_facts)
    if changed:
        logger.info("snapshot drift entity_id=%s changed=%s", entity_id, ",".join(changed))
    return changed


def _sort_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)
