from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace

from ingest_worker.core.config import Settings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

TASK_REFRESH = "refresh"
TASK_DISPATCH = "dispatch"
TASK_NORMALIZE = "normalize"


@dataclass(slots=True)
class TaskSchedule:
    name: str
    interval_seconds: float
    batch_size: int
    last_run_at: float | None = None

    def is_due(self, now: float) -> bool:
        return self.last_run_at is None or now - self.last_run_at >= self.interval_seconds


def build_schedules(settings: Settings) -> list[TaskSchedule]:
    # Refresh first so freshly enqueued jobs can be dispatched in the same cycle.
    return [
        TaskSchedule(TASK_REFRESH, settings.refresh_interval_seconds, settings.refresh_batch_size),
        TaskSchedule(TASK_DISPATCH, settings.dispatch_interval_seconds, settings.dispatch_batch_size),
        TaskSchedule(TASK_NORMALIZE, settings.normalize_interval_seconds, settings.normalize_batch_size),
    ]


async def run_cycle(client: Any, schedules: list[TaskSchedule], *, now: float) -> dict[str, dict[str, Any]]:
    """Run every due task once, in schedule order.

    A task that raises is not marked as run, so the next cycle retries it.
    """
    results: dict[str, dict[str, Any]] = {}
    for schedule in schedules:
        if not schedule.is_due(now):
            continue

        with tracer.start_as_current_span(f"worker.{schedule.name}") as span:
            span.set_attribute("worker.task.batch_size", schedule.batch_size)
            result = await _run_task(client, schedule)

        schedule.last_run_at = now
        results[schedule.name] = result
        _log_result(schedule.name, result)
    return results


async def _run_task(client: Any, schedule: TaskSchedule) -> dict[str, Any]:
    if schedule.name == TASK_REFRESH:
        return await client.run_refresh(limit=schedule.batch_size)
    if schedule.name == TASK_DISPATCH:
        return await client.dispatch(limit=schedule.batch_size)
    if schedule.name == TASK_NORMALIZE:
        return await client.run_normalize(limit=schedule.batch_size)
    raise ValueError(f"unknown worker task: {schedule.name}")


def _log_result(name: str, result: dict[str, Any]) -> None:
    errors = result.get("errors") or []
    if name == TASK_REFRESH:
        logger.info(
            "refresh run enqueued=%s skipped=%s errors=%s",
            result.get("enqueued", 0),
            result.get("skipped", 0),
            len(errors),
        )
    elif name == TASK_DISPATCH:
        logger.info(
            "dispatch run mode=%s processed=%s queued=%s completed=%s failed=%s",
            result.get("mode"),
            result.get("processed", 0),
            result.get("queued", 0),
            result.get("completed", 0),
            result.get("failed", 0),
        )
    else:
        logger.info(
            "normalize run processed=%s inserted=%s errors=%s",
            result.get("processed", 0),
            result.get("inserted", 0),
            len(errors),
        )
    for error in errors[:5]:
        logger.warning("%s run item error=%s", name, error)
