from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, TypeVar

from casting_pipeline.schemas.health import (
    DatabaseMetricsOut,
    PipelineHealthOut,
    ProcessingMetricsOut,
    QueueCountsOut,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class HealthThresholds:
    backlog_threshold: int = 10
    success_rate_floor: float = 50.0
    success_window_hours: float = 24.0
    stale_after_hours: float = 2.0


def success_rate(created_calls: int, processed_messages: int) -> float | None:
    if processed_messages <= 0:
        return None
    return round(created_calls / processed_messages * 100.0, 2)


def queue_counts_from_statuses(statuses: dict[str, int]) -> QueueCountsOut:
    return QueueCountsOut(
        waiting=statuses.get("queued", 0),
        active=statuses.get("claimed", 0),
        completed=statuses.get("done", 0),
        failed=statuses.get("dead_letter", 0),
    )


class PipelineHealthMonitor:
    """Aggregates queue and database metrics into a single health verdict.

    Every sub-query runs independently; a failing one contributes its empty
    default and is named in ``failed_checks`` instead of failing the report.
    """

    def __init__(self, repository: Any, thresholds: HealthThresholds) -> None:
        self.repository = repository
        self.thresholds = thresholds

    async def check(self, *, now: datetime | None = None) -> PipelineHealthOut:
        checked_at = now or datetime.now(timezone.utc)
        window_start = checked_at - timedelta(hours=self.thresholds.success_window_hours)
        failed_checks: list[str] = []

        (
            job_counts,
            dead_letters,
            call_counts,
            processed_total,
            active_sources,
            last_processed_at,
            window_processed,
            window_created,
        ) = await asyncio.gather(
            self._safe("queues", self.repository.count_jobs_by_queue_status(), {}, failed_checks),
            self._safe("dead_letters", self.repository.count_pending_dead_letters(), 0, failed_checks),
            self._safe("casting_calls", self.repository.count_casting_calls_by_status(), {}, failed_checks),
            self._safe("processed_messages", self.repository.count_processed_messages(), 0, failed_checks),
            self._safe("active_sources", self.repository.count_active_sources(), 0, failed_checks),
            self._safe("last_processed_at", self.repository.latest_processed_at(), None, failed_checks),
            self._safe(
                "window_processed_messages",
                self.repository.count_processed_messages(since=window_start),
                0,
                failed_checks,
            ),
            self._safe(
                "window_created_calls",
                self.repository.count_aggregated_casting_calls(since=window_start),
                0,
                failed_checks,
            ),
        )

        queues = {queue: queue_counts_from_statuses(statuses) for queue, statuses in job_counts.items()}
        processing = ProcessingMetricsOut(
            last_processed_at=last_processed_at,
            window_hours=self.thresholds.success_window_hours,
            window_processed_messages=window_processed,
            window_created_calls=window_created,
            success_rate=success_rate(window_created, window_processed),
        )
        database = DatabaseMetricsOut(
            pending_calls=call_counts.get("pending_review", 0),
            live_calls=call_counts.get("live", 0),
            processed_messages=processed_total,
            active_sources=active_sources,
        )

        issues = self._collect_issues(
            queues=queues,
            dead_letters=dead_letters,
            processing=processing,
            checked_at=checked_at,
        )
        report = PipelineHealthOut(
            healthy=not issues,
            checked_at=checked_at,
            queues=queues,
            dead_letters=dead_letters,
            database=database,
            processing=processing,
            issues=issues,
            failed_checks=sorted(failed_checks),
        )
        if issues:
            logger.warning("pipeline unhealthy issues=%s failed_checks=%s", issues, report.failed_checks)
        return report

    def _collect_issues(
        self,
        *,
        queues: dict[str, QueueCountsOut],
        dead_letters: int,
        processing: ProcessingMetricsOut,
        checked_at: datetime,
    ) -> list[str]:
        issues: list[str] = []
        for queue, counts in sorted(queues.items()):
            if counts.waiting > self.thresholds.backlog_threshold:
                issues.append(f"queue_backlog:{queue}")
        if dead_letters > 0:
            issues.append("dead_letters")
        if processing.success_rate is not None and processing.success_rate < self.thresholds.success_rate_floor:
            issues.append("low_success_rate")

        stale_before = checked_at - timedelta(hours=self.thresholds.stale_after_hours)
        if processing.last_processed_at is None or processing.last_processed_at < stale_before:
            issues.append("stale_processing")
        return issues

    @staticmethod
    async def _safe(name: str, query: Awaitable[T], default: T, failed_checks: list[str]) -> T:
        try:
            return await query
        except Exception:
            logger.exception("health check failed check=%s", name)
            failed_checks.append(name)
            return default
