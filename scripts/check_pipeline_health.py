#!/usr/bin/env python3
"""Print the pipeline health report; exit status 1 when the pipeline is unhealthy."""

from __future__ import annotations

import argparse
import asyncio
import sys

from casting_pipeline.api.deps import thresholds_from_settings
from casting_pipeline.core.config import get_settings
from casting_pipeline.schemas.health import PipelineHealthOut
from casting_pipeline.services.health import PipelineHealthMonitor
from casting_pipeline.services.repository import get_repository


async def collect_report() -> PipelineHealthOut:
    settings = get_settings()
    repository = get_repository()
    try:
        return await PipelineHealthMonitor(repository, thresholds_from_settings(settings)).check()
    finally:
        await repository.close()


def render_text(report: PipelineHealthOut) -> str:
    lines = [f"pipeline: {'healthy' if report.healthy else 'UNHEALTHY'} (checked {report.checked_at.isoformat()})"]
    for queue, counts in sorted(report.queues.items()):
        lines.append(
            f"  queue {queue}: waiting={counts.waiting} active={counts.active} "
            f"completed={counts.completed} failed={counts.failed}"
        )
    lines.append(f"  dead letters pending: {report.dead_letters}")
    lines.append(
        f"  casting calls: pending={report.database.pending_calls} live={report.database.live_calls}"
    )
    lines.append(
        f"  processed messages: {report.database.processed_messages} "
        f"(active sources: {report.database.active_sources})"
    )
    rate = report.processing.success_rate
    lines.append(
        f"  success rate ({report.processing.window_hours:g}h): {'n/a' if rate is None else f'{rate:.1f}%'}"
    )
    last = report.processing.last_processed_at
    lines.append(f"  last processed: {last.isoformat() if last else 'never'}")
    for issue in report.issues:
        lines.append(f"  issue: {issue}")
    for check in report.failed_checks:
        lines.append(f"  failed check: {check}")
    return "\n".join(lines)


def main() -> int:
    parser = argparse.ArgumentParser(description="Check casting pipeline health.")
    parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format for the health report",
    )
    args = parser.parse_args()

    report = asyncio.run(collect_report())
    if args.format == "json":
        print(report.model_dump_json(indent=2))
    else:
        print(render_text(report))
    return 0 if report.healthy else 1


if __name__ == "__main__":
    sys.exit(main())
