#!/usr/bin/env python3
"""List dead-lettered jobs or replay them into their originating queue."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any

from casting_pipeline.services.repository import (
    JOB_QUEUES,
    RepositoryError,
    RepositoryNotFoundError,
    get_repository,
)


def format_dead_letter(row: dict[str, Any]) -> str:
    replayed = f" replayed_as={row['replay_job_id']}" if row.get("replayed_at") else ""
    return (
        f"{row['id']} queue={row['queue']} attempts={row['attempts']} "
        f"failed_at={row['failed_at'].isoformat()} error={row['error']!r}{replayed}"
    )


async def list_dead_letters(*, queue: str | None, include_replayed: bool, limit: int) -> int:
    repository = get_repository()
    try:
        rows = await repository.list_dead_letters(queue=queue, include_replayed=include_replayed, limit=limit)
    finally:
        await repository.close()

    for row in rows:
        print(format_dead_letter(row))
    if not rows:
        print("no dead letters")
    return 0


async def replay(dead_letter_ids: list[str], *, replay_all: bool, queue: str | None, actor: str) -> int:
    repository = get_repository()
    failures = 0
    try:
        if replay_all:
            rows = await repository.list_dead_letters(queue=queue, include_replayed=False, limit=500)
            dead_letter_ids = [row["id"] for row in rows]

        for dead_letter_id in dead_letter_ids:
            try:
                result = await repository.replay_dead_letter(dead_letter_id, actor_id=actor)
            except RepositoryNotFoundError:
                print(f"{dead_letter_id}: not found", file=sys.stderr)
                failures += 1
                continue
            print(f"{dead_letter_id}: replayed as job {result['job_id']} on {result['queue']}")
    finally:
        await repository.close()
    return 1 if failures else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Inspect or replay dead-lettered pipeline jobs.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List dead letters")
    list_parser.add_argument("--queue", choices=JOB_QUEUES, default=None)
    list_parser.add_argument("--include-replayed", action="store_true")
    list_parser.add_argument("--limit", type=int, default=50)

    replay_parser = subparsers.add_parser("replay", help="Replay dead letters into their queue")
    target_group = replay_parser.add_mutually_exclusive_group(required=True)
    target_group.add_argument("--id", dest="ids", action="append", help="Dead letter id (repeatable)")
    target_group.add_argument("--all", action="store_true", help="Replay every unreplayed dead letter")
    replay_parser.add_argument("--queue", choices=JOB_QUEUES, default=None, help="Restrict --all to one queue")
    replay_parser.add_argument("--actor", default="cli", help="Actor label recorded on the replay event")

    args = parser.parse_args()
    try:
        if args.command == "list":
            return asyncio.run(
                list_dead_letters(queue=args.queue, include_replayed=args.include_replayed, limit=args.limit)
            )
        return asyncio.run(replay(args.ids or [], replay_all=args.all, queue=args.queue, actor=args.actor))
    except RepositoryError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
