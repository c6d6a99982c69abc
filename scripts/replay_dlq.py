#!/usr/bin/env python3
"""
Dead Letter Queue tool — inspect or replay dead-lettered events.

Usage:
    python scripts/replay_dlq.py --list            # Show DLQ entries
    python scripts/replay_dlq.py --list --limit 20
    python scripts/replay_dlq.py --replay          # Re-enqueue every entry

Works directly against the configured queue backend, so the Redis backend is
required for anything useful; the in-memory DLQ is empty in a fresh process.
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run(list_only: bool, limit: int, config_path: str = None) -> int:
    from config.settings import load_settings
    from job_queue.dead_letter import create_dead_letter_store
    from job_queue.message_queue import create_message_queue
    from utils.logging import configure_logging

    settings = load_settings(config_path)
    configure_logging(settings.logging.level, settings.logging.json_output)

    backend = "redis" if settings.queue.backend == "redis" else "memory"
    dead_letters = create_dead_letter_store(
        backend=backend,
        redis_url=settings.queue.redis_url,
        name=f"{settings.queue.name}-dlq",
    )
    queue = create_message_queue(settings.queue)
    await dead_letters.connect()
    try:
        if list_only:
            entries = await dead_letters.list(limit=limit)
            print(f"DLQ entries: {await dead_letters.count()} (showing {len(entries)})")
            for entry in entries:
                data = entry.original_job_data
                print(f"  {entry.entry_id}  {data.event_id}  type={data.type}  "
                      f"attempts={entry.attempts}  failed_at={entry.failed_at.isoformat()}  "
                      f"error={entry.error}")
            return 0

        await queue.connect()
        try:
            replayed = await dead_letters.replay_all(queue)
        finally:
            await queue.close()
        print(f"Replayed {replayed} DLQ entries.")
        return 0
    finally:
        await dead_letters.close()


def main():
    parser = argparse.ArgumentParser(description="Inspect or replay the dead letter queue")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--list", action="store_true", help="List entries")
    group.add_argument("--replay", action="store_true", help="Replay all entries")
    parser.add_argument("--limit", type=int, default=50)
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args()

    sys.exit(asyncio.run(run(list_only=args.list, limit=args.limit, config_path=args.config)))


if __name__ == "__main__":
    main()
