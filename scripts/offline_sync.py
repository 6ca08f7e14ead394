#!/usr/bin/env python3
"""
Operate on the offline worker's local stores from a shell.

Useful on kiosk and point-of-sale machines where the property app runs
unattended: replay queued requests once connectivity is back, prune stale
cached responses, or inspect what is still waiting to be delivered.
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import Optional
import sys

from shared.config import BaseConfig
from shared.logging import configure_logging
from service_offline.app.worker import OfflineWorker


async def run(command: str, config: BaseConfig) -> dict:
    """Execute one command against the worker stores and return a summary."""
    worker = OfflineWorker(config, sync_supported=False)
    try:
        if command == "sync":
            summary = await worker.replayer.replay()
            return summary.model_dump()
        if command == "cleanup":
            deleted = await worker.cleanup_caches()
            return {"deleted": deleted}

        pending = await worker.queue.get_all()
        dead_letters = await worker.queue.get_dead_letters()
        return {
            "pending": [
                {
                    "id": record.id,
                    "url": record.url,
                    "method": record.options.method,
                    "attempts": record.attempts,
                    "last_error": record.last_error,
                }
                for record in pending
            ],
            "dead_lettered": [record.id for record in dead_letters],
            "caches": await worker.caches.keys(),
        }
    finally:
        await worker.close()


def _parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage the offline request queue and response caches.")
    parser.add_argument("command", choices=["sync", "cleanup", "status"], help="Operation to run")
    parser.add_argument("--data-dir", type=Path, default=None, help="Offline data directory (defaults to ACCESS_OFFLINE_DATA_DIR)")
    parser.add_argument("--max-age-hours", type=int, default=None, help="Cleanup age threshold in hours")
    parser.add_argument("--max-attempts", type=int, default=None, help="Replay attempts before dead-lettering (0 = unlimited)")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    args = _parse_args(argv)

    overrides = {}
    if args.data_dir is not None:
        overrides["offline_data_dir"] = str(args.data_dir)
    if args.max_age_hours is not None:
        overrides["offline_cache_max_age_hours"] = args.max_age_hours
    if args.max_attempts is not None:
        overrides["offline_max_replay_attempts"] = args.max_attempts

    config = BaseConfig(**overrides)
    configure_logging("offline", config.log_level)

    try:
        summary = asyncio.run(run(args.command, config))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[offline-{args.command}] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
