#!/usr/bin/env python3
"""
Queue Stats — print job counts for one or more instance queues.

Usage:
    python scripts/queue_stats.py <instance_id> [<instance_id> ...]
    python scripts/queue_stats.py abc123 --json
    python scripts/queue_stats.py abc123 --redis redis://localhost:6379/0
"""
import argparse
import asyncio
import json
import os
import sys
from dataclasses import replace

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

COLUMNS = ["waiting", "active", "delayed", "completed", "failed"]


def render_table(rows: dict) -> str:
    width = max([len("instance")] + [len(k) for k in rows])
    header = "instance".ljust(width) + "".join(c.rjust(11) for c in COLUMNS)
    lines = [header, "-" * len(header)]
    for instance_id, stats in rows.items():
        if stats is None:
            lines.append(instance_id.ljust(width) + "  unavailable")
            continue
        lines.append(instance_id.ljust(width) + "".join(str(stats[c]).rjust(11) for c in COLUMNS))
    return "\n".join(lines)


async def collect(instance_ids: list, redis_uri: str = None) -> dict:
    from cache.connection import QueueConnectionManager
    from config.settings import load_settings
    from job_queue.backend import open_backend
    from job_queue.service import queue_name_for
    from job_queue.types import QueueStats

    conf = load_settings().rate_limit
    if redis_uri:
        conf = replace(conf, redis_uri=redis_uri, enabled=True)

    manager = QueueConnectionManager(conf)
    rows = {instance_id: None for instance_id in instance_ids}
    try:
        handle = await manager.connect()
        if handle is None:
            return rows
        for instance_id in instance_ids:
            backend = open_backend(handle, queue_name_for(instance_id))
            try:
                rows[instance_id] = QueueStats(**await backend.get_counts()).model_dump()
            finally:
                await backend.close()
    finally:
        await manager.disconnect()
    return rows


def main():
    from dotenv import load_dotenv
    from config.logging import configure_logging

    load_dotenv()
    parser = argparse.ArgumentParser(description="WhatsApp queue statistics")
    parser.add_argument("instance_ids", nargs="+", help="Instance ids to inspect")
    parser.add_argument("--redis", dest="redis_uri", help="Override the configured backend URI")
    parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    configure_logging(args.log_level)
    rows = asyncio.run(collect(args.instance_ids, args.redis_uri))

    if args.json:
        print(json.dumps(rows, indent=2))
    else:
        print(render_table(rows))

    if all(v is None for v in rows.values()):
        sys.exit(1)


if __name__ == "__main__":
    main()
