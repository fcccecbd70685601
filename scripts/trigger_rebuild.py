#!/usr/bin/env python3
"""
Queue stats rebuild or sync work from an operator shell.

Examples:
    python scripts/trigger_rebuild.py --sequential
    python scripts/trigger_rebuild.py --fan-out
    python scripts/trigger_rebuild.py --partition TX
    python scripts/trigger_rebuild.py --sync --partition TX
    python scripts/trigger_rebuild.py --status
"""

import argparse
import json
import logging
import sys

import boto3

from stats_sync.lib.config import load_settings
from stats_sync.lib.daily_log import DailyRunLog
from stats_sync.lib.work_queue import WorkQueue

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Queue stats rebuild/sync work")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--sequential", action="store_true", help="Rebuild every state one after another")
    target.add_argument("--fan-out", action="store_true", help="Rebuild every state in parallel")
    target.add_argument("--partition", help="Queue a single state (e.g. TX)")
    target.add_argument("--status", action="store_true", help="Print today's run log")
    parser.add_argument("--sync", action="store_true", help="Use the daily sync queue instead of the rebuild queue")
    args = parser.parse_args(argv)

    try:
        settings = load_settings()
    except ValueError as e:
        logger.error(str(e))
        return 1

    if args.status:
        log = DailyRunLog(settings.bucket, s3_client=boto3.client("s3", region_name=settings.region))
        print(json.dumps(log.get(), indent=2))
        return 0

    queue_url = settings.sync_queue_url if args.sync else settings.rebuild_queue_url
    if not queue_url:
        logger.error(f"{'SYNC_QUEUE_URL' if args.sync else 'REBUILD_QUEUE_URL'} environment variable is required")
        return 1
    queue = WorkQueue(queue_url, sqs_client=boto3.client("sqs", region_name=settings.region))

    if args.partition:
        partition = args.partition.strip().upper()
        if partition not in settings.partitions and partition != settings.rollup_sentinel:
            logger.error(f"Unknown partition {partition}")
            return 1
        message = {"partition": partition}
        if not args.sync:
            message["mode"] = "fanout"
        queue.publish(message)
    elif args.sequential:
        queue.publish({"partition": settings.partitions[0], "mode": "sequential"})
    else:
        fields = {} if args.sync else {"mode": "fanout"}
        queue.fan_out(settings.partitions, sentinel=settings.rollup_sentinel, **fields)

    logger.info("Done")
    return 0


if __name__ == "__main__":
    sys.exit(main())
