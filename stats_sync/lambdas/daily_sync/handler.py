"""
Daily Sync Lambda

Scheduled trigger: fans out one SQS message per state plus a delayed USA
sentinel. Queue trigger: syncs one state's changed aggregates into DynamoDB
and mirrors its recent-5 manifests; the USA sentinel rebuilds the national
rollup from the state records.
"""
import json
import logging
import os
from typing import Any, Dict

from stats_sync.lib.components import Components, build_components
from stats_sync.lib.national_rollup import rollup_national
from stats_sync.lib.progress_tracker import TimeBudget
from stats_sync.lib.work_queue import BadMessageError, parse_message_body

logger = logging.getLogger()
logger.setLevel(os.environ.get('LOG_LEVEL', 'INFO'))

# Built on first use and reused by warm containers
_components = None


def get_components() -> Components:
    global _components
    if _components is None:
        _components = build_components()
    return _components


def _response(body: Dict[str, Any], status_code: int = 200) -> Dict[str, Any]:
    return {"statusCode": status_code, "body": json.dumps(body, default=str)}


def is_scheduled_event(event: Dict[str, Any]) -> bool:
    return event.get("source") == "aws.events" or event.get("detail-type") == "Scheduled Event"


def handle_scheduled(components: Components) -> Dict[str, Any]:
    settings = components.settings
    if components.sync_queue is None:
        logger.error("SYNC_QUEUE_URL is not configured; cannot fan out")
        return _response({"failed": True, "error": "sync queue not configured"}, 500)

    queued = components.sync_queue.fan_out(settings.partitions, sentinel=settings.rollup_sentinel)
    logger.info(f"[OK] Queued {queued} daily sync messages")
    return _response({"action": "fan_out", "queued": queued})


def handle_message(components: Components, body: Any, context: Any) -> Dict[str, Any]:
    """Process one queue message; handled failures still return 200."""
    settings = components.settings
    try:
        message = parse_message_body(body, known_partitions=settings.partitions + (settings.rollup_sentinel,))
    except BadMessageError as e:
        logger.error(f"Bad message, dropping: {e}")
        return _response({"failed": True, "error": "bad message", "detail": str(e)})

    partition = message["partition"]

    if partition == settings.rollup_sentinel:
        written = rollup_national(components.store, settings.partitions, settings.rollup_sentinel)
        return _response({"partition": partition, "action": "national_rollup", "brands": sorted(written)})

    if partition not in settings.partitions:
        logger.warning(f"[SKIP] Unknown partition {partition}")
        return _response({"failed": True, "error": "unknown partition", "partition": partition})

    budget = TimeBudget.for_invocation(settings, context)
    sync_result = components.delta_sync.sync_partition(partition, budget=budget)
    body_out: Dict[str, Any] = {"partition": partition, "sync": sync_result.to_dict()}

    if sync_result.resume_required:
        if components.sync_queue is not None:
            components.sync_queue.publish({"partition": partition, "resume": True})
            body_out["requeued"] = True
        else:
            logger.error(f"Sync of {partition} needs another pass but no queue is configured")
            body_out["requeued"] = False
        return _response(body_out)

    manifest_result = components.manifest_sync.update_manifests(partition)
    body_out["manifests"] = manifest_result.to_dict()
    body_out["failed"] = bool(sync_result.failed or manifest_result.failed)
    return _response(body_out)


def lambda_handler(event, context):
    """
    Daily stats sync.

    Args:
        event: EventBridge scheduled event, or SQS event whose first record
               body is {"partition": "TX"} ({"partition": "USA"} for the
               national rollup)

    Returns:
        {
            "statusCode": 200,
            "body": "{\"partition\": \"TX\", \"sync\": {...}, \"manifests\": {...}}"
        }
    """
    components = get_components()

    if is_scheduled_event(event):
        return handle_scheduled(components)

    records = event.get("Records") or []
    if records:
        if len(records) > 1:
            logger.warning(f"Received {len(records)} records; processing only the first")
        return handle_message(components, records[0].get("body"), context)

    if event.get("partition") or event.get("state"):
        # Direct invocation for a single state
        return handle_message(components, event, context)

    logger.error(f"Unrecognized event: {json.dumps(event, default=str)[:500]}")
    return _response({"failed": True, "error": "unrecognized event"}, 400)
