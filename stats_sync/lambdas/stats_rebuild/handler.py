"""
Stats Rebuild Lambda

Recomputes state aggregates from the Silver layer. Runs either as one queue
message per state (fan-out) or as a chain that walks the states in order,
each stage publishing the next (sequential). A stage that runs out of time
or hits the size guard re-queues itself and resumes from its checkpoint.
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

MODE_SEQUENTIAL = "sequential"
MODE_FANOUT = "fanout"

# Built on first use and reused by warm containers
_components = None


def get_components() -> Components:
    global _components
    if _components is None:
        _components = build_components()
    return _components


def _response(body: Dict[str, Any], status_code: int = 200) -> Dict[str, Any]:
    return {"statusCode": status_code, "body": json.dumps(body, default=str)}


def start_rebuild(components: Components, mode: str) -> Dict[str, Any]:
    """Kick off a rebuild of every partition."""
    settings = components.settings
    queue = components.rebuild_queue
    if queue is None:
        logger.error("REBUILD_QUEUE_URL is not configured")
        return _response({"failed": True, "error": "rebuild queue not configured"}, 500)

    if mode == MODE_SEQUENTIAL:
        first = settings.partitions[0]
        queue.publish({"partition": first, "mode": MODE_SEQUENTIAL})
        logger.info(f"[OK] Started sequential rebuild at {first}")
        return _response({"action": "rebuild_all", "mode": mode, "first_partition": first})

    queued = queue.fan_out(settings.partitions, sentinel=settings.rollup_sentinel, mode=MODE_FANOUT)
    return _response({"action": "fan_out", "mode": mode, "queued": queued})


def _holder(context: Any) -> Any:
    request_id = getattr(context, "aws_request_id", None)
    return request_id if isinstance(request_id, str) else None


def handle_message(components: Components, body: Any, context: Any) -> Dict[str, Any]:
    """Rebuild the partition named in one message; handled outcomes return 200."""
    settings = components.settings
    try:
        message = parse_message_body(body, known_partitions=settings.partitions + (settings.rollup_sentinel,))
    except BadMessageError as e:
        logger.error(f"Bad message, dropping: {e}")
        return _response({"failed": True, "error": "bad message", "detail": str(e)})

    partition = message["partition"]
    mode = message.get("mode", MODE_FANOUT)

    if partition == settings.rollup_sentinel:
        written = rollup_national(components.store, settings.partitions, settings.rollup_sentinel)
        return _response({"partition": partition, "action": "national_rollup", "brands": sorted(written)})

    if partition not in settings.partitions:
        logger.warning(f"[SKIP] Unknown partition {partition}")
        return _response({"failed": True, "error": "unknown partition", "partition": partition})

    result = components.rebuild.rebuild_partition(
        partition,
        sequential=mode == MODE_SEQUENTIAL,
        budget=TimeBudget.for_invocation(settings, context),
        holder=_holder(context),
    )
    body_out = {"mode": mode, **result.to_dict()}

    if result.resume_required:
        if components.rebuild_queue is not None:
            components.rebuild_queue.publish({"partition": partition, "mode": mode})
            body_out["requeued"] = True
        else:
            logger.error(f"Rebuild of {partition} needs another pass but no queue is configured")
            body_out["requeued"] = False

    return _response(body_out)


def lambda_handler(event, context):
    """
    Rebuild state stats.

    Args:
        event: {"action": "rebuild_all"} to start the sequential chain,
               {"action": "fan_out"} to queue every state at once,
               {"partition": "TX", "mode": "sequential"|"fanout"} to run one
               state directly, or an SQS event carrying the latter

    Returns:
        {
            "statusCode": 200,
            "body": "{\"partition_id\": \"TX\", \"state\": \"DONE\", ...}"
        }
    """
    components = get_components()

    records = event.get("Records") or []
    if records:
        if len(records) > 1:
            logger.warning(f"Received {len(records)} records; processing only the first")
        return handle_message(components, records[0].get("body"), context)

    action = event.get("action")
    if action == "rebuild_all":
        return start_rebuild(components, MODE_SEQUENTIAL)
    if action == "fan_out":
        return start_rebuild(components, MODE_FANOUT)

    if event.get("partition") or event.get("state"):
        return handle_message(components, event, context)

    logger.error(f"Unrecognized event: {json.dumps(event, default=str)[:500]}")
    return _response({"failed": True, "error": "unrecognized event"}, 400)
