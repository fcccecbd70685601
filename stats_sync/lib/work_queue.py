"""SQS work queue: partition messages, fan-out and tolerant parsing."""

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

import boto3

from stats_sync.lib.s3_utils import BOTO_CONFIG

logger = logging.getLogger(__name__)

# SQS accepts at most 10 entries per SendMessageBatch
SQS_BATCH_LIMIT = 10

# Tried in order against bodies that are not valid JSON
_RECOVERY_PATTERNS = (
    re.compile(r'"(?:partition|state)"\s*:\s*"([A-Z]{2,3})"'),
    re.compile(r'(?:partition|state)\s*:\s*"([A-Z]{2,3})"'),
    re.compile(r"(?:partition|state)\s*:\s*([A-Z]{2,3})\b"),
    re.compile(r"(?:partition|state)[:\s]+([A-Z]{2,3})\b"),
)
_ANY_CODE = re.compile(r"\b([A-Z]{2,3})\b")


class BadMessageError(Exception):
    """Raised when a queue message carries no usable partition."""


def parse_message_body(body: Any, known_partitions: Optional[Sequence[str]] = None) -> Dict[str, Any]:
    """Decode a queue message into a dict with a ``partition`` key.

    Malformed JSON (for example ``{state:RI}`` produced by a shell without
    quoting) is recovered by pattern matching. When ``known_partitions`` is
    given, the last-resort match must be one of them.

    Raises:
        BadMessageError: If no partition can be determined
    """
    if isinstance(body, dict):
        message = dict(body)
    else:
        text = body.decode("utf-8") if isinstance(body, bytes) else str(body or "")
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            message = _recover(text, known_partitions)
            logger.warning(f"[WARN] Recovered partition {message['partition']} from malformed body: {text!r}")

    if not isinstance(message, dict):
        raise BadMessageError(f"Message body is not an object: {body!r}")

    partition = message.get("partition") or message.get("state")
    if not partition:
        raise BadMessageError(f"Message has no partition: {body!r}")
    message["partition"] = str(partition).strip().upper()
    message.pop("state", None)
    return message


def _recover(text: str, known_partitions: Optional[Sequence[str]]) -> Dict[str, Any]:
    for pattern in _RECOVERY_PATTERNS:
        match = pattern.search(text)
        if match:
            return {"partition": match.group(1)}

    for match in _ANY_CODE.finditer(text):
        code = match.group(1)
        if known_partitions is None or code in known_partitions:
            return {"partition": code}

    raise BadMessageError(f"Could not recover a partition from {text!r}")


class WorkQueue:
    """Publishes partition messages to one SQS queue."""

    def __init__(self, queue_url: str, sqs_client=None):
        if not queue_url:
            raise ValueError("queue_url is required")
        self.queue_url = queue_url
        self.sqs = sqs_client or boto3.client("sqs", config=BOTO_CONFIG)

    def publish(self, message: Dict[str, Any], delay_seconds: int = 0) -> str:
        kwargs: Dict[str, Any] = {"QueueUrl": self.queue_url, "MessageBody": json.dumps(message)}
        if delay_seconds:
            kwargs["DelaySeconds"] = delay_seconds
        response = self.sqs.send_message(**kwargs)
        logger.info(f"Published {message} ({response.get('MessageId')})")
        return response.get("MessageId", "")

    def publish_batch(self, messages: Iterable[Dict[str, Any]]) -> int:
        """Send messages in batches of 10.

        Returns:
            Number of messages accepted by SQS
        """
        messages = list(messages)
        sent = 0
        for start in range(0, len(messages), SQS_BATCH_LIMIT):
            batch = messages[start:start + SQS_BATCH_LIMIT]
            entries = [
                {"Id": str(index), "MessageBody": json.dumps(message)}
                for index, message in enumerate(batch)
            ]
            response = self.sqs.send_message_batch(QueueUrl=self.queue_url, Entries=entries)
            sent += len(response.get("Successful", []))
            if response.get("Failed"):
                logger.error(f"Failed to queue {len(response['Failed'])} messages: {response['Failed']}")
        return sent

    def fan_out(
        self,
        partitions: Iterable[str],
        sentinel: Optional[str] = None,
        sentinel_delay_seconds: int = 900,
        **fields: Any,
    ) -> int:
        """One message per partition, then an optional delayed rollup sentinel.

        The sentinel is delayed (SQS allows up to 15 minutes) so that it is
        normally consumed after the partition messages have been handled.
        """
        messages: List[Dict[str, Any]] = [{"partition": p, **fields} for p in partitions]
        sent = self.publish_batch(messages)
        expected = len(messages)
        if sentinel:
            self.publish({"partition": sentinel, **fields}, delay_seconds=sentinel_delay_seconds)
            sent += 1
            expected += 1
        logger.info(f"Fanned out {sent}/{expected} partition messages")
        return sent
