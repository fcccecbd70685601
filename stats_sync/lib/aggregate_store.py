"""DynamoDB read store for aggregate records and recent-record mirrors."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from stats_sync.lib.config import DYNAMO_BATCH_LIMIT
from stats_sync.lib.s3_utils import BOTO_CONFIG

logger = logging.getLogger(__name__)


@dataclass
class BatchWriteResult:
    written: int = 0
    failed: int = 0
    failed_keys: List[Dict[str, str]] = field(default_factory=list)

    def merge(self, other: "BatchWriteResult") -> "BatchWriteResult":
        self.written += other.written
        self.failed += other.failed
        self.failed_keys.extend(other.failed_keys)
        return self


def _key_of(item: Dict[str, Any]) -> Dict[str, str]:
    return {"PK": item["PK"], "SK": item["SK"]}


class AggregateStore:
    """Key/value access to the PK/SK entity table."""

    def __init__(
        self,
        table_name: str,
        dynamodb_resource=None,
        max_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize store.

        Args:
            table_name: DynamoDB table name
            dynamodb_resource: Optional boto3 DynamoDB service resource
            max_attempts: Attempts per batch before it is counted as failed
            sleep: Back-off sleep function
        """
        self.table_name = table_name
        self.dynamodb = dynamodb_resource or boto3.resource("dynamodb", config=BOTO_CONFIG)
        self.table = self.dynamodb.Table(table_name)
        self.max_attempts = max_attempts
        self._sleep = sleep

    def upsert(self, item: Dict[str, Any]) -> None:
        self.table.put_item(Item=item)

    def get(self, pk: str, sk: str) -> Optional[Dict[str, Any]]:
        response = self.table.get_item(Key={"PK": pk, "SK": sk})
        return response.get("Item")

    def query_by_prefix(self, pk: str, sk_prefix: str = "") -> List[Dict[str, Any]]:
        """All items under a partition key whose sort key starts with a prefix."""
        condition = Key("PK").eq(pk)
        if sk_prefix:
            condition = condition & Key("SK").begins_with(sk_prefix)

        items: List[Dict[str, Any]] = []
        kwargs: Dict[str, Any] = {"KeyConditionExpression": condition}
        while True:
            response = self.table.query(**kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    def batch_upsert(self, items: Iterable[Dict[str, Any]]) -> BatchWriteResult:
        """Write items in batches of 25.

        A batch that keeps failing is counted in the result rather than
        raised, so one bad batch never aborts a pass.
        """
        requests = [{"PutRequest": {"Item": item}} for item in items]
        return self._write_requests(requests, "put")

    def batch_delete(self, keys: Iterable[Dict[str, str]]) -> BatchWriteResult:
        requests = [{"DeleteRequest": {"Key": _key_of(key)}} for key in keys]
        return self._write_requests(requests, "delete")

    def _write_requests(self, requests: List[Dict[str, Any]], verb: str) -> BatchWriteResult:
        result = BatchWriteResult()
        for start in range(0, len(requests), DYNAMO_BATCH_LIMIT):
            batch = self._dedupe(requests[start:start + DYNAMO_BATCH_LIMIT])
            result.merge(self._write_batch(batch, verb))
        return result

    @staticmethod
    def _dedupe(batch: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        # BatchWriteItem rejects two requests for the same key; last one wins
        by_key: Dict[tuple, Dict[str, Any]] = {}
        for request in batch:
            body = request.get("PutRequest", {}).get("Item") or request["DeleteRequest"]["Key"]
            by_key[(body["PK"], body["SK"])] = request
        return list(by_key.values())

    def _write_batch(self, batch: List[Dict[str, Any]], verb: str) -> BatchWriteResult:
        pending = batch
        total = len(batch)
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self.dynamodb.batch_write_item(RequestItems={self.table_name: pending})
                pending = response.get("UnprocessedItems", {}).get(self.table_name, [])
                if not pending:
                    return BatchWriteResult(written=total)
                logger.warning(
                    f"Batch {verb} attempt {attempt}/{self.max_attempts}: "
                    f"{len(pending)} unprocessed items"
                )
            except ClientError as e:
                logger.warning(f"Batch {verb} attempt {attempt}/{self.max_attempts} failed: {e}")
            if attempt < self.max_attempts:
                self._sleep(0.1 * (2 ** attempt))

        failed_keys = []
        for request in pending:
            body = request.get("PutRequest", {}).get("Item") or request["DeleteRequest"]["Key"]
            failed_keys.append(_key_of(body))
        logger.error(f"Batch {verb} gave up on {len(pending)} of {total} items")
        return BatchWriteResult(written=total - len(pending), failed=len(pending), failed_keys=failed_keys)
