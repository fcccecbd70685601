"""
Tests for the DynamoDB aggregate store.
"""

from decimal import Decimal
from unittest.mock import MagicMock

from botocore.exceptions import ClientError

from conftest import TEST_TABLE
from stats_sync.lib.aggregate_store import AggregateStore


def _item(pk, sk, **extra):
    return {"PK": pk, "SK": sk, "record_type": "stats", **extra}


class TestAggregateStore:
    def test_upsert_and_get(self, dynamodb):
        store = AggregateStore(TEST_TABLE, dynamodb_resource=dynamodb)
        store.upsert(_item("CITY#austin", "STATS#OSHAtrail", count=3, total_fines=Decimal("12.5")))

        item = store.get("CITY#austin", "STATS#OSHAtrail")

        assert item["count"] == 3
        assert item["total_fines"] == Decimal("12.5")
        assert store.get("CITY#austin", "STATS#TransportTrail") is None

    def test_batch_upsert_more_than_one_request(self, dynamodb):
        store = AggregateStore(TEST_TABLE, dynamodb_resource=dynamodb)
        items = [_item(f"CITY#c{i:03d}", "STATS#OSHAtrail", count=i) for i in range(60)]

        result = store.batch_upsert(items)

        assert result.written == 60
        assert result.failed == 0
        assert store.get("CITY#c059", "STATS#OSHAtrail")["count"] == 59

    def test_duplicate_keys_in_a_batch_keep_last(self, dynamodb):
        store = AggregateStore(TEST_TABLE, dynamodb_resource=dynamodb)

        store.batch_upsert([
            _item("CITY#austin", "STATS#OSHAtrail", count=1),
            _item("CITY#austin", "STATS#OSHAtrail", count=2),
        ])

        assert store.get("CITY#austin", "STATS#OSHAtrail")["count"] == 2

    def test_query_by_prefix_and_batch_delete(self, dynamodb):
        store = AggregateStore(TEST_TABLE, dynamodb_resource=dynamodb)
        store.batch_upsert([
            _item("STATE#TX", "STATS#OSHAtrail"),
            _item("STATE#TX", "STATS#OSHAtrail#CITIES#1"),
            _item("STATE#TX", "STATS#TransportTrail"),
            _item("STATE#TX", "PROFILE"),
        ])

        osha = store.query_by_prefix("STATE#TX", "STATS#OSHAtrail")
        assert [i["SK"] for i in osha] == ["STATS#OSHAtrail", "STATS#OSHAtrail#CITIES#1"]
        assert len(store.query_by_prefix("STATE#TX")) == 4

        deleted = store.batch_delete(osha)
        assert deleted.written == 2
        assert len(store.query_by_prefix("STATE#TX", "STATS#")) == 1


class TestBatchRetries:
    def _store(self, responses):
        resource = MagicMock()
        resource.batch_write_item.side_effect = responses
        sleeps = []
        store = AggregateStore("t", dynamodb_resource=resource, max_attempts=3, sleep=sleeps.append)
        return store, resource, sleeps

    def test_unprocessed_items_are_retried(self):
        leftover = {"PutRequest": {"Item": _item("CITY#b", "STATS#X")}}
        store, resource, sleeps = self._store([
            {"UnprocessedItems": {"t": [leftover]}},
            {"UnprocessedItems": {}},
        ])

        result = store.batch_upsert([_item("CITY#a", "STATS#X"), _item("CITY#b", "STATS#X")])

        assert result.written == 2
        assert result.failed == 0
        assert resource.batch_write_item.call_count == 2
        assert resource.batch_write_item.call_args.kwargs["RequestItems"] == {"t": [leftover]}
        assert sleeps == [0.2]

    def test_persistent_failure_is_counted_not_raised(self):
        error = ClientError({"Error": {"Code": "ProvisionedThroughputExceededException"}}, "BatchWriteItem")
        store, resource, sleeps = self._store([error, error, error])

        result = store.batch_upsert([_item("CITY#a", "STATS#X")])

        assert result.written == 0
        assert result.failed == 1
        assert result.failed_keys == [{"PK": "CITY#a", "SK": "STATS#X"}]
        assert resource.batch_write_item.call_count == 3
        assert sleeps == [0.2, 0.4]
