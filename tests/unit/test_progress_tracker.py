"""
Tests for checkpoints, advisory locks, the sequence marker and time budgets.
"""

import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from conftest import TEST_BUCKET, FakeClock
from stats_sync.lib.config import Settings
from stats_sync.lib.progress_tracker import (
    Checkpoint,
    CheckpointStore,
    LockStore,
    SequenceTracker,
    TimeBudget,
)
from stats_sync.lib.s3_path_registry import S3Paths


class TestCheckpointStore:
    def test_missing_checkpoint_is_none(self, s3_client):
        store = CheckpointStore(TEST_BUCKET, s3_client=s3_client)
        assert store.load("sync", "TX") is None

    def test_save_load_clear(self, s3_client, fake_clock):
        store = CheckpointStore(TEST_BUCKET, s3_client=s3_client, now=fake_clock)
        store.save(Checkpoint(
            job="rebuild",
            partition_id="TX",
            cursor="houston",
            items_processed=12,
            reason="time_budget",
            partial={"brands": {"OSHAtrail": {"count": 30}}},
        ))

        raw = json.loads(
            s3_client.get_object(Bucket=TEST_BUCKET, Key=S3Paths.checkpoint("rebuild", "TX"))["Body"].read()
        )
        assert raw["cursor"] == "houston"
        assert raw["saved_at"].startswith("2023-11-14")

        loaded = store.load("rebuild", "TX")
        assert loaded.cursor == "houston"
        assert loaded.items_processed == 12
        assert loaded.partial == {"brands": {"OSHAtrail": {"count": 30}}}

        store.clear("rebuild", "TX")
        assert store.load("rebuild", "TX") is None

    def test_checkpoints_are_per_job(self, s3_client):
        store = CheckpointStore(TEST_BUCKET, s3_client=s3_client)
        store.save(Checkpoint(job="sync", partition_id="TX", cursor=50))

        assert store.load("rebuild", "TX") is None
        assert store.load("sync", "TX").cursor == 50


class TestLockStore:
    def test_second_acquire_is_refused(self, s3_client, fake_clock):
        locks = LockStore(TEST_BUCKET, ttl_seconds=60, s3_client=s3_client, now=fake_clock)

        assert locks.acquire("rebuild-TX", "worker-1") is True
        assert locks.acquire("rebuild-TX", "worker-2") is False
        assert locks.get("rebuild-TX").holder == "worker-1"

    def test_expired_lock_is_reclaimed(self, s3_client, fake_clock):
        locks = LockStore(TEST_BUCKET, ttl_seconds=60, s3_client=s3_client, now=fake_clock)
        locks.acquire("rebuild-TX", "worker-1")

        fake_clock.advance(61)

        assert locks.acquire("rebuild-TX", "worker-2") is True
        assert locks.get("rebuild-TX").holder == "worker-2"

    def test_release_frees_the_lock(self, s3_client, fake_clock):
        locks = LockStore(TEST_BUCKET, ttl_seconds=60, s3_client=s3_client, now=fake_clock)
        locks.acquire("rebuild-TX", "worker-1")
        locks.release("rebuild-TX")

        assert locks.get("rebuild-TX") is None
        assert locks.acquire("rebuild-TX", "worker-2") is True

    def test_release_failure_is_logged_not_raised(self):
        s3 = MagicMock()
        s3.delete_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "DeleteObject"
        )
        locks = LockStore(TEST_BUCKET, s3_client=s3)

        locks.release("rebuild-TX")

    def test_lock_is_created_only_if_absent(self):
        s3 = MagicMock()
        s3.get_object.side_effect = ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        s3.put_object.return_value = {"ETag": '"abc"'}
        locks = LockStore(TEST_BUCKET, s3_client=s3)

        assert locks.acquire("rebuild-TX", "worker-1") is True

        assert s3.put_object.call_args.kwargs["IfNoneMatch"] == "*"
        assert s3.put_object.call_args.kwargs["Key"] == S3Paths.lock("rebuild-TX")

    def test_losing_the_create_race_is_contention(self):
        s3 = MagicMock()
        s3.get_object.side_effect = ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        s3.put_object.side_effect = ClientError(
            {"Error": {"Code": "PreconditionFailed", "Message": "exists"}}, "PutObject"
        )
        locks = LockStore(TEST_BUCKET, s3_client=s3)

        assert locks.acquire("rebuild-TX", "worker-2") is False

    def test_other_put_errors_propagate(self):
        s3 = MagicMock()
        s3.get_object.side_effect = ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        s3.put_object.side_effect = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
        locks = LockStore(TEST_BUCKET, s3_client=s3)

        with pytest.raises(ClientError):
            locks.acquire("rebuild-TX", "worker-1")

    def test_lock_age(self, s3_client, fake_clock):
        locks = LockStore(TEST_BUCKET, ttl_seconds=60, s3_client=s3_client, now=fake_clock)
        locks.acquire("rebuild-TX", "worker-1")
        fake_clock.advance(25)

        lock = locks.get("rebuild-TX")
        assert lock.age_seconds(fake_clock()) == 25
        assert lock.is_expired(fake_clock()) is False


class TestSequenceTracker:
    def test_mark_and_current(self, s3_client, fake_clock):
        tracker = SequenceTracker(TEST_BUCKET, s3_client=s3_client, now=fake_clock)
        assert tracker.current() is None

        tracker.mark("RI")

        assert tracker.current()["current_partition"] == "RI"


class TestTimeBudget:
    def test_exhausted_after_limit(self):
        clock = FakeClock(0.0)
        budget = TimeBudget(10, clock=clock)

        clock.advance(9.5)
        assert budget.exhausted() is False
        assert budget.remaining() == 0.5

        clock.advance(0.5)
        assert budget.exhausted() is True
        assert budget.remaining() == 0.0

    def test_for_invocation_respects_lambda_remaining_time(self, mock_lambda_context):
        settings = Settings(bucket=TEST_BUCKET, time_budget_seconds=885, time_reserve_seconds=15)

        budget = TimeBudget.for_invocation(settings, mock_lambda_context)

        # 300s remaining minus the 15s reserve
        assert budget.limit_seconds == 285

    def test_for_invocation_without_context(self):
        settings = Settings(bucket=TEST_BUCKET, time_budget_seconds=120)
        assert TimeBudget.for_invocation(settings).limit_seconds == 120
