"""Builds the stores and engines a Lambda invocation works with."""

import logging
from dataclasses import dataclass
from typing import Optional

import boto3

from stats_sync.lib.aggregate_store import AggregateStore
from stats_sync.lib.cache import TTLCache
from stats_sync.lib.config import Settings, load_settings
from stats_sync.lib.daily_log import DailyRunLog
from stats_sync.lib.delta_sync import DeltaSyncEngine
from stats_sync.lib.manifest_sync import ManifestSyncEngine
from stats_sync.lib.progress_tracker import CheckpointStore, LockStore, SequenceTracker
from stats_sync.lib.rebuild import RebuildEngine
from stats_sync.lib.recent5_manifest import ManifestStore
from stats_sync.lib.record_locator import RecordLocator
from stats_sync.lib.s3_utils import BOTO_CONFIG
from stats_sync.lib.snapshot_store import SnapshotStore
from stats_sync.lib.source_reader import SourceReader
from stats_sync.lib.work_queue import WorkQueue

logger = logging.getLogger(__name__)


@dataclass
class Components:
    settings: Settings
    store: AggregateStore
    run_log: DailyRunLog
    delta_sync: DeltaSyncEngine
    manifest_sync: ManifestSyncEngine
    rebuild: RebuildEngine
    sync_queue: Optional[WorkQueue] = None
    rebuild_queue: Optional[WorkQueue] = None


def build_components(
    settings: Optional[Settings] = None,
    s3_client=None,
    dynamodb_resource=None,
    sqs_client=None,
) -> Components:
    """Wire every store and engine from settings and (optionally) given clients."""
    settings = settings or load_settings()
    s3 = s3_client or boto3.client("s3", region_name=settings.region, config=BOTO_CONFIG)
    dynamodb = dynamodb_resource or boto3.resource("dynamodb", region_name=settings.region, config=BOTO_CONFIG)
    sqs = sqs_client or boto3.client("sqs", region_name=settings.region, config=BOTO_CONFIG)

    listing_cache = TTLCache(ttl_seconds=settings.cache_ttl_seconds)
    record_cache = TTLCache(ttl_seconds=settings.cache_ttl_seconds, max_entries=5000)

    store = AggregateStore(settings.table_name, dynamodb_resource=dynamodb, max_attempts=settings.batch_max_attempts)
    run_log = DailyRunLog(settings.bucket, s3_client=s3)
    source = SourceReader(settings.bucket, s3_client=s3, cache=listing_cache, brands=settings.brands)
    checkpoints = CheckpointStore(settings.bucket, s3_client=s3)
    manifests = ManifestStore(settings.bucket, s3_client=s3)

    sync_queue = WorkQueue(settings.sync_queue_url, sqs_client=sqs) if settings.sync_queue_url else None
    rebuild_queue = WorkQueue(settings.rebuild_queue_url, sqs_client=sqs) if settings.rebuild_queue_url else None

    return Components(
        settings=settings,
        store=store,
        run_log=run_log,
        delta_sync=DeltaSyncEngine(
            settings,
            source=source,
            snapshots=SnapshotStore(settings.bucket, s3_client=s3),
            store=store,
            checkpoints=checkpoints,
            run_log=run_log,
        ),
        manifest_sync=ManifestSyncEngine(
            manifests,
            RecordLocator(settings.bucket, s3_client=s3, cache=record_cache),
            store,
        ),
        rebuild=RebuildEngine(
            settings,
            source=source,
            store=store,
            manifests=manifests,
            checkpoints=checkpoints,
            locks=LockStore(settings.bucket, ttl_seconds=settings.lock_ttl_seconds, s3_client=s3),
            run_log=run_log,
            queue=rebuild_queue,
            sequence=SequenceTracker(settings.bucket, s3_client=s3),
        ),
        sync_queue=sync_queue,
        rebuild_queue=rebuild_queue,
    )
