"""
Incremental sync of one partition's aggregates into the read store.

current  = aggregate(source rows)
previous = last snapshot
delta    = current EXCEPT previous

Only the delta is written. The snapshot is replaced only after the whole
delta has been written, so a partially failed pass is recomputed as a
superset next time. A suspended pass records how far it got together with a
digest of the records it already wrote; if the recomputed delta no longer
starts with exactly those records the resume starts over from the top.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from stats_sync.lib.aggregate_store import AggregateStore
from stats_sync.lib.aggregation import aggregate_rows, build_store_items, diff_aggregates
from stats_sync.lib.config import Settings
from stats_sync.lib.daily_log import DailyRunLog
from stats_sync.lib.progress_tracker import Checkpoint, CheckpointStore, TimeBudget
from stats_sync.lib.s3_utils import calculate_sha256_bytes
from stats_sync.lib.snapshot_store import SnapshotStore
from stats_sync.lib.source_reader import SourceReader

logger = logging.getLogger(__name__)

SYNC_JOB = "sync"

# Written by the rebuild on state items and not derivable from source rows
CARRIED_STATE_FIELDS = ("city_segments", "rebuild_status")


def delta_digest(records: List[Dict[str, Any]]) -> str:
    payload = json.dumps(records, sort_keys=True, separators=(",", ":"), default=str)
    return calculate_sha256_bytes(payload.encode("utf-8"))


@dataclass
class SyncResult:
    partition_id: str
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    total_delta: int = 0
    offset: int = 0
    resume_required: bool = False
    snapshot_replaced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DeltaSyncEngine:
    def __init__(
        self,
        settings: Settings,
        source: SourceReader,
        snapshots: SnapshotStore,
        store: AggregateStore,
        checkpoints: CheckpointStore,
        run_log: Optional[DailyRunLog] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.source = source
        self.snapshots = snapshots
        self.store = store
        self.checkpoints = checkpoints
        self.run_log = run_log
        self._clock = clock

    def sync_partition(self, partition_id: str, budget: Optional[TimeBudget] = None) -> SyncResult:
        """Write new or changed aggregates of one partition.

        Args:
            partition_id: State code
            budget: Time budget for this invocation

        Returns:
            SyncResult; resume_required is True when the budget ran out first
        """
        budget = budget or TimeBudget(self.settings.time_budget_seconds, clock=self._clock)

        current = aggregate_rows(self.source.read_partition_rows(partition_id), partition_id)
        previous = self.snapshots.load(partition_id)
        delta = diff_aggregates(current, previous)
        records = delta.to_dict("records")

        result = SyncResult(
            partition_id=partition_id,
            total_delta=len(records),
            skipped=len(current) - len(records),
        )

        checkpoint = self.checkpoints.load(SYNC_JOB, partition_id)
        offset = 0
        earlier_failures = 0
        if checkpoint:
            offset = min(int(checkpoint.cursor or 0), len(records))
            partial = checkpoint.partial or {}
            if partial.get("digest") != delta_digest(records[:offset]):
                logger.warning(
                    f"[WARN] Delta of {partition_id} changed since the sync was suspended, "
                    f"restarting from offset 0 instead of {offset}"
                )
                offset = 0
            else:
                earlier_failures = int(partial.get("failed", 0))
                logger.info(f"Resuming sync of {partition_id} at delta offset {offset}/{len(records)}")

        logger.info(
            f"Sync {partition_id}: {len(current)} current, {len(previous)} previous, "
            f"{len(records)} changed"
        )

        updated_at = datetime.now(timezone.utc).isoformat()
        while offset < len(records):
            if budget.exhausted():
                return self._suspend(result, records, offset, earlier_failures, budget)

            batch = records[offset:offset + self.settings.batch_size]
            items_by_record = [
                build_store_items(
                    record,
                    self.settings.item_ceiling_bytes,
                    extra=self._carried_fields(record),
                    updated_at=updated_at,
                )
                for record in batch
            ]
            write = self.store.batch_upsert([item for items in items_by_record for item in items])

            failed_keys = {(key["PK"], key["SK"]) for key in write.failed_keys}
            failed_records = sum(
                1 for items in items_by_record
                if any((item["PK"], item["SK"]) in failed_keys for item in items)
            )
            if failed_records:
                logger.error(
                    f"Batch at offset {offset} of {partition_id}: {failed_records} records failed"
                )
            result.failed += failed_records
            result.updated += len(batch) - failed_records
            offset += len(batch)

        result.offset = offset
        if result.failed or earlier_failures:
            logger.warning(
                f"[WARN] Keeping previous snapshot of {partition_id}: "
                f"{result.failed + earlier_failures} records failed to write"
            )
        elif records or len(current) != len(previous):
            self.snapshots.replace(partition_id, current)
            result.snapshot_replaced = True

        if checkpoint:
            self.checkpoints.clear(SYNC_JOB, partition_id)

        logger.info(
            f"[OK] Sync {partition_id} complete: {result.updated} updated, "
            f"{result.skipped} unchanged, {result.failed} failed"
        )
        self._log("completed" if not result.failed else "partial_failure", result)
        return result

    def _carried_fields(self, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Rebuild bookkeeping on the stored state item, kept across the overwrite."""
        if record["scope"] != "state":
            return None
        existing = self.store.get(record["pk"], record["sk"])
        if not existing:
            return None
        return {field: existing[field] for field in CARRIED_STATE_FIELDS if field in existing}

    def _suspend(
        self,
        result: SyncResult,
        records: List[Dict[str, Any]],
        offset: int,
        earlier_failures: int,
        budget: TimeBudget,
    ) -> SyncResult:
        self.checkpoints.save(Checkpoint(
            job=SYNC_JOB,
            partition_id=result.partition_id,
            cursor=offset,
            items_processed=offset,
            reason="time_budget",
            partial={
                "failed": earlier_failures + result.failed,
                "digest": delta_digest(records[:offset]),
            },
        ))
        result.offset = offset
        result.resume_required = True
        logger.info(
            f"[GRACEFUL EXIT] Sync {result.partition_id} suspended after {budget.elapsed():.1f}s "
            f"at offset {offset}/{result.total_delta}"
        )
        self._log("suspended", result)
        return result

    def _log(self, status: str, result: SyncResult) -> None:
        if self.run_log is not None:
            self.run_log.append(SYNC_JOB, result.partition_id, {"status": status, **result.to_dict()})
