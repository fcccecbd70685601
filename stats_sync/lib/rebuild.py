"""
Full recomputation of a partition's aggregates from source rows.

A rebuild walks the partition's children (cities) in sorted order, writes
each child's own records and accumulates the partition-level rollup. It is
bounded by the invocation's time budget and by the size of the state's
child-directory item, and can stop and resume any number of times:

    IDLE -> LOCKED_RUNNING -> SUSPENDED_TIME | SUSPENDED_SIZE | REVERTED | DONE | FAILED

Every stop commits what has been accumulated and saves a checkpoint whose
``partial`` carries the running totals, so the next invocation continues
from the checkpoint's child rather than starting over.
"""

import bisect
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import pandas as pd
from botocore.exceptions import ClientError

from stats_sync.lib.aggregate_store import AggregateStore
from stats_sync.lib.aggregation import aggregate_rows, build_store_items, dumps_map
from stats_sync.lib.config import Settings
from stats_sync.lib.daily_log import DailyRunLog
from stats_sync.lib.dynamo_size import check_size_limit, estimate_item_size, to_dynamo_item
from stats_sync.lib.national_rollup import rollup_national
from stats_sync.lib.progress_tracker import (
    Checkpoint,
    CheckpointStore,
    LockStore,
    SequenceTracker,
    TimeBudget,
)
from stats_sync.lib.recent5_manifest import ManifestStore, merge_recent, recent_from_rows
from stats_sync.lib.source_reader import SourceReader
from stats_sync.lib.work_queue import WorkQueue

logger = logging.getLogger(__name__)

REBUILD_JOB = "rebuild"


class RebuildState(str, Enum):
    IDLE = "IDLE"
    LOCKED_RUNNING = "LOCKED_RUNNING"
    SUSPENDED_TIME = "SUSPENDED_TIME"
    SUSPENDED_SIZE = "SUSPENDED_SIZE"
    REVERTED = "REVERTED"
    DONE = "DONE"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


SUSPENDED_STATES = (RebuildState.SUSPENDED_TIME, RebuildState.SUSPENDED_SIZE, RebuildState.REVERTED)

_RUN_LOG_STATUS = {
    RebuildState.SUSPENDED_TIME: "suspended",
    RebuildState.SUSPENDED_SIZE: "suspended",
    RebuildState.REVERTED: "reverted",
    RebuildState.DONE: "completed",
    RebuildState.FAILED: "failed",
    RebuildState.SKIPPED: "skipped",
}


class RebuildCommitError(Exception):
    """Raised when records of a rebuild could not be written."""


@dataclass
class RebuildResult:
    partition_id: str
    state: RebuildState
    children_processed: int = 0
    cursor: Optional[str] = None
    next_partition: Optional[str] = None
    chain_verified: Optional[bool] = None
    message: str = ""

    @property
    def resume_required(self) -> bool:
        return self.state in SUSPENDED_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partition_id": self.partition_id,
            "state": self.state.value,
            "children_processed": self.children_processed,
            "cursor": self.cursor,
            "next_partition": self.next_partition,
            "chain_verified": self.chain_verified,
            "resume_required": self.resume_required,
            "message": self.message,
        }


def segment_item(partition_id: str, brand: str, index: int, cities: Dict[str, int]) -> Dict[str, Any]:
    """Child-directory item listing a run of cities and their counts."""
    return {
        "PK": f"STATE#{partition_id}",
        "SK": f"STATS#{brand}#CITIES#{index}",
        "record_type": "stats_segment",
        "brand": brand,
        "partition": partition_id,
        "segment_index": index,
        "cities": dict(sorted(cities.items())),
    }


@dataclass
class ChildContribution:
    """Everything one child adds to its partition."""

    child: str
    rows: int
    records: List[Dict[str, Any]]
    recent: Dict[str, Dict[str, List[Dict[str, Any]]]]

    @classmethod
    def from_rows(cls, partition_id: str, child: str, rows: pd.DataFrame, recent_limit: int) -> "ChildContribution":
        frame = aggregate_rows(rows, partition_id)
        return cls(
            child=child,
            rows=len(rows),
            records=frame.to_dict("records"),
            recent=recent_from_rows(rows, recent_limit),
        )

    def by_scope(self, scope: str) -> List[Dict[str, Any]]:
        return [r for r in self.records if r["scope"] == scope]

    def brand_counts(self) -> Dict[str, int]:
        return {r["brand"]: int(r["count"]) for r in self.by_scope("state")}


@dataclass
class PartitionRollup:
    """Running totals of a partition, carried between invocations."""

    partition_id: str
    brands: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    segment: Dict[str, Dict[str, int]] = field(default_factory=dict)
    segments_sealed: int = 0
    children_processed: int = 0

    def _brand(self, brand: str) -> Dict[str, Any]:
        return self.brands.setdefault(brand, {
            "count": 0,
            "total_fines": 0.0,
            "child_count": 0,
            "breakdown": {},
            "companies": {},
            "recent": {},
        })

    def largest_segment_item(self, contribution: Optional[ChildContribution] = None) -> Dict[str, Any]:
        """Biggest open child-directory item, optionally with a child added."""
        counts = contribution.brand_counts() if contribution is not None else {}
        largest: Dict[str, Any] = {}
        largest_size = -1
        for brand in sorted(set(self.segment) | set(counts)):
            cities = dict(self.segment.get(brand, {}))
            if brand in counts:
                cities[contribution.child] = counts[brand]
            item = segment_item(self.partition_id, brand, self.segments_sealed + 1, cities)
            size = estimate_item_size(item)
            if size > largest_size:
                largest, largest_size = item, size
        return largest

    def segment_is_empty(self) -> bool:
        return not any(self.segment.values())

    def add(self, contribution: ChildContribution, recent_limit: int) -> None:
        for record in contribution.by_scope("state"):
            totals = self._brand(record["brand"])
            totals["count"] += int(record["count"])
            totals["total_fines"] = round(totals["total_fines"] + float(record["total_fines"]), 2)
            totals["child_count"] += 1
            _merge_counts(totals["breakdown"], json.loads(record["breakdown_json"] or "{}"))
            self.segment.setdefault(record["brand"], {})[contribution.child] = int(record["count"])

        for record in contribution.by_scope("company"):
            slug = record["pk"][len("COMPANY#"):]
            company = self._brand(record["brand"])["companies"].setdefault(slug, {
                "name": record["name"],
                "count": 0,
                "total_fines": 0.0,
                "child_count": 0,
                "breakdown": {},
            })
            company["name"] = record["name"] or company["name"]
            company["count"] += int(record["count"])
            company["total_fines"] = round(company["total_fines"] + float(record["total_fines"]), 2)
            company["child_count"] += int(record["child_count"])
            _merge_counts(company["breakdown"], json.loads(record["breakdown_json"] or "{}"))

        for brand, categories in contribution.recent.items():
            recent = self._brand(brand)["recent"]
            for category, entries in categories.items():
                recent[category] = merge_recent(recent.get(category, []), entries, recent_limit)

        self.children_processed += 1

    def seal_segment(self) -> Dict[str, Dict[str, int]]:
        sealed = {brand: cities for brand, cities in self.segment.items() if cities}
        if sealed:
            self.segments_sealed += 1
        self.segment = {}
        return sealed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partition_id": self.partition_id,
            "brands": self.brands,
            "segment": self.segment,
            "segments_sealed": self.segments_sealed,
            "children_processed": self.children_processed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartitionRollup":
        return cls(
            partition_id=data["partition_id"],
            brands=data.get("brands") or {},
            segment=data.get("segment") or {},
            segments_sealed=int(data.get("segments_sealed", 0)),
            children_processed=int(data.get("children_processed", 0)),
        )


def _merge_counts(target: Dict[str, int], source: Dict[str, Any]) -> None:
    for key, value in source.items():
        target[key] = target.get(key, 0) + int(value)


class RebuildEngine:
    """Rebuilds partitions under a lock, in fan-out or sequential mode."""

    def __init__(
        self,
        settings: Settings,
        source: SourceReader,
        store: AggregateStore,
        manifests: ManifestStore,
        checkpoints: CheckpointStore,
        locks: LockStore,
        run_log: Optional[DailyRunLog] = None,
        queue: Optional[WorkQueue] = None,
        sequence: Optional[SequenceTracker] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.source = source
        self.store = store
        self.manifests = manifests
        self.checkpoints = checkpoints
        self.locks = locks
        self.run_log = run_log
        self.queue = queue
        self.sequence = sequence
        self._clock = clock
        self._now = now
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def rebuild_partition(
        self,
        partition_id: str,
        sequential: bool = False,
        budget: Optional[TimeBudget] = None,
        holder: Optional[str] = None,
    ) -> RebuildResult:
        """Rebuild one partition, resuming from its checkpoint if present.

        Args:
            partition_id: State code
            sequential: Hand off to the next partition when done
            budget: Time budget for this invocation
            holder: Lock holder id (defaults to a random id)

        Returns:
            RebuildResult describing where the pass stopped

        Raises:
            Exception: Anything unexpected, after releasing the lock
        """
        holder = holder or uuid.uuid4().hex
        lock_name = f"{REBUILD_JOB}-{partition_id}"
        if not self.locks.acquire(lock_name, holder):
            result = RebuildResult(partition_id, RebuildState.SKIPPED, message="another rebuild holds the lock")
            self._log(result)
            return result

        released = False
        try:
            if sequential and self.sequence is not None:
                self.sequence.mark(partition_id)

            budget = budget or TimeBudget(self.settings.time_budget_seconds, clock=self._clock)
            result = self._run(partition_id, budget)

            if result.state is RebuildState.DONE and sequential:
                next_partition = self.settings.next_partition(partition_id)
                if next_partition:
                    # The next stage needs this partition's lock free before it is told to start
                    self.locks.release(lock_name)
                    released = True
                    result.next_partition = next_partition
                    result.chain_verified = self._hand_off(partition_id, next_partition)
                else:
                    rollup_national(self.store, self.settings.partitions, self.settings.rollup_sentinel)
                    logger.info(f"[OK] Sequential rebuild finished at {partition_id}")
            return result
        except Exception as e:
            logger.exception(f"Rebuild of {partition_id} failed: {e}")
            self._log(RebuildResult(partition_id, RebuildState.FAILED, message=str(e)))
            raise
        finally:
            if not released:
                self.locks.release(lock_name)

    # ------------------------------------------------------------------
    # Partition walk
    # ------------------------------------------------------------------

    def _run(self, partition_id: str, budget: TimeBudget) -> RebuildResult:
        checkpoint = self.checkpoints.load(REBUILD_JOB, partition_id)
        if checkpoint and checkpoint.partial:
            rollup = PartitionRollup.from_dict(checkpoint.partial)
        else:
            rollup = PartitionRollup(partition_id)

        children = self.source.list_children(partition_id)
        start = bisect.bisect_left(children, checkpoint.cursor) if checkpoint and checkpoint.cursor else 0
        logger.info(
            f"Rebuilding {partition_id}: {len(children)} children, starting at index {start}"
            + (f" ({checkpoint.cursor})" if checkpoint else "")
        )

        processed = 0
        for index in range(start, len(children)):
            child = children[index]
            next_child = children[index + 1] if index + 1 < len(children) else None

            rows = self.source.read_child_rows(partition_id, child)
            contribution = ChildContribution.from_rows(partition_id, child, rows, self.settings.recent_limit)

            projected = check_size_limit(
                rollup.largest_segment_item(contribution),
                self.settings.size_warn_bytes,
                self.settings.size_max_bytes,
            )
            if projected.exceeded:
                if rollup.segment_is_empty():
                    logger.warning(
                        f"[WARN] {partition_id}/{child} alone projects {projected.size_bytes} bytes; "
                        f"accepting it in its own segment"
                    )
                else:
                    logger.warning(
                        f"[REVERT] {partition_id}/{child} would make the directory {projected.size_bytes} bytes "
                        f"(ceiling {self.settings.size_max_bytes}); deferring it"
                    )
                    return self._suspend(
                        rollup, RebuildState.REVERTED, cursor=child, processed=processed,
                        reason="size_revert",
                    )

            self._write_child(partition_id, contribution)
            rollup.add(contribution, self.settings.recent_limit)
            processed += 1

            if next_child is None:
                break

            if budget.exhausted():
                logger.info(
                    f"[GRACEFUL EXIT] {partition_id} out of time after {budget.elapsed():.1f}s, "
                    f"next child {next_child}"
                )
                return self._suspend(
                    rollup, RebuildState.SUSPENDED_TIME, cursor=next_child, processed=processed,
                    reason="time_budget",
                )

            if projected.warn:
                logger.info(
                    f"[GRACEFUL EXIT] {partition_id} directory at {projected.size_bytes} bytes "
                    f"(warn {self.settings.size_warn_bytes}), next child {next_child}"
                )
                return self._suspend(
                    rollup, RebuildState.SUSPENDED_SIZE, cursor=next_child, processed=processed,
                    reason="size_warning",
                )

        self._commit(rollup, complete=True)
        if checkpoint:
            self.checkpoints.clear(REBUILD_JOB, partition_id)

        result = RebuildResult(
            partition_id,
            RebuildState.DONE,
            children_processed=processed,
            message=f"{rollup.children_processed} children rebuilt",
        )
        logger.info(f"[OK] Rebuild of {partition_id} done: {result.message}")
        self._log(result)
        return result

    def _suspend(
        self,
        rollup: PartitionRollup,
        state: RebuildState,
        cursor: str,
        processed: int,
        reason: str,
    ) -> RebuildResult:
        self._commit(rollup, complete=False)
        self.checkpoints.save(Checkpoint(
            job=REBUILD_JOB,
            partition_id=rollup.partition_id,
            cursor=cursor,
            items_processed=rollup.children_processed,
            reason=reason,
            partial=rollup.to_dict(),
        ))
        result = RebuildResult(
            rollup.partition_id,
            state,
            children_processed=processed,
            cursor=cursor,
            message=reason,
        )
        self._log(result)
        return result

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _timestamp(self) -> str:
        return datetime.fromtimestamp(self._now(), tz=timezone.utc).isoformat()

    def _write(self, items: List[Dict[str, Any]], what: str) -> None:
        result = self.store.batch_upsert(items)
        if result.failed:
            raise RebuildCommitError(f"{result.failed} of {len(items)} {what} items failed to write")

    def _write_child(self, partition_id: str, contribution: ChildContribution) -> None:
        updated_at = self._timestamp()
        items = []
        for record in contribution.by_scope("city"):
            items.extend(build_store_items(record, self.settings.item_ceiling_bytes, updated_at=updated_at))
        self._write(items, f"{partition_id}/{contribution.child} city")

        manifest = self.manifests.load(partition_id, contribution.child)
        for brand, categories in contribution.recent.items():
            for category, entries in categories.items():
                manifest.set_recent(brand, category, entries)
        self.manifests.save(manifest)

    def _commit(self, rollup: PartitionRollup, complete: bool) -> None:
        """Write the rollup's state, directory segment and company records."""
        partition_id = rollup.partition_id
        updated_at = self._timestamp()
        sealed = rollup.seal_segment()
        items: List[Dict[str, Any]] = []

        for brand, cities in sealed.items():
            items.append(to_dynamo_item(segment_item(partition_id, brand, rollup.segments_sealed, cities)))

        for brand, totals in rollup.brands.items():
            record = {
                "pk": f"STATE#{partition_id}",
                "sk": f"STATS#{brand}",
                "scope": "state",
                "brand": brand,
                "partition": partition_id,
                "name": partition_id,
                "count": totals["count"],
                "total_fines": totals["total_fines"],
                "child_count": totals["child_count"],
                "breakdown_json": dumps_map(totals["breakdown"]),
                "companies_json": dumps_map({s: c["count"] for s, c in totals["companies"].items()}),
            }
            items.extend(build_store_items(
                record,
                self.settings.item_ceiling_bytes,
                extra={
                    "rebuild_status": "complete" if complete else "partial",
                    "city_segments": rollup.segments_sealed,
                },
                updated_at=updated_at,
            ))

            for slug, company in totals["companies"].items():
                items.extend(build_store_items({
                    "pk": f"COMPANY#{slug}",
                    "sk": f"STATS#{brand}#{partition_id}",
                    "scope": "company",
                    "brand": brand,
                    "partition": partition_id,
                    "name": company["name"],
                    "count": company["count"],
                    "total_fines": company["total_fines"],
                    "child_count": company["child_count"],
                    "breakdown_json": dumps_map(company["breakdown"]),
                    "companies_json": "",
                }, self.settings.item_ceiling_bytes, updated_at=updated_at))

        self._write(items, f"{partition_id} rollup")

        manifest = self.manifests.load(partition_id)
        for brand, totals in rollup.brands.items():
            for category, entries in totals["recent"].items():
                manifest.set_recent(brand, category, entries)
        self.manifests.save(manifest)

        logger.info(
            f"Committed {partition_id} ({'complete' if complete else 'partial'}): "
            f"{len(items)} items, {rollup.segments_sealed} directory segments"
        )

    # ------------------------------------------------------------------
    # Sequential hand-off
    # ------------------------------------------------------------------

    def _next_started(self, next_partition: str) -> bool:
        lock = self.locks.get(f"{REBUILD_JOB}-{next_partition}")
        if lock and lock.age_seconds(self._now()) <= self.settings.chain_lock_freshness_seconds:
            return True

        if self.sequence is not None:
            progress = self.sequence.current() or {}
            current = progress.get("current_partition")
            partitions = self.settings.partitions
            if current in partitions and next_partition in partitions:
                return partitions.index(current) >= partitions.index(next_partition)
        return False

    def _wait_for_start(self, next_partition: str) -> bool:
        for _ in range(self.settings.chain_verify_polls):
            if self._next_started(next_partition):
                return True
            self._sleep(self.settings.chain_poll_interval_seconds)
        return False

    def _hand_off(self, partition_id: str, next_partition: str) -> bool:
        """Publish the next partition and confirm it started.

        Returns:
            True once the next stage shows evidence of running; False after
            every attempt failed (logged as a broken chain, not raised)
        """
        if self.queue is None:
            logger.critical(f"[CRITICAL] No rebuild queue configured; chain stops after {partition_id}")
            self._log_chain_broken(partition_id, next_partition, attempts=0)
            return False

        message = {"partition": next_partition, "mode": "sequential"}
        attempts = self.settings.chain_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                self.queue.publish(message)
            except ClientError as e:
                logger.error(f"Attempt {attempt}/{attempts} to publish {next_partition} failed: {e}")
            else:
                if self._wait_for_start(next_partition):
                    logger.info(f"[OK] {next_partition} started (attempt {attempt}/{attempts})")
                    return True
                logger.warning(f"No sign of {next_partition} starting (attempt {attempt}/{attempts})")

            if attempt < attempts:
                self._sleep(2 ** attempt)

        logger.critical(
            f"[CRITICAL] Rebuild chain broken: {next_partition} did not start after "
            f"{attempts} attempts following {partition_id}"
        )
        self._log_chain_broken(partition_id, next_partition, attempts)
        return False

    def _log_chain_broken(self, partition_id: str, next_partition: str, attempts: int) -> None:
        if self.run_log is not None:
            self.run_log.append(REBUILD_JOB, next_partition, {
                "status": "chain_broken",
                "previous_partition": partition_id,
                "attempts": attempts,
            })

    def _log(self, result: RebuildResult) -> None:
        if self.run_log is not None:
            self.run_log.append(REBUILD_JOB, result.partition_id, {
                "status": _RUN_LOG_STATUS.get(result.state, result.state.value.lower()),
                **result.to_dict(),
            })
