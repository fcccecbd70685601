"""
Progress tracking for resumable sync and rebuild passes.

Checkpoints, advisory locks and the sequential rebuild marker are small JSON
documents under the _progress/ prefix of the data bucket. They are written
rarely (once per suspension or per partition) so S3 is sufficient; the lock
is advisory and correctness still relies on idempotent writes.
"""

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import ClientError

from stats_sync.lib import s3_utils
from stats_sync.lib.s3_path_registry import S3Paths

logger = logging.getLogger(__name__)


def _iso(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


@dataclass
class Checkpoint:
    """Resume point of an interrupted pass over one partition."""

    job: str
    partition_id: str
    cursor: Any
    items_processed: int = 0
    saved_at: Optional[str] = None
    reason: Optional[str] = None
    partial: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            job=data["job"],
            partition_id=data["partition_id"],
            cursor=data.get("cursor"),
            items_processed=int(data.get("items_processed", 0)),
            saved_at=data.get("saved_at"),
            reason=data.get("reason"),
            partial=data.get("partial"),
        )


class CheckpointStore:
    """Checkpoints keyed by (job, partition)."""

    def __init__(self, bucket: str, s3_client=None, now: Callable[[], float] = time.time):
        self.bucket = bucket
        self.s3 = s3_client or s3_utils.get_s3_client()
        self._now = now

    def load(self, job: str, partition_id: str) -> Optional[Checkpoint]:
        data = s3_utils.get_json(self.bucket, S3Paths.checkpoint(job, partition_id), s3=self.s3)
        if not data:
            return None
        checkpoint = Checkpoint.from_dict(data)
        logger.info(
            f"Loaded {job} checkpoint for {partition_id}: cursor={checkpoint.cursor!r}, "
            f"items_processed={checkpoint.items_processed}"
        )
        return checkpoint

    def save(self, checkpoint: Checkpoint) -> Checkpoint:
        checkpoint.saved_at = _iso(self._now())
        s3_utils.put_json(
            self.bucket,
            S3Paths.checkpoint(checkpoint.job, checkpoint.partition_id),
            checkpoint.to_dict(),
            s3=self.s3,
        )
        logger.info(
            f"Saved {checkpoint.job} checkpoint for {checkpoint.partition_id} "
            f"at {checkpoint.cursor!r} ({checkpoint.reason or 'no reason'})"
        )
        return checkpoint

    def clear(self, job: str, partition_id: str) -> None:
        s3_utils.delete_object(self.bucket, S3Paths.checkpoint(job, partition_id), s3=self.s3)


@dataclass
class LockRecord:
    name: str
    holder: str
    acquired_at: float
    ttl_seconds: int

    def age_seconds(self, now: float) -> float:
        return now - self.acquired_at

    def is_expired(self, now: float) -> bool:
        return self.age_seconds(now) >= self.ttl_seconds


class LockStore:
    """Advisory named locks with a TTL so a crashed holder cannot block forever."""

    def __init__(
        self,
        bucket: str,
        ttl_seconds: int = 20 * 60,
        s3_client=None,
        now: Callable[[], float] = time.time,
    ):
        self.bucket = bucket
        self.ttl_seconds = ttl_seconds
        self.s3 = s3_client or s3_utils.get_s3_client()
        self._now = now

    def get(self, name: str) -> Optional[LockRecord]:
        data = s3_utils.get_json(self.bucket, S3Paths.lock(name), s3=self.s3)
        if not data:
            return None
        return LockRecord(
            name=name,
            holder=data.get("holder", "unknown"),
            acquired_at=float(data.get("acquired_at", 0)),
            ttl_seconds=int(data.get("ttl_seconds", self.ttl_seconds)),
        )

    def acquire(self, name: str, holder: str) -> bool:
        """Take the lock unless a live one exists.

        The lock object is created with a write-if-absent PUT, so two callers
        racing for a free lock cannot both win. Reclaiming an expired lock
        deletes it first and then races the same way; a caller still holding
        a stale read can delete a freshly reclaimed lock, so the lock is
        best-effort rather than a hard mutual exclusion.

        Returns:
            True if the caller now holds the lock, False on contention
        """
        now = self._now()
        existing = self.get(name)
        if existing and not existing.is_expired(now):
            logger.info(
                f"[SKIP] Lock {name} held by {existing.holder} "
                f"({existing.age_seconds(now):.0f}s old)"
            )
            return False
        if existing:
            logger.warning(
                f"Reclaiming expired lock {name} from {existing.holder} "
                f"({existing.age_seconds(now):.0f}s old)"
            )
            s3_utils.delete_object(self.bucket, S3Paths.lock(name), s3=self.s3)

        try:
            s3_utils.put_json(
                self.bucket,
                S3Paths.lock(name),
                {
                    "holder": holder,
                    "acquired_at": now,
                    "locked_at": _iso(now),
                    "ttl_seconds": self.ttl_seconds,
                },
                s3=self.s3,
                if_none_match=True,
            )
        except ClientError as e:
            if not s3_utils.is_precondition_failed(e):
                raise
            logger.info(f"[SKIP] Lock {name} was taken by another caller first")
            return False
        logger.info(f"Acquired lock {name} for {holder}")
        return True

    def release(self, name: str) -> None:
        try:
            s3_utils.delete_object(self.bucket, S3Paths.lock(name), s3=self.s3)
            logger.info(f"Released lock {name}")
        except ClientError as e:
            # The TTL reclaims it eventually
            logger.error(f"Failed to release lock {name}: {e}")


class SequenceTracker:
    """Records which partition a sequential rebuild chain is working on."""

    def __init__(self, bucket: str, s3_client=None, now: Callable[[], float] = time.time):
        self.bucket = bucket
        self.s3 = s3_client or s3_utils.get_s3_client()
        self._now = now

    def mark(self, partition_id: str) -> None:
        now = self._now()
        s3_utils.put_json(
            self.bucket,
            S3Paths.rebuild_sequence(),
            {"current_partition": partition_id, "updated_at": now, "updated_at_iso": _iso(now)},
            s3=self.s3,
        )

    def current(self) -> Optional[Dict[str, Any]]:
        return s3_utils.get_json(self.bucket, S3Paths.rebuild_sequence(), s3=self.s3)


class TimeBudget:
    """Wall-clock budget for one invocation."""

    def __init__(self, limit_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.limit_seconds = limit_seconds
        self._clock = clock
        self._started = clock()

    def elapsed(self) -> float:
        return self._clock() - self._started

    def remaining(self) -> float:
        return max(0.0, self.limit_seconds - self.elapsed())

    def exhausted(self) -> bool:
        return self.elapsed() >= self.limit_seconds

    @classmethod
    def for_invocation(cls, settings, context=None, clock: Callable[[], float] = time.monotonic) -> "TimeBudget":
        """Budget capped by the Lambda's remaining time minus a safety reserve."""
        limit = settings.time_budget_seconds
        if context is not None and hasattr(context, "get_remaining_time_in_millis"):
            remaining = context.get_remaining_time_in_millis() / 1000.0
            limit = min(limit, max(0.0, remaining - settings.time_reserve_seconds))
        return cls(limit, clock=clock)
