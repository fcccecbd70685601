"""Append-only daily run log, one JSON document per UTC day."""

import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Union

from botocore.exceptions import ClientError

from stats_sync.lib import s3_utils
from stats_sync.lib.s3_path_registry import S3Paths

logger = logging.getLogger(__name__)

LOG_KINDS = ("sync", "rebuild")


class DailyRunLog:
    """Per-partition outcome log for operators (syncs and rebuilds)."""

    def __init__(self, bucket: str, s3_client=None, now: Callable[[], float] = time.time):
        self.bucket = bucket
        self.s3 = s3_client or s3_utils.get_s3_client()
        self._now = now

    def _utc_now(self) -> datetime:
        return datetime.fromtimestamp(self._now(), tz=timezone.utc)

    def _empty(self, day: str) -> Dict[str, Any]:
        return {
            "date": day,
            "syncs": {},
            "rebuilds": {},
            "last_updated": self._utc_now().isoformat(),
        }

    def get(self, day: Optional[Union[date, str]] = None) -> Dict[str, Any]:
        """Fetch the log for a day (today by default); empty if none exists."""
        if day is None:
            day = self._utc_now().date()
        if isinstance(day, date):
            day = day.isoformat()
        log = s3_utils.get_json(self.bucket, S3Paths.daily_log(day), s3=self.s3)
        return log or self._empty(day)

    def append(self, kind: str, key: str, entry: Dict[str, Any]) -> bool:
        """Append an outcome entry under today's log.

        Args:
            kind: 'sync' or 'rebuild'
            key: Grouping key, usually the partition id
            entry: Outcome details (status, counts, message)

        Returns:
            True if written; False if S3 rejected the write
        """
        if kind not in LOG_KINDS:
            raise ValueError(f"Unknown log kind {kind!r}; expected one of {LOG_KINDS}")

        now = self._utc_now()
        day = now.date().isoformat()
        try:
            log = self.get(day)
            bucket_name = f"{kind}s"
            log.setdefault(bucket_name, {}).setdefault(key, []).append(
                {**entry, "timestamp": now.isoformat()}
            )
            log["last_updated"] = now.isoformat()
            s3_utils.put_json(self.bucket, S3Paths.daily_log(day), log, s3=self.s3)
            return True
        except ClientError as e:
            logger.error(f"[WARN] Failed to append {kind} entry for {key} to daily log: {e}")
            return False

    def get_range(self, start: Union[date, str], end: Optional[Union[date, str]] = None) -> Dict[str, Dict[str, Any]]:
        """Logs keyed by ISO date for every day from start to end inclusive."""
        if isinstance(start, str):
            start = date.fromisoformat(start)
        if end is None:
            end = self._utc_now().date()
        elif isinstance(end, str):
            end = date.fromisoformat(end)

        logs = {}
        current = start
        while current <= end:
            logs[current.isoformat()] = self.get(current)
            current += timedelta(days=1)
        return logs
