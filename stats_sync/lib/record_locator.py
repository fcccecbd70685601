"""Finds the full JSON record of a violation among its candidate S3 keys."""

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from stats_sync.lib import s3_utils
from stats_sync.lib.cache import TTLCache
from stats_sync.lib.s3_path_registry import S3Paths

logger = logging.getLogger(__name__)

_YEAR_PREFIX = re.compile(r"^(\d{4})")

YearCandidates = Callable[[Dict[str, Any], int], Iterable[int]]


def year_of_event_date(entry: Dict[str, Any], current_year: int) -> Iterable[int]:
    event_date = entry.get("event_date") or ""
    match = _YEAR_PREFIX.match(event_date)
    if match:
        yield int(match.group(1))


def year_of_id_prefix(entry: Dict[str, Any], current_year: int) -> Iterable[int]:
    match = _YEAR_PREFIX.match(str(entry.get("violation_id") or ""))
    if match:
        year = int(match.group(1))
        # Ids like 1234567 are not years
        if 2000 <= year <= current_year + 1:
            yield year


def recent_years(entry: Dict[str, Any], current_year: int) -> Iterable[int]:
    yield current_year
    yield current_year - 1
    yield current_year - 2


DEFAULT_YEAR_CANDIDATES: Sequence[YearCandidates] = (
    year_of_event_date,
    year_of_id_prefix,
    recent_years,
)


class RecordLocator:
    """Tries candidate record keys in priority order and returns the first hit."""

    def __init__(
        self,
        bucket: str,
        s3_client=None,
        cache: Optional[TTLCache] = None,
        candidates: Sequence[YearCandidates] = DEFAULT_YEAR_CANDIDATES,
        now: Callable[[], float] = time.time,
    ):
        self.bucket = bucket
        self.s3 = s3_client or s3_utils.get_s3_client()
        self.cache = cache if cache is not None else TTLCache(ttl_seconds=300)
        self.candidates = candidates
        self._now = now

    def candidate_keys(self, entry: Dict[str, Any]) -> List[str]:
        state = entry.get("state")
        city_slug = entry.get("city_slug")
        violation_id = entry.get("violation_id")
        if not (state and city_slug and violation_id):
            return []

        current_year = datetime.fromtimestamp(self._now(), tz=timezone.utc).year
        years: List[int] = []
        for builder in self.candidates:
            for year in builder(entry, current_year):
                if year not in years:
                    years.append(year)
        return [S3Paths.violation_record(state, city_slug, year, violation_id) for year in years]

    def find(self, entry: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Full record for a manifest entry, or None when every candidate misses."""
        violation_id = entry.get("violation_id")
        cache_key = f"record:{entry.get('state')}:{entry.get('city_slug')}:{violation_id}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        keys = self.candidate_keys(entry)
        for key in keys:
            record = s3_utils.get_json(self.bucket, key, s3=self.s3)
            if record is not None:
                self.cache.set(cache_key, record)
                return record

        logger.warning(f"[WARN] Record {violation_id} not found after {len(keys)} candidate keys")
        return None
