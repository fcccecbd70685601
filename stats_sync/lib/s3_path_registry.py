from datetime import date
from typing import Optional, Union


class S3Paths:
    """
    Centralized registry for all S3 paths used by the stats sync engine.

    Structure:
    - silver/violations/: Normalized violation rows (Parquet, Hive partitioned)
    - National/USA/: Per-violation JSON records and recent-5 manifests
    - gold/snapshots/: Last fully-synced aggregate snapshot per partition
    - _progress/: Checkpoints, locks and sequential rebuild progress
    - _logs/daily/: Append-only daily run log
    """

    SOURCE_PREFIX = "silver/violations"
    LAKE_ROOT = "National/USA"
    SNAPSHOT_PREFIX = "gold/snapshots"
    PROGRESS_PREFIX = "_progress"
    DAILY_LOG_PREFIX = "_logs/daily"

    # =========================================================================
    # SOURCE (Silver)
    # =========================================================================

    @staticmethod
    def source_partition_prefix(state: str) -> str:
        """Prefix holding every city partition of a state."""
        return f"{S3Paths.SOURCE_PREFIX}/state={state}/"

    @staticmethod
    def source_child_prefix(state: str, city_slug: str) -> str:
        """Prefix holding the parquet files of one city."""
        return f"{S3Paths.SOURCE_PREFIX}/state={state}/city={city_slug}/"

    @staticmethod
    def source_child_file(state: str, city_slug: str, name: str = "part-0000.parquet") -> str:
        return f"{S3Paths.source_child_prefix(state, city_slug)}{name}"

    # =========================================================================
    # RECORDS AND MANIFESTS
    # =========================================================================

    @staticmethod
    def scope_path(state: str, city_slug: Optional[str] = None) -> str:
        """Directory of a state or city scope, with trailing slash."""
        if city_slug:
            return f"{S3Paths.LAKE_ROOT}/{state}/{city_slug}/"
        return f"{S3Paths.LAKE_ROOT}/{state}/"

    @staticmethod
    def manifest(state: str, city_slug: Optional[str] = None) -> str:
        """Recent-5 manifest of a scope."""
        return f"{S3Paths.scope_path(state, city_slug)}manifest.json"

    @staticmethod
    def violation_record(state: str, city_slug: str, year: Union[int, str], violation_id: str) -> str:
        """Full JSON record of one violation."""
        return f"{S3Paths.scope_path(state, city_slug)}{year}/{violation_id}.json"

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    @staticmethod
    def snapshot(partition_id: str) -> str:
        """Aggregate snapshot taken at the end of the last fully drained sync."""
        return f"{S3Paths.SNAPSHOT_PREFIX}/partition={partition_id}/latest.parquet"

    # =========================================================================
    # PROGRESS
    # =========================================================================

    @staticmethod
    def checkpoint(job: str, partition_id: str) -> str:
        return f"{S3Paths.PROGRESS_PREFIX}/{job}-{partition_id}.json"

    @staticmethod
    def lock(name: str) -> str:
        return f"{S3Paths.PROGRESS_PREFIX}/{name}-lock.json"

    @staticmethod
    def rebuild_sequence() -> str:
        """Which partition the sequential rebuild chain is working on."""
        return f"{S3Paths.PROGRESS_PREFIX}/rebuild-sequence.json"

    # =========================================================================
    # LOGS
    # =========================================================================

    @staticmethod
    def daily_log(day: Union[date, str]) -> str:
        if isinstance(day, date):
            day = day.isoformat()
        return f"{S3Paths.DAILY_LOG_PREFIX}/{day}.json"


# Scope keys used in DynamoDB partition keys

def state_scope_key(state: str) -> str:
    return f"STATE#{state}"


def city_scope_key(city_slug: str, state: str) -> str:
    return f"CITY#{city_slug}-{state}"
