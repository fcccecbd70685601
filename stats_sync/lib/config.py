"""Environment-driven settings for the stats sync Lambdas."""

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

# 50 states + DC + territories, in the order the sequential rebuild walks them
ALL_STATES: Tuple[str, ...] = (
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA",
    "HI", "ID", "IL", "IN", "IA", "KS", "KY", "LA", "ME", "MD",
    "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH", "NJ",
    "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC",
    "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY",
    "DC", "PR", "VI", "GU", "AS", "MP",
)

DEFAULT_BRANDS: Tuple[str, ...] = ("OSHAtrail", "TransportTrail")

# DynamoDB accepts at most 25 requests per BatchWriteItem
DYNAMO_BATCH_LIMIT = 25


@dataclass(frozen=True)
class Settings:
    bucket: str
    table_name: str = "VentureOS-Entities"
    sync_queue_url: Optional[str] = None
    rebuild_queue_url: Optional[str] = None
    region: str = "us-east-1"
    partitions: Tuple[str, ...] = ALL_STATES
    brands: Tuple[str, ...] = DEFAULT_BRANDS
    rollup_sentinel: str = "USA"
    time_budget_seconds: float = 885.0
    time_reserve_seconds: float = 15.0
    size_warn_bytes: int = 350 * 1024
    size_max_bytes: int = 400 * 1024
    item_ceiling_bytes: int = 400 * 1024
    batch_size: int = DYNAMO_BATCH_LIMIT
    batch_max_attempts: int = 3
    recent_limit: int = 5
    lock_ttl_seconds: int = 20 * 60
    chain_max_attempts: int = 3
    chain_verify_polls: int = 10
    chain_poll_interval_seconds: float = 1.0
    chain_lock_freshness_seconds: int = 30
    cache_ttl_seconds: int = 300

    def next_partition(self, partition_id: str) -> Optional[str]:
        """Partition after ``partition_id`` in declared order, or None at the end."""
        try:
            index = self.partitions.index(partition_id)
        except ValueError:
            return None
        if index + 1 >= len(self.partitions):
            return None
        return self.partitions[index + 1]


def _split_list(value: Optional[str], default: Tuple[str, ...]) -> Tuple[str, ...]:
    if not value:
        return default
    items = tuple(item.strip() for item in value.split(",") if item.strip())
    return items or default


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from environment variables.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        Settings instance

    Raises:
        ValueError: If S3_BUCKET_NAME is missing or a numeric value is invalid
    """
    env = os.environ if environ is None else environ

    bucket = env.get("S3_BUCKET_NAME")
    if not bucket:
        raise ValueError("S3_BUCKET_NAME environment variable is required")

    def _int(name: str, default: int) -> int:
        raw = env.get(name)
        if raw in (None, ""):
            return default
        try:
            return int(raw)
        except ValueError:
            raise ValueError(f"{name} must be an integer, got {raw!r}")

    def _float(name: str, default: float) -> float:
        raw = env.get(name)
        if raw in (None, ""):
            return default
        try:
            return float(raw)
        except ValueError:
            raise ValueError(f"{name} must be a number, got {raw!r}")

    return Settings(
        bucket=bucket,
        table_name=env.get("DYNAMODB_TABLE", "VentureOS-Entities"),
        sync_queue_url=env.get("SYNC_QUEUE_URL") or None,
        rebuild_queue_url=env.get("REBUILD_QUEUE_URL") or None,
        region=env.get("AWS_REGION", "us-east-1"),
        partitions=_split_list(env.get("PARTITIONS"), ALL_STATES),
        brands=_split_list(env.get("BRANDS"), DEFAULT_BRANDS),
        rollup_sentinel=env.get("ROLLUP_SENTINEL", "USA"),
        time_budget_seconds=_float("TIME_BUDGET_SECONDS", 885.0),
        time_reserve_seconds=_float("TIME_RESERVE_SECONDS", 15.0),
        size_warn_bytes=_int("SIZE_WARN_BYTES", 350 * 1024),
        size_max_bytes=_int("SIZE_MAX_BYTES", 400 * 1024),
        item_ceiling_bytes=_int("ITEM_CEILING_BYTES", 400 * 1024),
        batch_size=min(_int("BATCH_SIZE", DYNAMO_BATCH_LIMIT), DYNAMO_BATCH_LIMIT),
        batch_max_attempts=_int("BATCH_MAX_ATTEMPTS", 3),
        recent_limit=_int("RECENT_LIMIT", 5),
        lock_ttl_seconds=_int("LOCK_TTL_SECONDS", 20 * 60),
        chain_max_attempts=_int("CHAIN_MAX_ATTEMPTS", 3),
        chain_verify_polls=_int("CHAIN_VERIFY_POLLS", 10),
        chain_poll_interval_seconds=_float("CHAIN_POLL_INTERVAL_SECONDS", 1.0),
        chain_lock_freshness_seconds=_int("CHAIN_LOCK_FRESHNESS_SECONDS", 30),
        cache_ttl_seconds=_int("CACHE_TTL_SECONDS", 300),
    )
