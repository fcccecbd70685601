"""Reads normalized violation rows from the Silver layer."""

import logging
from io import BytesIO
from typing import Iterable, List, Optional

import pandas as pd

from stats_sync.lib import s3_utils
from stats_sync.lib.cache import TTLCache
from stats_sync.lib.s3_path_registry import S3Paths

logger = logging.getLogger(__name__)

SOURCE_COLUMNS = [
    "violation_id",
    "brand",
    "agency",
    "state",
    "city",
    "city_slug",
    "company_slug",
    "company_name",
    "violation_type",
    "fine_amount",
    "event_date",
]


def empty_source_frame() -> pd.DataFrame:
    frame = pd.DataFrame({column: pd.Series(dtype="object") for column in SOURCE_COLUMNS})
    frame["fine_amount"] = frame["fine_amount"].astype("float64")
    return frame


def normalize_rows(df: pd.DataFrame) -> pd.DataFrame:
    """Coerce a raw parquet frame to the source schema.

    Missing columns are added as nulls, fines become floats (null -> 0) and
    event dates become ISO strings so ordering is lexical.
    """
    df = df.copy()
    for column in SOURCE_COLUMNS:
        if column not in df.columns:
            df[column] = None
    df = df[SOURCE_COLUMNS]

    df["fine_amount"] = pd.to_numeric(df["fine_amount"], errors="coerce").fillna(0.0).astype("float64")
    dates = pd.to_datetime(df["event_date"], errors="coerce", utc=True)
    df["event_date"] = dates.dt.strftime("%Y-%m-%dT%H:%M:%SZ").astype("object").where(dates.notna(), None)
    for column in ("violation_id", "brand", "state", "city_slug", "company_slug", "violation_type"):
        df[column] = df[column].astype("object").where(df[column].notna(), None)
    df["violation_type"] = df["violation_type"].fillna("unknown")
    return df


class SourceReader:
    """Lists partitions/children and loads their rows as DataFrames."""

    def __init__(
        self,
        bucket: str,
        s3_client=None,
        cache: Optional[TTLCache] = None,
        brands: Optional[Iterable[str]] = None,
    ):
        self.bucket = bucket
        # Rows of other brands are dropped; None keeps every brand
        self.brands = frozenset(brands) if brands else None
        self.s3 = s3_client or s3_utils.get_s3_client()
        self.cache = cache if cache is not None else TTLCache(ttl_seconds=300)

    def list_children(self, partition_id: str) -> List[str]:
        """City slugs under a state partition, sorted."""
        cache_key = f"children:{partition_id}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return list(cached)

        prefix = S3Paths.source_partition_prefix(partition_id)
        children = []
        for common_prefix in s3_utils.list_common_prefixes(self.bucket, prefix, s3=self.s3):
            segment = common_prefix[len(prefix):].strip("/")
            if segment.startswith("city="):
                children.append(segment[len("city="):])
        children.sort()

        self.cache.set(cache_key, children)
        logger.info(f"Found {len(children)} children in partition {partition_id}")
        return list(children)

    def _read_prefix(self, prefix: str) -> pd.DataFrame:
        frames = []
        for key in s3_utils.iter_keys(self.bucket, prefix, suffix=".parquet", s3=self.s3):
            data = s3_utils.download_bytes_from_s3(self.bucket, key, s3=self.s3)
            if data is None:
                # Deleted between list and get
                continue
            frames.append(pd.read_parquet(BytesIO(data)))

        if not frames:
            return empty_source_frame()
        df = normalize_rows(pd.concat(frames, ignore_index=True))
        if self.brands is not None:
            keep = df["brand"].isin(self.brands)
            if not keep.all():
                logger.info(f"[SKIP] Dropped {int((~keep).sum())} rows of unconfigured brands under {prefix}")
                df = df[keep].reset_index(drop=True)
        return df

    def read_child_rows(self, partition_id: str, child: str) -> pd.DataFrame:
        df = self._read_prefix(S3Paths.source_child_prefix(partition_id, child))
        logger.debug(f"Read {len(df)} rows for {partition_id}/{child}")
        return df

    def read_partition_rows(self, partition_id: str) -> pd.DataFrame:
        df = self._read_prefix(S3Paths.source_partition_prefix(partition_id))
        logger.info(f"Read {len(df)} source rows for partition {partition_id}")
        return df
