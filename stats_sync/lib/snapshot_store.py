"""Parquet snapshots of the last fully synced aggregates, one per partition."""

import logging
from io import BytesIO

import pandas as pd

from stats_sync.lib import s3_utils
from stats_sync.lib.aggregation import conform_aggregate_frame, empty_aggregate_frame
from stats_sync.lib.s3_path_registry import S3Paths

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Reads and wholesale-replaces per-partition aggregate snapshots."""

    def __init__(self, bucket: str, s3_client=None):
        self.bucket = bucket
        self.s3 = s3_client or s3_utils.get_s3_client()

    def load(self, partition_id: str) -> pd.DataFrame:
        """Previous snapshot, or an empty frame if none has been taken yet."""
        key = S3Paths.snapshot(partition_id)
        data = s3_utils.download_bytes_from_s3(self.bucket, key, s3=self.s3)
        if data is None:
            logger.info(f"No snapshot for {partition_id}; treating every record as new")
            return empty_aggregate_frame()

        frame = conform_aggregate_frame(pd.read_parquet(BytesIO(data)))
        logger.info(f"Loaded snapshot for {partition_id}: {len(frame)} records")
        return frame

    def replace(self, partition_id: str, frame: pd.DataFrame) -> str:
        """Overwrite the snapshot in a single PUT.

        Returns:
            S3 key written
        """
        key = S3Paths.snapshot(partition_id)
        buffer = BytesIO()
        conform_aggregate_frame(frame).to_parquet(buffer, engine="pyarrow", index=False)
        s3_utils.upload_bytes_to_s3(
            buffer.getvalue(),
            self.bucket,
            key,
            metadata={"record_count": str(len(frame)), "partition": partition_id},
            s3=self.s3,
        )
        logger.info(f"[OK] Replaced snapshot for {partition_id} ({len(frame)} records)")
        return key
