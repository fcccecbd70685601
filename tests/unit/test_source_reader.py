"""
Tests for reading Silver rows and aggregate snapshots.
"""

import pandas as pd

from conftest import TEST_BUCKET, make_rows, upload_parquet_to_s3, write_source_rows
from stats_sync.lib.aggregation import aggregate_rows
from stats_sync.lib.cache import TTLCache
from stats_sync.lib.snapshot_store import SnapshotStore
from stats_sync.lib.source_reader import SOURCE_COLUMNS, SourceReader, normalize_rows


def test_normalize_rows_fills_schema():
    raw = pd.DataFrame([
        {"violation_id": "1", "brand": "OSHAtrail", "fine_amount": None, "event_date": "2024-05-01"},
        {"violation_id": "2", "brand": "OSHAtrail", "fine_amount": "12.5", "event_date": "not a date"},
    ])

    rows = normalize_rows(raw)

    assert list(rows.columns) == SOURCE_COLUMNS
    assert rows["fine_amount"].tolist() == [0.0, 12.5]
    assert rows["event_date"].tolist() == ["2024-05-01T00:00:00Z", None]
    assert rows["violation_type"].tolist() == ["unknown", "unknown"]


class TestSourceReader:
    def test_list_children_sorted_and_cached(self, s3_client):
        for city in ("waco", "austin", "houston"):
            write_source_rows(s3_client, "TX", city, make_rows("TX", city, 1))
        cache = TTLCache()
        reader = SourceReader(TEST_BUCKET, s3_client=s3_client, cache=cache)

        assert reader.list_children("TX") == ["austin", "houston", "waco"]

        write_source_rows(s3_client, "TX", "dallas", make_rows("TX", "dallas", 1))
        assert reader.list_children("TX") == ["austin", "houston", "waco"]

        cache.invalidate("children:")
        assert reader.list_children("TX")[1] == "dallas"

    def test_reads_every_file_of_a_child(self, s3_client):
        write_source_rows(s3_client, "TX", "austin", make_rows("TX", "austin", 2))
        write_source_rows(s3_client, "TX", "austin", make_rows("TX", "austin", 3, start=2), name="part-0001.parquet")
        write_source_rows(s3_client, "TX", "waco", make_rows("TX", "waco", 4))
        reader = SourceReader(TEST_BUCKET, s3_client=s3_client)

        assert len(reader.read_child_rows("TX", "austin")) == 5
        assert len(reader.read_partition_rows("TX")) == 9
        assert reader.read_partition_rows("RI").empty

    def test_missing_columns_are_tolerated(self, s3_client):
        upload_parquet_to_s3(
            s3_client,
            TEST_BUCKET,
            "silver/violations/state=RI/city=providence/part-0000.parquet",
            pd.DataFrame([{"violation_id": "1", "brand": "OSHAtrail", "city_slug": "providence"}]),
        )

        rows = SourceReader(TEST_BUCKET, s3_client=s3_client).read_child_rows("RI", "providence")

        assert pd.isna(rows.iloc[0]["company_slug"])
        assert rows.iloc[0]["fine_amount"] == 0.0


class TestSnapshotStore:
    def test_missing_snapshot_is_empty(self, s3_client):
        assert SnapshotStore(TEST_BUCKET, s3_client=s3_client).load("TX").empty

    def test_replace_then_load(self, s3_client):
        store = SnapshotStore(TEST_BUCKET, s3_client=s3_client)
        frame = aggregate_rows(normalize_rows(pd.DataFrame(make_rows("TX", "austin", 2))), "TX")

        key = store.replace("TX", frame)

        assert key == "gold/snapshots/partition=TX/latest.parquet"
        loaded = store.load("TX")
        pd.testing.assert_frame_equal(loaded, frame, check_dtype=False)

    def test_unconfigured_brands_are_dropped(self, s3_client):
        write_source_rows(
            s3_client,
            "TX",
            "austin",
            make_rows("TX", "austin", 2) + make_rows("TX", "austin", 3, brand="LegacyTrail", start=10),
        )
        reader = SourceReader(TEST_BUCKET, s3_client=s3_client, brands=("OSHAtrail", "TransportTrail"))

        rows = reader.read_child_rows("TX", "austin")

        assert rows["brand"].tolist() == ["OSHAtrail", "OSHAtrail"]
        assert len(SourceReader(TEST_BUCKET, s3_client=s3_client).read_child_rows("TX", "austin")) == 5
