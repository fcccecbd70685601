"""
Tests for recent-N merging and manifest persistence.
"""

import pandas as pd

from conftest import TEST_BUCKET, make_rows, upload_json_to_s3
from stats_sync.lib.recent5_manifest import Manifest, ManifestStore, merge_recent, recent_from_rows
from stats_sync.lib.source_reader import normalize_rows


def _entry(violation_id, event_date):
    return {"violation_id": violation_id, "event_date": event_date, "state": "TX", "city_slug": "austin"}


class TestMergeRecent:
    def test_newest_first_and_capped(self):
        existing = [_entry(str(i), f"2024-01-0{i}") for i in range(1, 6)]
        incoming = [_entry("6", "2024-02-01")]

        merged = merge_recent(existing, incoming, limit=5)

        assert [e["violation_id"] for e in merged] == ["6", "5", "4", "3", "2"]

    def test_duplicates_collapse(self):
        merged = merge_recent([_entry("1", "2024-01-01")], [_entry("1", "2024-01-01")])
        assert len(merged) == 1

    def test_equal_dates_order_by_id(self):
        merged = merge_recent([], [_entry("b", "2024-01-01"), _entry("a", "2024-01-01")])
        assert [e["violation_id"] for e in merged] == ["a", "b"]

    def test_entries_without_id_are_ignored(self):
        assert merge_recent([], [{"event_date": "2024-01-01"}]) == []


def test_recent_from_rows_groups_by_brand_and_category():
    rows = normalize_rows(pd.DataFrame(
        make_rows("TX", "austin", 7)
        + make_rows("TX", "austin", 2, brand="TransportTrail", violation_type="hours", start=100)
    ))

    recent = recent_from_rows(rows, limit=5)

    assert sorted(recent) == ["OSHAtrail", "TransportTrail"]
    serious = recent["OSHAtrail"]["serious"]
    assert [e["violation_id"] for e in serious] == [f"austin-{i:04d}" for i in (6, 5, 4, 3, 2)]
    assert serious[0]["city_slug"] == "austin"
    assert len(recent["TransportTrail"]["hours"]) == 2


class TestManifest:
    def test_pending_lists_categories_out_of_sync(self):
        manifest = Manifest.empty("TX", "austin")
        manifest.set_recent("OSHAtrail", "serious", [_entry("1", "2024-01-01")])
        manifest.set_recent("OSHAtrail", "other", [_entry("2", "2024-01-02")])
        manifest.set_mirrored("OSHAtrail", "other", ["2"])

        assert manifest.pending() == [("OSHAtrail", "serious")]
        assert manifest.scope_key == "CITY#austin-TX"

    def test_state_scope_key(self):
        assert Manifest.empty("TX").scope_key == "STATE#TX"

    def test_legacy_layout_is_read(self):
        manifest = Manifest.from_dict(
            {
                "recent5": {"OSHAtrail": {"serious": ["9", "8"]}},
                "inDynamo": {"OSHAtrail": {"serious": ["9"]}},
                "lastUpdated": "2024-01-01T00:00:00+00:00",
            },
            "TX",
            "austin",
        )

        assert manifest.recent_ids("OSHAtrail", "serious") == ["9", "8"]
        assert manifest.mirrored_ids("OSHAtrail", "serious") == ["9"]
        assert manifest.brands == ["OSHAtrail"]
        assert manifest.last_updated == "2024-01-01T00:00:00+00:00"


class TestManifestStore:
    def test_missing_manifest_is_empty(self, s3_client):
        store = ManifestStore(TEST_BUCKET, s3_client=s3_client)
        manifest = store.load("TX", "austin")

        assert manifest.recent == {}
        assert manifest.s3_key == "National/USA/TX/austin/manifest.json"

    def test_save_and_load(self, s3_client, fake_clock):
        store = ManifestStore(TEST_BUCKET, s3_client=s3_client, now=fake_clock)
        manifest = Manifest.empty("TX")
        manifest.set_recent("OSHAtrail", "serious", [_entry("1", "2024-01-01")])
        store.save(manifest)

        loaded = store.load("TX")
        assert loaded.recent_ids("OSHAtrail", "serious") == ["1"]
        assert loaded.last_updated is not None

    def test_list_city_scopes(self, s3_client):
        upload_json_to_s3(s3_client, TEST_BUCKET, "National/USA/TX/manifest.json", {})
        upload_json_to_s3(s3_client, TEST_BUCKET, "National/USA/TX/austin/manifest.json", {})
        upload_json_to_s3(s3_client, TEST_BUCKET, "National/USA/TX/houston/2024/1.json", {})

        store = ManifestStore(TEST_BUCKET, s3_client=s3_client)

        assert store.list_city_scopes("TX") == ["austin", "houston"]
