"""
Tests for environment-driven settings.
"""

import pytest

from stats_sync.lib.config import ALL_STATES, DEFAULT_BRANDS, Settings, load_settings


def test_defaults():
    settings = load_settings({"S3_BUCKET_NAME": "data-bucket"})

    assert settings.bucket == "data-bucket"
    assert settings.table_name == "VentureOS-Entities"
    assert settings.partitions == ALL_STATES
    assert settings.brands == DEFAULT_BRANDS
    assert settings.size_warn_bytes == 350 * 1024
    assert settings.size_max_bytes == 400 * 1024
    assert settings.batch_size == 25
    assert settings.sync_queue_url is None


def test_overrides():
    settings = load_settings({
        "S3_BUCKET_NAME": "data-bucket",
        "PARTITIONS": "tx, RI ,",
        "BATCH_SIZE": "100",
        "TIME_BUDGET_SECONDS": "60.5",
        "SYNC_QUEUE_URL": "https://sqs.us-east-1.amazonaws.com/123/sync",
    })

    assert settings.partitions == ("tx", "RI")
    # Capped at the DynamoDB batch limit
    assert settings.batch_size == 25
    assert settings.time_budget_seconds == 60.5
    assert settings.sync_queue_url.endswith("/sync")


def test_bucket_is_required():
    with pytest.raises(ValueError, match="S3_BUCKET_NAME"):
        load_settings({})


def test_invalid_number():
    with pytest.raises(ValueError, match="LOCK_TTL_SECONDS"):
        load_settings({"S3_BUCKET_NAME": "b", "LOCK_TTL_SECONDS": "soon"})


def test_next_partition():
    settings = Settings(bucket="b", partitions=("AL", "AK", "AZ"))

    assert settings.next_partition("AL") == "AK"
    assert settings.next_partition("AZ") is None
    assert settings.next_partition("XX") is None
