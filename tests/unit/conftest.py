"""
Shared pytest fixtures for the stats sync tests.
"""

from dataclasses import replace
from io import BytesIO
import json
from unittest.mock import MagicMock

import boto3
import pandas as pd
import pytest
from moto import mock_aws

from stats_sync.lib.config import Settings
from stats_sync.lib.s3_path_registry import S3Paths

TEST_BUCKET = "test-bucket"
TEST_TABLE = "VentureOS-Entities-test"


class FakeClock:
    """Manually advanced clock for budgets, caches and locks."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mock AWS credentials for moto."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')
    monkeypatch.setenv('S3_BUCKET_NAME', TEST_BUCKET)


@pytest.fixture
def aws(aws_credentials):
    """One moto context shared by every client of a test."""
    with mock_aws():
        yield


@pytest.fixture
def s3_client(aws):
    """Create mock S3 client with the data bucket."""
    s3 = boto3.client('s3', region_name='us-east-1')
    s3.create_bucket(Bucket=TEST_BUCKET)
    return s3


@pytest.fixture
def dynamodb(aws):
    """Mock DynamoDB resource with the PK/SK entity table."""
    resource = boto3.resource('dynamodb', region_name='us-east-1')
    resource.create_table(
        TableName=TEST_TABLE,
        KeySchema=[
            {'AttributeName': 'PK', 'KeyType': 'HASH'},
            {'AttributeName': 'SK', 'KeyType': 'RANGE'},
        ],
        AttributeDefinitions=[
            {'AttributeName': 'PK', 'AttributeType': 'S'},
            {'AttributeName': 'SK', 'AttributeType': 'S'},
        ],
        BillingMode='PAY_PER_REQUEST',
    )
    return resource


@pytest.fixture
def sqs_client(aws):
    return boto3.client('sqs', region_name='us-east-1')


@pytest.fixture
def sync_queue_url(sqs_client):
    return sqs_client.create_queue(QueueName='stats-daily-sync')['QueueUrl']


@pytest.fixture
def rebuild_queue_url(sqs_client):
    return sqs_client.create_queue(QueueName='stats-rebuild')['QueueUrl']


@pytest.fixture
def settings():
    """Settings for two partitions with instant chain polling."""
    return Settings(
        bucket=TEST_BUCKET,
        table_name=TEST_TABLE,
        partitions=("RI", "TX"),
        chain_verify_polls=2,
        chain_poll_interval_seconds=0.0,
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def mock_lambda_context():
    """Mock Lambda context object."""
    context = MagicMock()
    context.function_name = 'test-function'
    context.aws_request_id = 'test-request-id'
    context.get_remaining_time_in_millis.return_value = 300000  # 5 minutes
    return context


def make_rows(
    state,
    city_slug,
    count,
    brand="OSHAtrail",
    company_slug="acme-corp",
    violation_type="serious",
    fine=100.0,
    start=0,
    year=2024,
):
    """Source rows for one city; ids are '<city>-<n>' and dates ascend with n."""
    return [
        {
            'violation_id': f"{city_slug}-{start + i:04d}",
            'brand': brand,
            'agency': 'OSHA' if brand == 'OSHAtrail' else 'FMCSA',
            'state': state,
            'city': city_slug.replace('-', ' ').title(),
            'city_slug': city_slug,
            'company_slug': company_slug,
            'company_name': company_slug.replace('-', ' ').title(),
            'violation_type': violation_type,
            'fine_amount': fine,
            'event_date': f"{year}-{(start + i) // 28 % 12 + 1:02d}-{(start + i) % 28 + 1:02d}",
        }
        for i in range(count)
    ]


def upload_parquet_to_s3(s3_client, bucket, key, df):
    """Helper to upload DataFrame as Parquet to mock S3."""
    buffer = BytesIO()
    df.to_parquet(buffer, engine='pyarrow', index=False)
    s3_client.put_object(Bucket=bucket, Key=key, Body=buffer.getvalue())


def upload_json_to_s3(s3_client, bucket, key, data):
    """Helper to upload JSON to mock S3."""
    s3_client.put_object(Bucket=bucket, Key=key, Body=json.dumps(data))


def write_source_rows(s3_client, state, city_slug, rows, name="part-0000.parquet"):
    upload_parquet_to_s3(
        s3_client, TEST_BUCKET, S3Paths.source_child_file(state, city_slug, name), pd.DataFrame(rows)
    )


def with_settings(settings, **changes):
    return replace(settings, **changes)
