"""S3 utility functions for progress documents, manifests and parquet objects."""

import hashlib
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

# Configure boto3 with retries and timeouts optimized for Lambda
BOTO_CONFIG = Config(
    retries={"max_attempts": 3, "mode": "adaptive"},
    read_timeout=300,
    connect_timeout=10,
)

# Initialize S3 client (reused across invocations in Lambda)
s3_client = None

MISSING_KEY_CODES = ("NoSuchKey", "404", "NotFound")
# Returned when a write-if-absent loses to a concurrent writer
PRECONDITION_CODES = ("PreconditionFailed", "412", "ConditionalRequestConflict")


def get_s3_client():
    """Get or create S3 client with optimal configuration.

    Returns:
        boto3 S3 client
    """
    global s3_client
    if s3_client is None:
        s3_client = boto3.client("s3", config=BOTO_CONFIG)
    return s3_client


def is_missing_key(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in MISSING_KEY_CODES


def is_precondition_failed(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in PRECONDITION_CODES


def calculate_sha256_bytes(data: bytes) -> str:
    """Calculate SHA256 hash of bytes.

    Args:
        data: Bytes to hash

    Returns:
        Hex-encoded SHA256 hash
    """
    return hashlib.sha256(data).hexdigest()


def build_s3_uri(bucket: str, s3_key: str) -> str:
    return f"s3://{bucket}/{s3_key}"


def _json_default(value: Any):
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def upload_bytes_to_s3(
    data: bytes,
    bucket: str,
    s3_key: str,
    content_type: str = "application/octet-stream",
    metadata: Optional[Dict[str, str]] = None,
    s3=None,
    if_none_match: bool = False,
) -> Dict[str, Any]:
    """Upload bytes directly to S3.

    Args:
        data: Bytes to upload
        bucket: S3 bucket name
        s3_key: S3 object key
        content_type: Content type
        metadata: Optional metadata dict
        s3: Optional S3 client (defaults to the shared client)
        if_none_match: Only write if the key does not exist yet

    Returns:
        Dict with upload details

    Raises:
        ClientError: If upload fails, or the key exists when if_none_match is set
    """
    upload_metadata = {
        "sha256": calculate_sha256_bytes(data),
        "upload_timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if metadata:
        upload_metadata.update(metadata)

    s3 = s3 or get_s3_client()
    conditions = {"IfNoneMatch": "*"} if if_none_match else {}
    try:
        response = s3.put_object(
            Bucket=bucket,
            Key=s3_key,
            Body=data,
            Metadata=upload_metadata,
            ContentType=content_type,
            **conditions,
        )
        logger.debug(f"Uploaded {len(data)} bytes to s3://{bucket}/{s3_key}")
        return {
            "s3_key": s3_key,
            "bucket": bucket,
            "size_bytes": len(data),
            "etag": response.get("ETag", "").strip('"'),
        }
    except ClientError as e:
        if if_none_match and is_precondition_failed(e):
            logger.debug(f"s3://{bucket}/{s3_key} already exists, conditional write skipped")
        else:
            logger.error(f"Failed to upload bytes to s3://{bucket}/{s3_key}: {e}")
        raise


def download_bytes_from_s3(bucket: str, s3_key: str, s3=None) -> Optional[bytes]:
    """Download S3 object as bytes.

    Returns:
        Object data as bytes, or None if the key does not exist

    Raises:
        ClientError: For any error other than a missing key
    """
    s3 = s3 or get_s3_client()
    try:
        response = s3.get_object(Bucket=bucket, Key=s3_key)
        return response["Body"].read()
    except ClientError as e:
        if is_missing_key(e):
            return None
        logger.error(f"Failed to download s3://{bucket}/{s3_key}: {e}")
        raise


def get_json(bucket: str, s3_key: str, s3=None) -> Optional[Any]:
    """Read and decode a JSON object, or None if it does not exist."""
    data = download_bytes_from_s3(bucket, s3_key, s3=s3)
    if data is None:
        return None
    return json.loads(data.decode("utf-8"))


def put_json(bucket: str, s3_key: str, payload: Any, s3=None, if_none_match: bool = False) -> Dict[str, Any]:
    body = json.dumps(payload, default=_json_default, indent=2).encode("utf-8")
    return upload_bytes_to_s3(
        body, bucket, s3_key, content_type="application/json", s3=s3, if_none_match=if_none_match
    )


def delete_object(bucket: str, s3_key: str, s3=None) -> None:
    s3 = s3 or get_s3_client()
    try:
        s3.delete_object(Bucket=bucket, Key=s3_key)
    except ClientError as e:
        logger.error(f"Failed to delete s3://{bucket}/{s3_key}: {e}")
        raise


def s3_object_exists(bucket: str, s3_key: str, s3=None) -> bool:
    """Check if an S3 object exists.

    Args:
        bucket: S3 bucket name
        s3_key: S3 object key
        s3: Optional S3 client

    Returns:
        True if object exists, False otherwise
    """
    s3 = s3 or get_s3_client()
    try:
        s3.head_object(Bucket=bucket, Key=s3_key)
        return True
    except ClientError as e:
        if is_missing_key(e):
            return False
        raise


def iter_keys(bucket: str, prefix: str, suffix: str = "", s3=None) -> Iterator[str]:
    """Yield every key under a prefix, optionally filtered by suffix."""
    s3 = s3 or get_s3_client()
    paginator = s3.get_paginator("list_objects_v2")
    for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
        for obj in page.get("Contents", []):
            if obj["Key"].endswith(suffix):
                yield obj["Key"]


def list_common_prefixes(bucket: str, prefix: str, s3=None) -> List[str]:
    """List the immediate "sub-directories" under a prefix."""
    s3 = s3 or get_s3_client()
    paginator = s3.get_paginator("list_objects_v2")
    prefixes = []
    for page in paginator.paginate(Bucket=bucket, Prefix=prefix, Delimiter="/"):
        for common in page.get("CommonPrefixes", []):
            prefixes.append(common["Prefix"])
    return prefixes
