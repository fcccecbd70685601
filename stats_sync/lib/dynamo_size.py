"""
DynamoDB item size helpers.

DynamoDB rejects items above 400KB. Aggregates that carry an open-ended map
(companies per state, child directories) are measured here and, when needed,
split across a primary item plus overflow chunk items sharing the same PK.
"""

import json
import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

# Stand-in for chunk counters while reserving metadata space
_COUNTER_PLACEHOLDER = 999999


@dataclass
class ChunkedItem:
    item: Dict[str, Any]
    is_overflow_chunk: bool
    chunk_index: int
    total_chunks: int


@dataclass
class SizeCheck:
    size_bytes: int
    warn: bool
    exceeded: bool


def estimate_item_size(item: Dict[str, Any]) -> int:
    """Estimate the stored size of an item as its UTF-8 JSON length.

    Args:
        item: Item dict (plain values or Decimal)

    Returns:
        Size in bytes
    """
    encoded = json.dumps(item, default=str, ensure_ascii=False, separators=(",", ":"))
    return len(encoded.encode("utf-8"))


def _entry_size(key: str, value: Any) -> int:
    # '"key":value' plus the separating comma
    return estimate_item_size({key: value}) - 2 + 1


def _significance(entry: Tuple[str, Any]):
    key, value = entry
    if isinstance(value, dict):
        weight = value.get("count") or 0
    elif isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        weight = value
    else:
        weight = 0
    return (-weight, key)


def split_for_ceiling(
    large_field: Dict[str, Any],
    base_item: Dict[str, Any],
    field_name: str,
    ceiling: int,
    chunk_suffix: str = "#CHUNK",
    sort_key: Optional[Callable[[Tuple[str, Any]], Any]] = None,
) -> List[ChunkedItem]:
    """Split a map field so that every resulting item stays under ``ceiling``.

    Entries are ordered by significance (largest count first unless
    ``sort_key`` says otherwise). The primary item keeps as many leading
    entries as fit; the rest spill into chunk items keyed
    ``<SK><chunk_suffix>#<n>``.

    Args:
        large_field: Map to distribute
        base_item: Item without the map (must contain PK and SK)
        field_name: Attribute name of the map
        ceiling: Maximum estimated size per item in bytes
        chunk_suffix: Sort-key suffix of overflow chunks
        sort_key: Optional key function over (key, value) pairs

    Returns:
        Primary item first, then overflow chunks in index order

    Raises:
        ValueError: If one entry cannot fit in an otherwise empty chunk, or the
            base item alone is over the ceiling
    """
    base_size = estimate_item_size({**base_item, field_name: {}})
    if base_size > ceiling:
        raise ValueError(
            f"Base item {base_item['PK']}/{base_item['SK']} is {base_size} bytes "
            f"without {field_name} and cannot fit under {ceiling} bytes"
        )
    entries = sorted((large_field or {}).items(), key=sort_key or _significance)
    whole = {**base_item, field_name: dict(entries)}
    if not entries or estimate_item_size(whole) <= ceiling:
        return [ChunkedItem(whole, False, 0, 0)]

    record_type = base_item.get("record_type", "stats")
    primary_skeleton = {
        **base_item,
        field_name: {},
        f"{field_name}_chunked": True,
        f"{field_name}_total_chunks": _COUNTER_PLACEHOLDER,
        f"{field_name}_total_entries": len(entries),
    }
    chunk_skeleton = {
        "PK": base_item["PK"],
        "SK": f"{base_item['SK']}{chunk_suffix}#{_COUNTER_PLACEHOLDER}",
        "record_type": f"{record_type}_chunk",
        "chunk_index": _COUNTER_PLACEHOLDER,
        "total_chunks": _COUNTER_PLACEHOLDER,
        field_name: {},
    }
    primary_budget = ceiling - estimate_item_size(primary_skeleton)
    if primary_budget < 0:
        raise ValueError(
            f"Base item {base_item['PK']}/{base_item['SK']} leaves no room for chunk "
            f"metadata under {ceiling} bytes"
        )
    chunk_budget = ceiling - estimate_item_size(chunk_skeleton)

    primary_entries = []
    used = 0
    position = 0
    while position < len(entries):
        size = _entry_size(*entries[position])
        if used + size > primary_budget:
            break
        primary_entries.append(entries[position])
        used += size
        position += 1

    chunks: List[List[Tuple[str, Any]]] = []
    current: List[Tuple[str, Any]] = []
    used = 0
    for key, value in entries[position:]:
        size = _entry_size(key, value)
        if size > chunk_budget:
            raise ValueError(
                f"Entry {key!r} of {field_name} is {size} bytes and cannot fit under {ceiling} bytes"
            )
        if current and used + size > chunk_budget:
            chunks.append(current)
            current = []
            used = 0
        current.append((key, value))
        used += size
    if current:
        chunks.append(current)

    total_chunks = len(chunks)
    primary = {
        **base_item,
        field_name: dict(primary_entries),
        f"{field_name}_chunked": True,
        f"{field_name}_total_chunks": total_chunks,
        f"{field_name}_total_entries": len(entries),
    }
    result = [ChunkedItem(primary, False, 0, total_chunks)]
    for index, chunk in enumerate(chunks, start=1):
        result.append(ChunkedItem(
            item={
                "PK": base_item["PK"],
                "SK": f"{base_item['SK']}{chunk_suffix}#{index}",
                "record_type": f"{record_type}_chunk",
                "chunk_index": index,
                "total_chunks": total_chunks,
                field_name: dict(chunk),
            },
            is_overflow_chunk=True,
            chunk_index=index,
            total_chunks=total_chunks,
        ))
    return result


def reassemble_field(items: List[Dict[str, Any]], field_name: str) -> Dict[str, Any]:
    """Rebuild a split map from its primary item and overflow chunks."""
    merged: Dict[str, Any] = {}
    for item in sorted(items, key=lambda i: int(i.get("chunk_index", 0))):
        merged.update(item.get(field_name) or {})
    return merged


def check_size_limit(item: Dict[str, Any], warn_bytes: int, max_bytes: int) -> SizeCheck:
    size = estimate_item_size(item)
    return SizeCheck(size_bytes=size, warn=size >= warn_bytes, exceeded=size >= max_bytes)


def to_dynamo_item(record: Any) -> Any:
    """Convert a plain record into DynamoDB-compatible values.

    Floats become Decimal, None and NaN attributes are dropped, numpy
    scalars are unwrapped and timestamps are ISO formatted.
    """
    if isinstance(record, dict):
        converted = {}
        for key, value in record.items():
            value = to_dynamo_item(value)
            if value is None:
                continue
            converted[key] = value
        return converted
    if isinstance(record, (list, tuple)):
        return [to_dynamo_item(v) for v in record]
    if isinstance(record, bool) or record is None:
        return record
    if isinstance(record, (datetime, date)):
        return record.isoformat()
    if isinstance(record, np.generic):
        record = record.item()
    if isinstance(record, float):
        if math.isnan(record) or math.isinf(record):
            return None
        return Decimal(str(record))
    return record


def from_dynamo_item(item: Any) -> Any:
    """Inverse of to_dynamo_item for reading: Decimal to int or float."""
    if isinstance(item, dict):
        return {k: from_dynamo_item(v) for k, v in item.items()}
    if isinstance(item, list):
        return [from_dynamo_item(v) for v in item]
    if isinstance(item, Decimal):
        return int(item) if item == item.to_integral_value() else float(item)
    return item
