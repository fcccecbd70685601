"""Rolls state aggregates up into the national record."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable

from stats_sync.lib.aggregate_store import AggregateStore
from stats_sync.lib.dynamo_size import from_dynamo_item, to_dynamo_item

logger = logging.getLogger(__name__)


def rollup_national(
    store: AggregateStore,
    partitions: Iterable[str],
    country: str = "USA",
) -> Dict[str, Dict[str, Any]]:
    """Sum the primary state records of every partition per brand.

    Chunk and segment items under the state keys are ignored; only the
    primary stats items carry totals.

    Returns:
        Mapping of brand to the national item written
    """
    totals: Dict[str, Dict[str, Any]] = {}
    for partition_id in partitions:
        for raw in store.query_by_prefix(f"STATE#{partition_id}", "STATS#"):
            item = from_dynamo_item(raw)
            if item.get("record_type") != "stats":
                continue
            brand = item["brand"]
            national = totals.setdefault(brand, {
                "count": 0,
                "total_fines": 0.0,
                "breakdown": {},
                "state_count": 0,
                "child_count": 0,
            })
            national["count"] += int(item.get("count", 0))
            national["total_fines"] += float(item.get("total_fines", 0))
            national["state_count"] += 1
            national["child_count"] += int(item.get("child_count", 0))
            for category, n in (item.get("breakdown") or {}).items():
                national["breakdown"][category] = national["breakdown"].get(category, 0) + int(n)

    updated_at = datetime.now(timezone.utc).isoformat()
    written = {}
    for brand, national in totals.items():
        item = {
            "PK": f"NATION#{country}",
            "SK": f"STATS#{brand}",
            "record_type": "stats",
            "scope": "nation",
            "brand": brand,
            "partition": country,
            "name": country,
            "count": national["count"],
            "total_fines": round(national["total_fines"], 2),
            "breakdown": national["breakdown"],
            "state_count": national["state_count"],
            "child_count": national["child_count"],
            "last_updated": updated_at,
        }
        store.upsert(to_dynamo_item(item))
        written[brand] = item
        logger.info(
            f"[OK] National rollup {brand}: {national['count']} violations "
            f"across {national['state_count']} states"
        )
    return written
