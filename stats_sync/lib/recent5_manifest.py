"""
Recent-N manifests.

Each state and city scope has a manifest in S3 listing, per brand and
violation category, the most recent violations (``recent``) and the ids
currently mirrored into DynamoDB (``mirrored``). The manifest sync engine
reconciles the two.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from stats_sync.lib import s3_utils
from stats_sync.lib.s3_path_registry import S3Paths, city_scope_key, state_scope_key

logger = logging.getLogger(__name__)

RECENT_LIMIT = 5

Entry = Dict[str, Any]


def merge_recent(existing: Iterable[Entry], incoming: Iterable[Entry], limit: int = RECENT_LIMIT) -> List[Entry]:
    """Merge two recent lists into one capped, de-duplicated list.

    Ordered by event date descending; equal dates fall back to violation id
    ascending so the result is deterministic.
    """
    by_id: Dict[str, Entry] = {}
    for entry in list(existing) + list(incoming):
        violation_id = entry.get("violation_id")
        if not violation_id:
            continue
        current = by_id.get(violation_id)
        if current is None or (entry.get("event_date") or "") > (current.get("event_date") or ""):
            by_id[violation_id] = entry

    ordered = sorted(by_id.values(), key=lambda e: e["violation_id"])
    ordered.sort(key=lambda e: e.get("event_date") or "", reverse=True)
    return ordered[:limit]


def recent_from_rows(rows: pd.DataFrame, limit: int = RECENT_LIMIT) -> Dict[str, Dict[str, List[Entry]]]:
    """Most recent violations per (brand, category) from source rows."""
    result: Dict[str, Dict[str, List[Entry]]] = {}
    if rows is None or rows.empty:
        return result

    valid = rows[rows["brand"].notna() & rows["violation_id"].notna()]
    for (brand, category), group in valid.groupby(["brand", "violation_type"], sort=True):
        entries = [
            {
                "violation_id": str(row["violation_id"]),
                "event_date": row["event_date"],
                "state": row["state"],
                "city_slug": row["city_slug"],
            }
            for row in group.to_dict("records")
        ]
        result.setdefault(brand, {})[category] = merge_recent([], entries, limit)
    return result


@dataclass
class Manifest:
    """Recent-N lists of one scope plus what is mirrored downstream."""

    scope_key: str
    state: str
    city_slug: Optional[str] = None
    recent: Dict[str, Dict[str, List[Entry]]] = field(default_factory=dict)
    mirrored: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)
    brands: List[str] = field(default_factory=list)
    last_updated: Optional[str] = None

    @classmethod
    def empty(cls, state: str, city_slug: Optional[str] = None) -> "Manifest":
        scope_key = city_scope_key(city_slug, state) if city_slug else state_scope_key(state)
        return cls(scope_key=scope_key, state=state, city_slug=city_slug)

    @property
    def s3_key(self) -> str:
        return S3Paths.manifest(self.state, self.city_slug)

    def recent_ids(self, brand: str, category: str) -> List[str]:
        return [e["violation_id"] for e in self.recent.get(brand, {}).get(category, [])]

    def mirrored_ids(self, brand: str, category: str) -> List[str]:
        return list(self.mirrored.get(brand, {}).get(category, []))

    def set_recent(self, brand: str, category: str, entries: List[Entry]) -> None:
        self.recent.setdefault(brand, {})[category] = list(entries)
        if brand not in self.brands:
            self.brands.append(brand)
            self.brands.sort()

    def set_mirrored(self, brand: str, category: str, ids: List[str]) -> None:
        self.mirrored.setdefault(brand, {})[category] = list(ids)

    def pending(self) -> List[Tuple[str, str]]:
        """(brand, category) pairs whose mirror differs from the recent list."""
        pairs = set()
        for source in (self.recent, self.mirrored):
            for brand, categories in source.items():
                for category in categories:
                    pairs.add((brand, category))
        return sorted(
            (brand, category) for brand, category in pairs
            if self.recent_ids(brand, category) != self.mirrored_ids(brand, category)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope_key": self.scope_key,
            "state": self.state,
            "city_slug": self.city_slug,
            "recent": self.recent,
            "mirrored": self.mirrored,
            "brands": self.brands,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], state: str, city_slug: Optional[str] = None) -> "Manifest":
        manifest = cls.empty(state, city_slug)
        recent = data.get("recent")
        if recent is None and "recent5" in data:
            # Older manifests stored bare id lists under recent5/inDynamo
            recent = {
                brand: {
                    category: [{"violation_id": str(i), "state": state, "city_slug": city_slug} for i in ids]
                    for category, ids in categories.items()
                }
                for brand, categories in data["recent5"].items()
            }
        manifest.recent = recent or {}
        manifest.mirrored = data.get("mirrored", data.get("inDynamo")) or {}
        manifest.brands = sorted(set(data.get("brands") or []) | set(manifest.recent))
        manifest.last_updated = data.get("last_updated", data.get("lastUpdated"))
        return manifest


class ManifestStore:
    """Loads and saves manifests in S3."""

    def __init__(self, bucket: str, s3_client=None, now: Callable[[], float] = time.time):
        self.bucket = bucket
        self.s3 = s3_client or s3_utils.get_s3_client()
        self._now = now

    def load(self, state: str, city_slug: Optional[str] = None) -> Manifest:
        data = s3_utils.get_json(self.bucket, S3Paths.manifest(state, city_slug), s3=self.s3)
        if not data:
            return Manifest.empty(state, city_slug)
        return Manifest.from_dict(data, state, city_slug)

    def save(self, manifest: Manifest) -> None:
        manifest.last_updated = datetime.fromtimestamp(self._now(), tz=timezone.utc).isoformat()
        s3_utils.put_json(self.bucket, manifest.s3_key, manifest.to_dict(), s3=self.s3)

    def list_city_scopes(self, state: str) -> List[str]:
        prefix = S3Paths.scope_path(state)
        cities = []
        for common_prefix in s3_utils.list_common_prefixes(self.bucket, prefix, s3=self.s3):
            cities.append(common_prefix[len(prefix):].strip("/"))
        return sorted(c for c in cities if c)
