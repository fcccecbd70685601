"""Mirrors each manifest's recent lists into DynamoDB."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from stats_sync.lib.aggregate_store import AggregateStore
from stats_sync.lib.dynamo_size import to_dynamo_item
from stats_sync.lib.record_locator import RecordLocator
from stats_sync.lib.recent5_manifest import Manifest, ManifestStore

logger = logging.getLogger(__name__)


def mirror_pk(scope_key: str, brand: str) -> str:
    return f"RECENT#{scope_key}#{brand}"


def mirror_sk(category: str, position: int) -> str:
    return f"{category}#{position:02d}"


@dataclass
class ManifestSyncResult:
    partition_id: str
    manifests_checked: int = 0
    applied: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partition_id": self.partition_id,
            "manifests_checked": self.manifests_checked,
            "applied": self.applied,
            "failed": self.failed,
        }


class ManifestSyncEngine:
    """Replaces stale recent-record mirrors with the manifest's current lists."""

    def __init__(self, manifests: ManifestStore, locator: RecordLocator, store: AggregateStore):
        self.manifests = manifests
        self.locator = locator
        self.store = store

    def update_manifests(self, partition_id: str) -> ManifestSyncResult:
        """Reconcile the state manifest and every city manifest of a partition."""
        result = ManifestSyncResult(partition_id=partition_id)
        scopes: List[Optional[str]] = [None] + self.manifests.list_city_scopes(partition_id)
        for city_slug in scopes:
            manifest = self.manifests.load(partition_id, city_slug)
            result.manifests_checked += 1
            applied, failed = self.apply(manifest)
            result.applied += applied
            result.failed += failed

        logger.info(
            f"[OK] Manifests for {partition_id}: checked {result.manifests_checked}, "
            f"applied {result.applied}, failed {result.failed}"
        )
        return result

    def apply(self, manifest: Manifest):
        """Apply every pending (brand, category) of one manifest.

        Returns:
            Tuple of (applied, failed) counts
        """
        pending = manifest.pending()
        if not pending:
            return 0, 0

        applied = 0
        failed = 0
        for brand, category in pending:
            if self._replace_mirror(manifest, brand, category):
                applied += 1
            else:
                failed += 1

        self.manifests.save(manifest)
        return applied, failed

    def _replace_mirror(self, manifest: Manifest, brand: str, category: str) -> bool:
        pk = mirror_pk(manifest.scope_key, brand)

        stale = self.store.query_by_prefix(pk, f"{category}#")
        if stale:
            deleted = self.store.batch_delete(stale)
            if deleted.failed:
                logger.error(
                    f"Could not clear mirror {pk} {category}: {deleted.failed} deletes failed"
                )
                return False

        items = []
        written_ids = []
        for entry in manifest.recent.get(brand, {}).get(category, []):
            record = self.locator.find(entry)
            if record is None:
                continue
            position = len(written_ids)
            items.append(to_dynamo_item({
                **record,
                "PK": pk,
                "SK": mirror_sk(category, position),
                "record_type": "recent",
                "scope": manifest.scope_key,
                "brand": brand,
                "category": category,
                "position": position,
                "violation_id": entry["violation_id"],
            }))
            written_ids.append(entry["violation_id"])

        written = self.store.batch_upsert(items)
        if written.failed:
            failed_sks = {key["SK"] for key in written.failed_keys}
            written_ids = [
                vid for position, vid in enumerate(written_ids)
                if mirror_sk(category, position) not in failed_sks
            ]
            logger.error(f"Mirror {pk} {category}: {written.failed} writes failed")

        manifest.set_mirrored(brand, category, written_ids)
        logger.info(f"Mirrored {pk} {category}: {written_ids}")
        return not written.failed
