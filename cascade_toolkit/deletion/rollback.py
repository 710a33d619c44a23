"""
Rollback engine restoring the records captured in a deletion snapshot.

Restoration is best-effort per record. The snapshot is claimed with one
conditional update so two rollbacks can never both consume it.
"""

import logging
from datetime import datetime
from typing import Optional

from ..config import CascadeConfig, get_config
from ..exceptions import (
    PartialRestoreError,
    SnapshotAlreadyUsedError,
    SnapshotError,
    SnapshotExpiredError,
    SnapshotNotFoundError,
)
from ..storage import ID_FIELD, Document, DocumentStore, Update
from .models import (
    DeletionSnapshot,
    OperationKind,
    OperationStatus,
    RecordFailure,
    RollbackOptions,
    RollbackResult,
    generate_operation_id,
)
from .snapshots import SnapshotManager

logger = logging.getLogger(__name__)


class RollbackEngine:
    """Restores a snapshot, resolving conflicts against newer records."""

    def __init__(
        self,
        store: DocumentStore,
        snapshots: SnapshotManager,
        config: Optional[CascadeConfig] = None,
    ):
        self.store = store
        self.snapshots = snapshots
        self.config = config or get_config()

    async def load(self, snapshot_id: str, now: Optional[datetime] = None) -> DeletionSnapshot:
        """
        Fetch a snapshot that is still usable for a rollback.

        Raises:
            SnapshotNotFoundError: Unknown snapshot id
            SnapshotExpiredError: Retention window has passed
            SnapshotAlreadyUsedError: A rollback already consumed it
            SnapshotError: Captured data fails its integrity check
        """
        snapshot = await self.snapshots.get(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFoundError(snapshot_id)
        if snapshot.is_expired(now):
            raise SnapshotExpiredError(snapshot_id, snapshot.expires_at)
        if snapshot.used:
            raise SnapshotAlreadyUsedError(snapshot_id)
        if not snapshot.verify_checksum(self.config.checksum_algorithm.value):
            logger.error(f"Checksum mismatch for snapshot {snapshot_id}")
            raise SnapshotError(
                f"Snapshot {snapshot_id} failed its integrity check",
                entity_id=snapshot_id,
            )
        return snapshot

    async def _claim(self, snapshot_id: str, operator_id: str, rollback_id: str) -> None:
        claimed = await self.store.update_many(
            self.snapshots.collection,
            {ID_FIELD: snapshot_id, "used": False},
            Update(
                set={
                    "used": True,
                    "used_at": datetime.utcnow(),
                    "used_by": operator_id,
                    "rollback_id": rollback_id,
                }
            ),
        )
        if claimed == 0:
            raise SnapshotAlreadyUsedError(snapshot_id)

    async def _release(self, snapshot_id: str) -> None:
        await self.store.update_many(
            self.snapshots.collection,
            {ID_FIELD: snapshot_id},
            Update(
                set={"used": False},
                unset=["used_at", "used_by", "rollback_id"],
            ),
        )

    async def _restore_record(
        self, collection: str, record: Document, preserve_new_data: bool
    ) -> bool:
        """Restore one record; False when a newer record was kept instead.

        Each write is a single-document store call. A record removed between
        the lookup and the replace is inserted instead.
        """
        # Match on the stored id value; backends key documents by its string form
        existing = await self.store.find_one(collection, {ID_FIELD: record[ID_FIELD]})
        if existing is None:
            await self.store.insert(collection, record)
            return True
        if preserve_new_data:
            return False
        if not await self.store.replace(collection, str(record[ID_FIELD]), record):
            await self.store.insert(collection, record)
        return True

    async def rollback(
        self,
        snapshot_id: str,
        options: Optional[RollbackOptions] = None,
        operator_id: str = "system",
        rollback_id: Optional[str] = None,
    ) -> RollbackResult:
        """
        Restore every record captured in a snapshot.

        Args:
            snapshot_id: Snapshot to restore
            options: Rollback options
            operator_id: Operator running the rollback
            rollback_id: Operation id to report (generated when unset)

        Returns:
            Rollback result with restored, conflict and failure counts

        Raises:
            SnapshotNotFoundError: Unknown snapshot id
            SnapshotExpiredError: Retention window has passed
            SnapshotAlreadyUsedError: A rollback already consumed it
        """
        options = options or RollbackOptions()
        rollback_id = rollback_id or generate_operation_id(OperationKind.ROLLBACK)

        snapshot = await self.load(snapshot_id)
        await self._claim(snapshot_id, operator_id, rollback_id)

        result = RollbackResult(
            operation_id=rollback_id,
            snapshot_id=snapshot_id,
            primary_id=snapshot.primary_record_id,
        )

        for collection, records in snapshot.captured_data.items():
            for record in records:
                try:
                    restored = await self._restore_record(
                        collection, record, options.preserve_new_data
                    )
                except Exception as e:
                    logger.error(
                        f"Failed to restore {collection}/{record.get(ID_FIELD)} "
                        f"from snapshot {snapshot_id}: {e}"
                    )
                    result.failures.append(
                        RecordFailure(
                            collection=collection,
                            record_id=(
                                str(record[ID_FIELD]) if ID_FIELD in record else None
                            ),
                            error=str(e),
                        )
                    )
                    continue

                bucket = result.restored_records if restored else result.conflicts
                bucket[collection] = bucket.get(collection, 0) + 1
                if restored:
                    result.add_count(collection, 1)

        if result.failures and result.total_restored == 0:
            logger.warning(
                f"Nothing restored from snapshot {snapshot_id}; releasing it for retry"
            )
            await self._release(snapshot_id)

        if result.failures or result.conflicts:
            partial = PartialRestoreError(
                snapshot_id, result.total_conflicts, len(result.failures)
            )
            result.status = OperationStatus.PARTIAL
            result.warnings.append(str(partial))

        result.completed_at = datetime.utcnow()
        return result
