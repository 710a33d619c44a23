"""
Deletion snapshots.

A snapshot holds full copies of the primary record and every record that
references it, keyed by collection name. It is captured before any write and
can serve one rollback until it expires.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ..config import CascadeConfig, get_config
from ..exceptions import CascadeError, NotFoundError, SnapshotError
from ..registry import RelationshipRegistry
from ..storage import ID_FIELD, Document, DocumentStore
from .models import DeletionSnapshot

logger = logging.getLogger(__name__)


def new_snapshot_id() -> str:
    return f"snap_{uuid.uuid4().hex}"


class SnapshotManager:
    """Captures, persists and expires deletion snapshots."""

    def __init__(
        self,
        store: DocumentStore,
        registry: RelationshipRegistry,
        config: Optional[CascadeConfig] = None,
        primary_collection: Optional[str] = None,
    ):
        self.store = store
        self.registry = registry
        self.config = config or get_config()
        self.primary_collection = primary_collection or self.config.primary_collection

    @property
    def collection(self) -> str:
        return self.config.snapshot_collection

    async def _collect(self, primary_id: str) -> Dict[str, List[Document]]:
        primary = await self.store.find_one(
            self.primary_collection, {ID_FIELD: primary_id}
        )
        if primary is None:
            raise NotFoundError(self.primary_collection, primary_id)

        captured: Dict[str, List[Document]] = {self.primary_collection: [primary]}
        seen: Dict[str, set] = {self.primary_collection: {primary[ID_FIELD]}}

        for rule in self.registry.rules_for(self.primary_collection):
            collection = rule.referencing_collection
            records = await self.store.find(collection, rule.path.predicate(primary_id))
            known = seen.setdefault(collection, set())
            for record in records:
                # Two rules on one collection can match the same record
                if record[ID_FIELD] in known:
                    continue
                known.add(record[ID_FIELD])
                captured.setdefault(collection, []).append(record)

        return captured

    async def capture(
        self,
        primary_id: str,
        operator_id: str,
        operation_id: Optional[str] = None,
    ) -> DeletionSnapshot:
        """
        Capture and persist a snapshot of everything a deletion would touch.

        Args:
            primary_id: Id of the primary record
            operator_id: Operator requesting the deletion
            operation_id: Execution the snapshot belongs to

        Returns:
            The persisted snapshot

        Raises:
            NotFoundError: The primary record does not exist
            SnapshotError: Reading the records or persisting the snapshot failed
        """
        try:
            captured = await self._collect(primary_id)
        except CascadeError:
            raise
        except Exception as e:
            logger.error(f"Snapshot capture failed for {primary_id}: {e}")
            raise SnapshotError(
                f"Failed to capture snapshot for {primary_id}", entity_id=primary_id
            ) from e

        created_at = datetime.utcnow()
        serialized = DeletionSnapshot.serialize_data(captured)
        snapshot = DeletionSnapshot(
            id=new_snapshot_id(),
            primary_record_id=primary_id,
            primary_collection=self.primary_collection,
            operation_id=operation_id,
            created_at=created_at,
            expires_at=created_at + timedelta(days=self.config.snapshot_retention_days),
            created_by=operator_id,
            captured_data=captured,
            size=len(serialized.encode()),
        )
        snapshot.checksum = snapshot.calculate_checksum(
            self.config.checksum_algorithm.value
        )

        try:
            await self.store.insert(self.collection, snapshot.to_document())
        except Exception as e:
            logger.error(f"Failed to persist snapshot {snapshot.id}: {e}")
            raise SnapshotError(
                f"Failed to persist snapshot for {primary_id}", entity_id=primary_id
            ) from e

        logger.info(
            f"Captured snapshot {snapshot.id} of {snapshot.record_count} records "
            f"for {self.primary_collection}/{primary_id}"
        )
        return snapshot

    async def get(self, snapshot_id: str) -> Optional[DeletionSnapshot]:
        """Fetch a snapshot by id."""
        document = await self.store.find_one(self.collection, {ID_FIELD: snapshot_id})
        if document is None:
            return None
        return DeletionSnapshot.model_validate(document)

    async def list_for_record(self, primary_id: str) -> List[DeletionSnapshot]:
        """Snapshots of one primary record, newest first."""
        documents = await self.store.find(
            self.collection,
            {"primary_record_id": primary_id},
            sort=[("created_at", -1)],
        )
        return [DeletionSnapshot.model_validate(doc) for doc in documents]

    async def list_active(self, now: Optional[datetime] = None) -> List[DeletionSnapshot]:
        """Unused snapshots still inside their retention window, newest first."""
        documents = await self.store.find(
            self.collection,
            {"used": False, "expires_at": {"$gt": now or datetime.utcnow()}},
            sort=[("created_at", -1)],
        )
        return [DeletionSnapshot.model_validate(doc) for doc in documents]

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete snapshots past their retention window.

        Returns:
            Number of snapshots removed
        """
        return await self.store.delete_many(
            self.collection, {"expires_at": {"$lte": now or datetime.utcnow()}}
        )
