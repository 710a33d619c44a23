"""
Cascade executor.

Applies every relationship policy of the registry and then removes or
deactivates the primary record, all inside one store transaction.
"""

import logging
from datetime import datetime
from typing import List, Optional

from ..config import CascadeConfig, get_config
from ..exceptions import (
    AlreadyInactiveError,
    ConcurrentModificationError,
    NotFoundError,
    TransactionError,
)
from ..registry import RelationshipRegistry
from ..storage import ID_FIELD, DocumentStore, Update
from .impact import is_active
from .models import (
    DeletionOptions,
    DeletionSnapshot,
    ExecutionResult,
    OperationKind,
    RollbackOptions,
    generate_operation_id,
)
from .policies import PolicyOutcome, apply_policy, resolve_action
from .rollback import RollbackEngine
from .snapshots import SnapshotManager

logger = logging.getLogger(__name__)

DEFAULT_DEACTIVATION_REASON = "Cascade deletion"


class CascadeExecutor:
    """
    Executes a cascade deletion as one atomic unit.

    The primary record's active state is checked again inside the unit, so
    two concurrent executions against one id resolve to one success and one
    ``AlreadyInactiveError``.
    """

    def __init__(
        self,
        store: DocumentStore,
        registry: RelationshipRegistry,
        snapshots: Optional[SnapshotManager] = None,
        rollback_engine: Optional[RollbackEngine] = None,
        config: Optional[CascadeConfig] = None,
        primary_collection: Optional[str] = None,
    ):
        """
        Initialize the executor.

        Args:
            store: Document store to mutate
            registry: Relationship registry
            snapshots: Snapshot manager (created when None)
            rollback_engine: Engine used for emergency rollback
            config: Toolkit configuration (global configuration if None)
            primary_collection: Primary collection (configured default if None)
        """
        self.store = store
        self.registry = registry
        self.config = config or get_config()
        self.primary_collection = primary_collection or self.config.primary_collection
        self.snapshots = snapshots or SnapshotManager(
            store, registry, self.config, self.primary_collection
        )
        self.rollback_engine = rollback_engine

    async def _projected(
        self, primary_id: str, options: DeletionOptions, result: ExecutionResult
    ) -> ExecutionResult:
        for rule in self.registry.rules_for(self.primary_collection):
            collection = rule.referencing_collection
            count = await self.store.count_documents(
                collection, rule.path.predicate(primary_id)
            )
            result.record(
                resolve_action(rule, options.should_preserve(collection)),
                collection,
                count,
            )
        result.completed_at = datetime.utcnow()
        return result

    async def _lost_race(self, primary_id: str) -> bool:
        current = await self.store.find_one(
            self.primary_collection, {ID_FIELD: primary_id}
        )
        return current is None or not is_active(current)

    async def _emergency_rollback(
        self, snapshot: DeletionSnapshot, primary_id: str, operator_id: str
    ) -> None:
        """Best-effort restore after an aborted unit. Failures are only logged."""
        try:
            if self.rollback_engine is None:
                logger.warning(
                    f"Emergency rollback requested for {primary_id} "
                    f"but no rollback engine is configured"
                )
                return
            current = await self.store.find_one(
                self.primary_collection, {ID_FIELD: primary_id}
            )
            if current is not None and is_active(current):
                # Nothing was committed; keep the snapshot unused
                return
            await self.rollback_engine.rollback(
                snapshot.id, RollbackOptions(), operator_id=operator_id
            )
            logger.warning(f"Emergency rollback restored snapshot {snapshot.id}")
        except Exception as e:
            logger.error(f"Emergency rollback of snapshot {snapshot.id} failed: {e}")

    async def execute(
        self,
        primary_id: str,
        options: Optional[DeletionOptions] = None,
        operator_id: str = "system",
        operation_id: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Delete a primary record and apply every relationship policy.

        Args:
            primary_id: Id of the primary record
            options: Deletion options
            operator_id: Operator running the deletion
            operation_id: Operation id to report (generated when unset)

        Returns:
            Execution result with per-collection counts

        Raises:
            NotFoundError: The primary record does not exist
            AlreadyInactiveError: The primary record is already inactive
            SnapshotError: The snapshot could not be captured
            TransactionError: The atomic unit was aborted, nothing committed
        """
        options = options or DeletionOptions()
        operation_id = operation_id or generate_operation_id(OperationKind.EXECUTE)
        result = ExecutionResult(
            operation_id=operation_id,
            primary_id=primary_id,
            primary_collection=self.primary_collection,
            primary_action="deleted" if options.hard_delete else "deactivated",
            dry_run=options.dry_run,
        )

        primary = await self.store.find_one(
            self.primary_collection, {ID_FIELD: primary_id}
        )
        if primary is None:
            raise NotFoundError(self.primary_collection, primary_id)
        if not is_active(primary):
            raise AlreadyInactiveError(primary_id)

        if options.dry_run:
            return await self._projected(primary_id, options, result)

        snapshot: Optional[DeletionSnapshot] = None
        if options.create_snapshot:
            snapshot = await self.snapshots.capture(primary_id, operator_id, operation_id)
            result.snapshot_id = snapshot.id

        rules = self.registry.rules_for(self.primary_collection)
        outcomes: List[PolicyOutcome] = []
        try:
            async with self.store.transaction() as tx:
                current = await tx.find_for_update(self.primary_collection, primary_id)
                if current is None or not is_active(current):
                    raise AlreadyInactiveError(primary_id)

                for rule in rules:
                    outcome = await apply_policy(
                        tx,
                        rule,
                        primary_id,
                        options.should_preserve(rule.referencing_collection),
                        operator_id,
                    )
                    outcomes.append(outcome)

                if options.hard_delete:
                    await tx.delete_many(self.primary_collection, {ID_FIELD: primary_id})
                else:
                    await tx.update_many(
                        self.primary_collection,
                        {ID_FIELD: primary_id},
                        Update(
                            set={
                                "is_active": False,
                                "deactivated_at": datetime.utcnow(),
                                "deactivated_by": operator_id,
                                "deactivation_reason": options.reason
                                or DEFAULT_DEACTIVATION_REASON,
                            }
                        ),
                    )
        except AlreadyInactiveError:
            logger.warning(
                f"Deletion of {primary_id} lost to a concurrent execution"
            )
            raise
        except Exception as e:
            if isinstance(e, ConcurrentModificationError) and await self._lost_race(
                primary_id
            ):
                logger.warning(
                    f"Deletion of {primary_id} lost to an execution in another session"
                )
                raise AlreadyInactiveError(primary_id) from e
            logger.error(f"Cascade deletion of {primary_id} aborted: {e}")
            emergency = options.emergency_rollback
            if emergency is None:
                emergency = self.config.emergency_rollback_enabled
            if emergency and snapshot is not None:
                await self._emergency_rollback(snapshot, primary_id, operator_id)
            raise TransactionError(
                f"Deletion of {primary_id} was aborted; no changes were committed",
                entity_id=primary_id,
                snapshot_id=snapshot.id if snapshot else None,
            ) from e

        for outcome in outcomes:
            result.record(outcome.action, outcome.collection, outcome.count)
        result.completed_at = datetime.utcnow()
        return result
