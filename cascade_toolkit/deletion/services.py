"""
Service layer for cascade deletion.

Provides the caller-facing operations. Every operation is audited and
returns an ``OperationEnvelope`` whose ``code`` drives programmatic handling;
internal diagnostic detail goes to the log only.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel

from ..audit_trail import (
    SYSTEM_OPERATOR,
    AuditLogFilter,
    DeletionAuditLogger,
    OperationKind,
    OperationStatus,
    OperatorInfo,
)
from ..config import CascadeConfig, get_config
from ..exceptions import CascadeError, PartialRestoreError
from ..registry import RelationshipRegistry, build_default_registry
from ..storage import DocumentStore
from .executor import CascadeExecutor
from .impact import ImpactAnalyzer
from .models import (
    BulkDeletionFailure,
    BulkDeletionResult,
    DeletionOptions,
    OperationEnvelope,
    OrphanCleanupOptions,
    RollbackOptions,
    generate_operation_id,
)
from .orphans import OrphanScanner
from .rollback import RollbackEngine
from .snapshots import SnapshotManager

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "INTERNAL_ERROR"
PARTIAL_DELETION = "PARTIAL_DELETION"
BULK_DELETION_FAILED = "BULK_DELETION_FAILED"


def _payload(data: Any) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    return dict(data or {})


class DeletionService:
    """
    Facade over preview, single and bulk execution, orphan cleanup, rollback
    and audit listing.

    Wires every component to one store, one registry and one configuration.
    """

    def __init__(
        self,
        store: DocumentStore,
        registry: Optional[RelationshipRegistry] = None,
        config: Optional[CascadeConfig] = None,
        audit_logger: Optional[DeletionAuditLogger] = None,
        primary_collection: Optional[str] = None,
    ):
        """
        Initialize the deletion service.

        Args:
            store: Document store
            registry: Relationship registry (student registry if None)
            config: Toolkit configuration (global configuration if None)
            audit_logger: Audit logger (created on the same store if None)
            primary_collection: Primary collection (configured default if None)
        """
        self.store = store
        self.config = config or get_config()
        self.registry = registry or build_default_registry()
        self.primary_collection = primary_collection or self.config.primary_collection

        self.analyzer = ImpactAnalyzer(
            store, self.registry, self.config, self.primary_collection
        )
        self.snapshots = SnapshotManager(
            store, self.registry, self.config, self.primary_collection
        )
        self.rollback_engine = RollbackEngine(store, self.snapshots, self.config)
        self.executor = CascadeExecutor(
            store,
            self.registry,
            snapshots=self.snapshots,
            rollback_engine=self.rollback_engine,
            config=self.config,
            primary_collection=self.primary_collection,
        )
        self.orphans = OrphanScanner(store, self.registry)
        self.audit = audit_logger or DeletionAuditLogger(store, self.config)

    def _failure(
        self,
        error: Exception,
        operation_id: Optional[str] = None,
        snapshot_id: Optional[str] = None,
    ) -> OperationEnvelope:
        if isinstance(error, CascadeError):
            code, message = error.code, error.message
        else:
            logger.error(f"Unexpected error in operation {operation_id}: {error}")
            code, message = INTERNAL_ERROR, "An unexpected error occurred"

        details: Dict[str, Any] = {}
        if snapshot_id:
            details["snapshot_id"] = snapshot_id
            details["recovery"] = "The snapshot can be used for manual rollback"

        return OperationEnvelope(
            success=False,
            code=code,
            message=message,
            operation_id=operation_id,
            snapshot_id=snapshot_id,
            details=details,
        )

    async def _record_failure(
        self,
        operation_id: str,
        kind: OperationKind,
        error: Exception,
        operator: OperatorInfo,
        target_entity_id: Optional[str],
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        code = error.code if isinstance(error, CascadeError) else INTERNAL_ERROR
        await self.audit.record(
            operation_id,
            kind,
            {"error": str(error), **(extra or {})},
            operator,
            OperationStatus.FAILED,
            target_entity_id=target_entity_id,
            entity_type=self.primary_collection,
            error_code=code,
        )

    async def preview_deletion(
        self,
        primary_id: str,
        options: Optional[DeletionOptions] = None,
        operator: Optional[OperatorInfo] = None,
    ) -> OperationEnvelope:
        """
        Preview the impact of deleting a primary record.

        Args:
            primary_id: Id of the primary record
            options: Deletion options the execution would use
            operator: Operator requesting the preview

        Returns:
            Envelope carrying an ``ImpactReport``
        """
        operator = operator or SYSTEM_OPERATOR
        operation_id = generate_operation_id(OperationKind.PREVIEW)
        try:
            report = await self.analyzer.preview(primary_id, options, operation_id)
        except Exception as e:
            await self._record_failure(
                operation_id, OperationKind.PREVIEW, e, operator, primary_id
            )
            return self._failure(e, operation_id)

        await self.audit.record(
            operation_id,
            OperationKind.PREVIEW,
            {
                "total_records": report.total_records,
                "affected_collections": report.affected_collections,
                "warnings": [w.type for w in report.warnings],
            },
            operator,
            target_entity_id=primary_id,
            entity_type=self.primary_collection,
        )
        return OperationEnvelope(
            success=True, operation_id=operation_id, data=report
        )

    async def execute_deletion(
        self,
        primary_id: str,
        options: Optional[DeletionOptions] = None,
        operator: Optional[OperatorInfo] = None,
    ) -> OperationEnvelope:
        """
        Delete a primary record and apply every relationship policy atomically.

        Args:
            primary_id: Id of the primary record
            options: Deletion options
            operator: Operator running the deletion

        Returns:
            Envelope carrying an ``ExecutionResult``; on failure the envelope
            names the snapshot that can still serve manual recovery
        """
        operator = operator or SYSTEM_OPERATOR
        options = options or DeletionOptions()
        operation_id = generate_operation_id(OperationKind.EXECUTE)
        try:
            result = await self.executor.execute(
                primary_id, options, operator.id, operation_id
            )
        except Exception as e:
            snapshot_id = getattr(e, "snapshot_id", None)
            await self._record_failure(
                operation_id,
                OperationKind.EXECUTE,
                e,
                operator,
                primary_id,
                {"snapshot_id": snapshot_id, "options": options.model_dump()},
            )
            return self._failure(e, operation_id, snapshot_id)

        await self.audit.record(
            operation_id,
            OperationKind.EXECUTE,
            _payload(result),
            operator,
            target_entity_id=primary_id,
            entity_type=self.primary_collection,
        )
        return OperationEnvelope(
            success=True,
            operation_id=operation_id,
            snapshot_id=result.snapshot_id,
            message="Dry run, nothing was changed" if result.dry_run else None,
            data=result,
        )

    async def execute_bulk_deletion(
        self,
        primary_ids: Iterable[str],
        options: Optional[DeletionOptions] = None,
        operator: Optional[OperatorInfo] = None,
    ) -> OperationEnvelope:
        """
        Delete several primary records, each as its own atomic unit.

        A failed record does not stop the others. Every execution is audited
        on its own, exactly as ``execute_deletion`` audits it.

        Args:
            primary_ids: Ids of the primary records, processed in order
            options: Deletion options applied to every record
            operator: Operator running the deletions

        Returns:
            Envelope carrying a ``BulkDeletionResult``; code
            ``PARTIAL_DELETION`` when some records failed and
            ``BULK_DELETION_FAILED`` when all of them did
        """
        operator = operator or SYSTEM_OPERATOR
        options = options or DeletionOptions()
        bulk = BulkDeletionResult(
            operation_id=generate_operation_id(OperationKind.EXECUTE),
            requested=list(primary_ids),
        )
        logger.info(f"Starting bulk deletion of {len(bulk.requested)} records")

        for primary_id in bulk.requested:
            envelope = await self.execute_deletion(primary_id, options, operator)
            if not envelope.success:
                bulk.failures.append(
                    BulkDeletionFailure(
                        primary_id=primary_id,
                        code=envelope.code,
                        error=envelope.message or envelope.code,
                        snapshot_id=envelope.snapshot_id,
                    )
                )
                continue
            result = envelope.data
            bulk.results.append(result)
            for collection, count in result.per_collection_counts.items():
                bulk.add_count(collection, count)

        bulk.completed_at = datetime.utcnow()
        if not bulk.failures:
            return OperationEnvelope(
                success=True, operation_id=bulk.operation_id, data=bulk
            )

        logger.warning(
            f"Bulk deletion {bulk.operation_id}: {bulk.failed} of "
            f"{len(bulk.requested)} records failed"
        )
        all_failed = bulk.successful == 0
        return OperationEnvelope(
            success=not all_failed,
            code=BULK_DELETION_FAILED if all_failed else PARTIAL_DELETION,
            message=f"{bulk.failed} of {len(bulk.requested)} deletions failed",
            operation_id=bulk.operation_id,
            data=bulk,
        )

    async def cleanup_orphans(
        self,
        options: Optional[OrphanCleanupOptions] = None,
        operator: Optional[OperatorInfo] = None,
    ) -> OperationEnvelope:
        """
        Scan for orphaned references and repair them unless ``dry_run``.

        Args:
            options: Scan and repair options
            operator: Operator running the cleanup

        Returns:
            Envelope carrying ``{"report": OrphanReport, "repair": RepairResult}``
        """
        operator = operator or SYSTEM_OPERATOR
        options = options or OrphanCleanupOptions()
        operation_id = generate_operation_id(OperationKind.CLEANUP)
        try:
            report = await self.orphans.scan(options.collections, options, operation_id)
            repair = await self.orphans.repair(
                report, options.dry_run, options, operator.id
            )
        except Exception as e:
            await self._record_failure(
                operation_id, OperationKind.CLEANUP, e, operator, None
            )
            return self._failure(e, operation_id)

        await self.audit.record(
            operation_id,
            OperationKind.CLEANUP,
            {
                "orphans_found": report.total,
                "by_collection": report.by_collection(),
                "repair": _payload(repair),
            },
            operator,
            entity_type=self.primary_collection,
        )
        return OperationEnvelope(
            success=True,
            operation_id=operation_id,
            data={"report": report, "repair": repair},
        )

    async def rollback(
        self,
        snapshot_id: str,
        options: Optional[RollbackOptions] = None,
        operator: Optional[OperatorInfo] = None,
    ) -> OperationEnvelope:
        """
        Restore the records captured in a snapshot.

        Args:
            snapshot_id: Snapshot to restore
            options: Rollback options
            operator: Operator running the rollback

        Returns:
            Envelope carrying a ``RollbackResult``; code ``PARTIAL_RESTORE``
            when conflicts or per-record failures occurred
        """
        operator = operator or SYSTEM_OPERATOR
        operation_id = generate_operation_id(OperationKind.ROLLBACK)
        try:
            result = await self.rollback_engine.rollback(
                snapshot_id, options, operator.id, operation_id
            )
        except Exception as e:
            await self._record_failure(
                operation_id,
                OperationKind.ROLLBACK,
                e,
                operator,
                None,
                {"snapshot_id": snapshot_id},
            )
            return self._failure(e, operation_id)

        partial = result.status == OperationStatus.PARTIAL
        await self.audit.record(
            operation_id,
            OperationKind.ROLLBACK,
            _payload(result),
            operator,
            result.status,
            target_entity_id=result.primary_id,
            entity_type=self.primary_collection,
            error_code=PartialRestoreError.code if partial else None,
        )
        return OperationEnvelope(
            success=True,
            code=PartialRestoreError.code if partial else "OK",
            message=result.warnings[0] if partial else None,
            operation_id=operation_id,
            snapshot_id=snapshot_id,
            data=result,
        )

    async def list_audit_log(
        self,
        filter: Optional[AuditLogFilter] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> OperationEnvelope:
        """
        List audit entries with pagination and an outcome summary.

        Returns:
            Envelope carrying an ``AuditLogPage``
        """
        try:
            audit_page = await self.audit.list_entries(filter, page, limit)
        except Exception as e:
            return self._failure(e)
        return OperationEnvelope(success=True, data=audit_page)
