"""
Deletion audit logger.

Appends one immutable entry per attempted operation. Writing is best-effort:
a failed write is logged and never turns a successful operation into a
failed one.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Union

from ..config import CascadeConfig, get_config
from ..exceptions import AuditWriteError
from ..storage import DocumentStore
from .models import (
    SYSTEM_OPERATOR,
    AuditLogEntry,
    AuditLogFilter,
    AuditLogPage,
    AuditSummary,
    OperationKind,
    OperationStatus,
    OperatorInfo,
    Pagination,
)

logger = logging.getLogger(__name__)


class DeletionAuditLogger:
    """Audit logger for cascade deletion, orphan repair and rollback.

    Entries are stored in the configured audit collection of the document
    store shared with the rest of the toolkit. Each entry carries a checksum
    computed with the configured algorithm.

    Example:
        >>> audit = DeletionAuditLogger(store)
        >>> await audit.record(
        ...     operation_id="execute_1700000000000_1a2b3c4d",
        ...     kind=OperationKind.EXECUTE,
        ...     payload={"deleted_records": {"private_lessons": 3}},
        ...     operator=OperatorInfo(id="admin-1"),
        ...     target_entity_id="s1",
        ...     entity_type="students",
        ... )
    """

    def __init__(
        self,
        store: DocumentStore,
        config: Optional[CascadeConfig] = None,
        application_name: Optional[str] = None,
    ):
        """
        Initialize the audit logger.

        Args:
            store: Document store holding the audit collection
            config: Toolkit configuration (global configuration if None)
            application_name: Name recorded on every entry
        """
        self.store = store
        self.config = config or get_config()
        self.application_name = application_name or self.config.application_name

    @property
    def collection(self) -> str:
        return self.config.audit_collection

    def build_entry(
        self,
        operation_id: str,
        kind: Union[str, OperationKind],
        payload: Optional[Dict[str, Any]] = None,
        operator: Optional[OperatorInfo] = None,
        status: Union[str, OperationStatus] = OperationStatus.SUCCESS,
        target_entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> AuditLogEntry:
        """Create a checksummed entry without storing it."""
        operator = operator or SYSTEM_OPERATOR
        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            operation_id=operation_id,
            kind=OperationKind(kind),
            timestamp=datetime.utcnow(),
            operator_id=operator.id,
            operator_name=operator.name,
            ip_address=operator.ip_address,
            user_agent=operator.user_agent,
            target_entity_id=target_entity_id,
            entity_type=entity_type,
            application=self.application_name,
            status=OperationStatus(status),
            details=payload or {},
            error_code=error_code,
        )
        entry.checksum = entry.calculate_checksum(self.config.checksum_algorithm.value)
        return entry

    async def record(
        self,
        operation_id: str,
        kind: Union[str, OperationKind],
        payload: Optional[Dict[str, Any]] = None,
        operator: Optional[OperatorInfo] = None,
        status: Union[str, OperationStatus] = OperationStatus.SUCCESS,
        target_entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> Optional[str]:
        """
        Append an audit entry.

        Args:
            operation_id: Operation being recorded
            kind: Kind of operation
            payload: Result summary or error details
            operator: Operator who ran the operation
            status: Outcome of the operation
            target_entity_id: Primary record or snapshot concerned
            entity_type: Collection of the target entity
            error_code: Machine-readable error code on failure

        Returns:
            ID of the stored entry, or None if auditing is disabled or the
            write failed
        """
        if not self.config.audit_enabled:
            return None

        try:
            entry = self.build_entry(
                operation_id,
                kind,
                payload,
                operator,
                status,
                target_entity_id,
                entity_type,
                error_code,
            )
            await self.store.insert(self.collection, entry.model_dump(by_alias=True))
            return entry.id
        except Exception as e:
            error = AuditWriteError(
                f"Failed to write audit entry for {operation_id}: {e}",
                entity_id=operation_id,
            )
            logger.error(f"{error.code}: {error}")
            return None

    async def list_entries(
        self,
        filter: Optional[AuditLogFilter] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> AuditLogPage:
        """
        List audit entries matching a filter, one page at a time.

        Args:
            filter: Filter parameters (all entries if None)
            page: 1-based page number
            limit: Page size (configured default if None)

        Returns:
            Page of entries with pagination and an outcome summary
        """
        filter = filter or AuditLogFilter()
        page = max(page, 1)
        limit = limit or self.config.audit_page_limit
        predicate = filter.to_predicate()

        documents = await self.store.find(
            self.collection,
            predicate,
            sort=[(filter.sort_by, -1 if filter.sort_desc else 1)],
            skip=(page - 1) * limit,
            limit=limit,
        )
        total = await self.store.count_documents(self.collection, predicate)

        summary = AuditSummary(total_operations=total)
        for status, attribute in (
            (OperationStatus.SUCCESS, "successful_operations"),
            (OperationStatus.FAILED, "failed_operations"),
            (OperationStatus.PARTIAL, "partial_operations"),
        ):
            count = await self.store.count_documents(
                self.collection, {**predicate, "status": status.value}
            )
            setattr(summary, attribute, count)

        return AuditLogPage(
            entries=[AuditLogEntry.model_validate(doc) for doc in documents],
            pagination=Pagination.build(page, limit, total),
            summary=summary,
        )
