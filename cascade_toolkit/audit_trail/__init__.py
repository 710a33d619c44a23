"""
Audit Trail Module - append-only record of deletion operations.

Every preview, execution, orphan repair and rollback is recorded with the
operator, the target and the outcome. Writes are best-effort.
"""

from .logger import DeletionAuditLogger
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

__all__ = [
    "SYSTEM_OPERATOR",
    "AuditLogEntry",
    "AuditLogFilter",
    "AuditLogPage",
    "AuditSummary",
    "DeletionAuditLogger",
    "OperationKind",
    "OperationStatus",
    "OperatorInfo",
    "Pagination",
]
