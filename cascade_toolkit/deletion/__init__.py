"""
Deletion Module - cascade deletion with snapshots, rollback and orphan repair.

This module provides:
- Impact previews with risk warnings
- Atomic cascade execution driven by the relationship registry
- Snapshot-based rollback within a retention window
- Orphan scanning and idempotent repair
"""

from .executor import CascadeExecutor
from .impact import ImpactAnalyzer
from .models import (
    BulkDeletionFailure,
    BulkDeletionResult,
    DeletionOptions,
    DeletionSnapshot,
    ExecutionResult,
    ImpactReport,
    ImpactWarning,
    OperationEnvelope,
    OperationResult,
    OrphanCleanupOptions,
    OrphanReference,
    OrphanReport,
    PolicyAction,
    RecordFailure,
    RepairResult,
    RollbackOptions,
    RollbackResult,
    WarningSeverity,
    generate_operation_id,
)
from .orphans import OrphanScanner
from .policies import PolicyOutcome, apply_policy
from .rollback import RollbackEngine
from .services import DeletionService
from .snapshots import SnapshotManager

__all__ = [
    "BulkDeletionFailure",
    "BulkDeletionResult",
    "CascadeExecutor",
    "DeletionOptions",
    "DeletionService",
    "DeletionSnapshot",
    "ExecutionResult",
    "ImpactAnalyzer",
    "ImpactReport",
    "ImpactWarning",
    "OperationEnvelope",
    "OperationResult",
    "OrphanCleanupOptions",
    "OrphanReference",
    "OrphanReport",
    "OrphanScanner",
    "PolicyAction",
    "PolicyOutcome",
    "RecordFailure",
    "RepairResult",
    "RollbackEngine",
    "RollbackOptions",
    "RollbackResult",
    "SnapshotManager",
    "WarningSeverity",
    "apply_policy",
    "generate_operation_id",
]
