"""
Data models for cascade deletion operations.

These models define options, previews, snapshots and operation results
exchanged between the cascade components and their callers.
"""

import hashlib
import json
import secrets
import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..audit_trail.models import OperationKind, OperationStatus


def generate_operation_id(kind: OperationKind) -> str:
    """Operation id of the form ``<kind>_<epoch ms>_<8 hex chars>``."""
    return f"{kind.value.lower()}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class WarningSeverity(str, Enum):
    """Severity of an impact warning."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class PolicyAction(str, Enum):
    """Action effectively applied to the records of one relationship."""

    DELETE = "DELETE"
    PRESERVE = "PRESERVE"
    CLEANUP_REFERENCE = "CLEANUP_REFERENCE"


class DeletionOptions(BaseModel):
    """Options recognized by preview and execute operations."""

    hard_delete: bool = Field(
        False, description="Physically remove the primary record instead of deactivating it"
    )
    create_snapshot: bool = Field(
        True, description="Capture a rollback snapshot before mutating"
    )
    dry_run: bool = Field(False, description="Report projected counts without writing")
    preserve_all: bool = Field(
        False, description="Redact instead of delete for every PRESERVE relationship"
    )
    preserve_collections: List[str] = Field(
        default_factory=list,
        description="PRESERVE relationships to redact instead of delete",
    )
    emergency_rollback: Optional[bool] = Field(
        None, description="Attempt a rollback if execution aborts (config default)"
    )
    reason: Optional[str] = Field(
        None, description="Reason recorded on the deactivated primary record", max_length=500
    )

    def should_preserve(self, collection: str) -> bool:
        """Whether records of a PRESERVE relationship are kept and redacted."""
        return self.preserve_all or collection in self.preserve_collections


class RollbackOptions(BaseModel):
    """Options recognized by rollback."""

    preserve_new_data: bool = Field(
        False, description="Skip records that exist again instead of overwriting them"
    )


class OrphanCleanupOptions(BaseModel):
    """Options recognized by orphan scan and repair."""

    collections: Optional[List[str]] = Field(
        None, description="Referencing collections to scan (all when unset)"
    )
    include_inactive: bool = Field(
        False, description="Treat references to inactive primary records as orphans"
    )
    dry_run: bool = Field(True, description="Report orphans without repairing them")
    preserve_all: bool = Field(
        False, description="Redact instead of delete for every PRESERVE relationship"
    )
    preserve_collections: List[str] = Field(default_factory=list)

    def should_preserve(self, collection: str) -> bool:
        return self.preserve_all or collection in self.preserve_collections


class ImpactWarning(BaseModel):
    """Risk warning raised by an impact preview."""

    type: str = Field(..., description="Machine-readable warning type")
    message: str = Field(..., description="Human-readable description")
    severity: WarningSeverity = Field(..., description="Warning severity")
    collection: Optional[str] = Field(None, description="Collection concerned")


class RelationshipImpact(BaseModel):
    """Projected effect on one relationship."""

    collection: str
    field: str
    policy: str
    action: PolicyAction
    record_count: int = 0


class PrimarySummary(BaseModel):
    """Identifying summary of the primary record."""

    id: str
    collection: str
    name: Optional[str] = None
    is_active: bool = True


class ImpactReport(BaseModel):
    """Read-only preview of what an execution would change."""

    operation_id: str
    primary: PrimarySummary
    relationships: List[RelationshipImpact] = Field(default_factory=list)
    affected_collections: Dict[str, int] = Field(default_factory=dict)
    total_records: int = 0
    cascade_records: int = 0
    warnings: List[ImpactWarning] = Field(default_factory=list)
    estimated_seconds: int = 0
    estimated_time: str = "0 seconds"
    can_rollback: bool = True
    generated_at: datetime = Field(default_factory=datetime.utcnow)

    def warnings_with(self, severity: WarningSeverity) -> List[ImpactWarning]:
        return [w for w in self.warnings if w.severity == severity]

    @property
    def critical_warnings(self) -> int:
        return len(self.warnings_with(WarningSeverity.CRITICAL))


class DeletionSnapshot(BaseModel):
    """Point-in-time copy of every record an execution will touch."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id", description="Snapshot identifier")
    primary_record_id: str = Field(..., description="Primary record captured")
    primary_collection: str = Field(..., description="Collection of the primary record")
    operation_id: Optional[str] = Field(None, description="Execution that captured it")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime = Field(..., description="End of the rollback window")
    created_by: str = Field(..., description="Operator who captured it")
    captured_data: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)
    size: int = Field(0, description="Serialized size of the captured data in bytes")
    checksum: Optional[str] = Field(None, description="Checksum of the captured data")
    used: bool = False
    used_at: Optional[datetime] = None
    used_by: Optional[str] = None
    rollback_id: Optional[str] = None

    @staticmethod
    def serialize_data(captured_data: Dict[str, List[Dict[str, Any]]]) -> str:
        """Deterministic serialization of captured data."""
        return json.dumps(captured_data, sort_keys=True, default=str)

    def calculate_checksum(self, algorithm: str = "sha256") -> str:
        """
        Calculate checksum for the captured data.

        Args:
            algorithm: Hash algorithm to use

        Returns:
            Hex digest of the checksum
        """
        payload = self.serialize_data(self.captured_data).encode()
        if algorithm == "sha256":
            return hashlib.sha256(payload).hexdigest()
        elif algorithm == "sha512":
            return hashlib.sha512(payload).hexdigest()
        else:
            raise ValueError(f"Unsupported algorithm: {algorithm}")

    def verify_checksum(self, algorithm: str = "sha256") -> bool:
        """True when no checksum was recorded or the captured data is intact."""
        if not self.checksum:
            return True
        return self.calculate_checksum(algorithm) == self.checksum

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or datetime.utcnow())

    @property
    def record_count(self) -> int:
        return sum(len(records) for records in self.captured_data.values())

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class OperationResult(BaseModel):
    """Common result shape of every operation."""

    operation_id: str
    kind: OperationKind
    per_collection_counts: Dict[str, int] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    snapshot_id: Optional[str] = None

    def add_count(self, collection: str, count: int) -> None:
        self.per_collection_counts[collection] = (
            self.per_collection_counts.get(collection, 0) + count
        )

    @property
    def duration_ms(self) -> Optional[int]:
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


class ExecutionResult(OperationResult):
    """Result of a cascade execution."""

    kind: OperationKind = OperationKind.EXECUTE
    primary_id: str
    primary_collection: str
    deleted_records: Dict[str, int] = Field(default_factory=dict)
    preserved_records: Dict[str, int] = Field(default_factory=dict)
    cleaned_records: Dict[str, int] = Field(default_factory=dict)
    primary_action: str = "deactivated"
    dry_run: bool = False

    def record(self, action: PolicyAction, collection: str, count: int) -> None:
        bucket = {
            PolicyAction.DELETE: self.deleted_records,
            PolicyAction.PRESERVE: self.preserved_records,
            PolicyAction.CLEANUP_REFERENCE: self.cleaned_records,
        }[action]
        bucket[collection] = bucket.get(collection, 0) + count
        self.add_count(collection, count)


class BulkDeletionFailure(BaseModel):
    """A primary record whose deletion failed within a bulk run."""

    primary_id: str
    code: str
    error: str
    snapshot_id: Optional[str] = None


class BulkDeletionResult(OperationResult):
    """Result of deleting several primary records, one atomic unit each."""

    kind: OperationKind = OperationKind.EXECUTE
    requested: List[str] = Field(default_factory=list)
    results: List[ExecutionResult] = Field(default_factory=list)
    failures: List[BulkDeletionFailure] = Field(default_factory=list)

    @property
    def successful(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def total_records_affected(self) -> int:
        return sum(self.per_collection_counts.values())


class RecordFailure(BaseModel):
    """A record that could not be restored."""

    collection: str
    record_id: Optional[str] = None
    error: str


class RollbackResult(OperationResult):
    """Result of restoring a snapshot."""

    kind: OperationKind = OperationKind.ROLLBACK
    primary_id: Optional[str] = None
    restored_records: Dict[str, int] = Field(default_factory=dict)
    conflicts: Dict[str, int] = Field(default_factory=dict)
    failures: List[RecordFailure] = Field(default_factory=list)
    status: OperationStatus = OperationStatus.SUCCESS

    @property
    def total_restored(self) -> int:
        return sum(self.restored_records.values())

    @property
    def total_conflicts(self) -> int:
        return sum(self.conflicts.values())


class OrphanReference(BaseModel):
    """A referencing record pointing at a missing primary record."""

    source_collection: str
    referencing_collection: str
    field: str
    policy: str
    record_id: str
    missing_id: Any = Field(..., description="Dangling reference value as stored")


class OrphanReport(BaseModel):
    """Result of an orphan scan."""

    operation_id: str
    scanned_collections: List[str] = Field(default_factory=list)
    orphans: List[OrphanReference] = Field(default_factory=list)
    include_inactive: bool = False
    generated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def total(self) -> int:
        return len(self.orphans)

    def by_collection(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for orphan in self.orphans:
            counts[orphan.referencing_collection] = (
                counts.get(orphan.referencing_collection, 0) + 1
            )
        return counts


class RepairResult(OperationResult):
    """Result of repairing the orphans of a report."""

    kind: OperationKind = OperationKind.CLEANUP
    dry_run: bool = True
    orphans_found: int = 0
    removed: int = 0
    preserved: int = 0
    cleaned: int = 0

    @property
    def total_changes(self) -> int:
        return self.removed + self.preserved + self.cleaned


class OperationEnvelope(BaseModel):
    """Structured success/failure envelope returned by the service facade."""

    success: bool
    code: str = "OK"
    message: Optional[str] = None
    operation_id: Optional[str] = None
    snapshot_id: Optional[str] = None
    data: Optional[Any] = None
    details: Dict[str, Any] = Field(default_factory=dict)
