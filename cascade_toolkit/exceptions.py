"""Exceptions for cascade deletion, rollback and orphan repair operations.

Every exception carries a machine-readable ``code`` that drives programmatic
handling, and a user-facing message. Diagnostic detail stays in the log.
"""

from typing import Any, Dict, Optional


class CascadeError(Exception):
    """Base exception for cascade toolkit operations."""

    code = "CASCADE_ERROR"

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.entity_id = entity_id
        self.details = details or {}
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)


class RegistryError(CascadeError):
    """Raised when a relationship declaration is invalid."""

    code = "INVALID_REGISTRY"


class StorageError(CascadeError):
    """Raised by document store backends."""

    code = "STORAGE_ERROR"


class ConcurrentModificationError(StorageError):
    """Raised when a record changed in another session after it was read."""

    code = "CONCURRENT_MODIFICATION"


class NotFoundError(CascadeError):
    """Raised when a primary record does not exist."""

    code = "NOT_FOUND"

    def __init__(self, collection: str, entity_id: str):
        self.collection = collection
        super().__init__(
            f"Record {entity_id} not found in {collection}", entity_id=entity_id
        )


class AlreadyInactiveError(CascadeError):
    """Raised when the primary record was already deactivated or removed."""

    code = "ALREADY_INACTIVE"

    def __init__(self, entity_id: str):
        super().__init__(
            f"Record {entity_id} is already inactive and cannot be deleted again",
            entity_id=entity_id,
        )


class SnapshotError(CascadeError):
    """Raised when a deletion snapshot cannot be captured."""

    code = "SNAPSHOT_FAILED"


class SnapshotNotFoundError(NotFoundError):
    """Raised when a snapshot id is unknown."""

    code = "SNAPSHOT_NOT_FOUND"

    def __init__(self, snapshot_id: str):
        CascadeError.__init__(
            self, f"Snapshot {snapshot_id} not found", entity_id=snapshot_id
        )
        self.collection = "deletion_snapshots"


class SnapshotExpiredError(CascadeError):
    """Raised when a snapshot is past its retention window."""

    code = "SNAPSHOT_EXPIRED"

    def __init__(self, snapshot_id: str, expires_at: Any):
        super().__init__(
            f"Snapshot {snapshot_id} expired at {expires_at}", entity_id=snapshot_id
        )


class SnapshotAlreadyUsedError(CascadeError):
    """Raised when a snapshot was already consumed by a rollback."""

    code = "SNAPSHOT_ALREADY_USED"

    def __init__(self, snapshot_id: str):
        super().__init__(
            f"Snapshot {snapshot_id} has already been used for a rollback",
            entity_id=snapshot_id,
        )


class TransactionError(CascadeError):
    """Raised when the atomic unit of an execution was aborted.

    Nothing was committed. ``snapshot_id`` is set when a snapshot had been
    captured before the unit opened, so it can still serve manual recovery.
    """

    code = "TRANSACTION_ABORTED"

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        snapshot_id: Optional[str] = None,
    ):
        self.snapshot_id = snapshot_id
        super().__init__(message, entity_id=entity_id)


class PartialRestoreError(CascadeError):
    """Rollback finished with conflicts or per-record failures.

    Non-fatal: it describes a completed rollback and is reported through the
    result envelope rather than raised to callers.
    """

    code = "PARTIAL_RESTORE"

    def __init__(self, snapshot_id: str, conflicts: int, failures: int):
        self.conflicts = conflicts
        self.failures = failures
        super().__init__(
            f"Snapshot {snapshot_id} restored with {conflicts} conflict(s) "
            f"and {failures} failure(s)",
            entity_id=snapshot_id,
        )


class AuditWriteError(CascadeError):
    """Raised internally when an audit entry cannot be written.

    Never propagated to the caller of the audited operation.
    """

    code = "AUDIT_WRITE_FAILED"
