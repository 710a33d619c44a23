"""
Cascade Toolkit - Consistent deletion for schema-less document stores.

When a primary record is removed, every record that references it has to be
updated by hand: the store offers no foreign keys and no cascade. This toolkit
does that work from an explicitly declared relationship registry.

Key Features
------------
* **Impact Preview**: Per-relationship counts and risk warnings before any write
* **Atomic Cascade**: CASCADE, PRESERVE and CLEANUP policies applied in one unit
* **Snapshots & Rollback**: Bounded-time recovery of everything a deletion touched
* **Orphan Repair**: Idempotent cleanup of references that went stale on their own
* **Audit Trail**: Append-only record of every attempted operation

Quick Start
-----------
>>> from cascade_toolkit import DeletionService, DeletionOptions, get_document_store
>>>
>>> store = await get_document_store("sql", connection_string="sqlite:///cascade.db")
>>> service = DeletionService(store)
>>>
>>> preview = await service.preview_deletion("student-1")
>>> result = await service.execute_deletion(
...     "student-1", DeletionOptions(preserve_collections=["bagrut"])
... )
>>> await service.rollback(result.snapshot_id)
"""

__version__ = "1.0.0"

from .audit_trail import DeletionAuditLogger, OperatorInfo
from .config import CascadeConfig, configure, get_config
from .deletion import (
    DeletionOptions,
    DeletionService,
    OrphanCleanupOptions,
    RollbackOptions,
)
from .exceptions import CascadeError
from .registry import (
    RelationshipPolicy,
    RelationshipRegistry,
    RelationshipRule,
    build_default_registry,
)
from .storage import InMemoryDocumentStore, SQLDocumentStore, get_document_store

__all__ = [
    # Service
    "DeletionService",
    "DeletionOptions",
    "OrphanCleanupOptions",
    "RollbackOptions",
    "OperatorInfo",
    # Registry
    "RelationshipPolicy",
    "RelationshipRegistry",
    "RelationshipRule",
    "build_default_registry",
    # Storage
    "InMemoryDocumentStore",
    "SQLDocumentStore",
    "get_document_store",
    # Audit
    "DeletionAuditLogger",
    # Configuration
    "CascadeConfig",
    "configure",
    "get_config",
    # Errors
    "CascadeError",
]
