"""
Storage Module - schema-less document store collaborators.

Provides the abstract document store used by every cascade component, an
in-memory backend and a SQL backend built on SQLAlchemy.
"""

from typing import Any

from .base import ID_FIELD, DocumentOperations, DocumentStore, new_document_id
from .matching import Document, Predicate, Update, matches, resolve_path
from .memory import InMemoryDocumentStore
from .sql import SQLDocumentStore


async def get_document_store(backend: str = "sql", **kwargs: Any) -> DocumentStore:
    """
    Create and initialize a document store.

    Args:
        backend: Storage backend type ("sql" or "memory")
        **kwargs: Backend-specific parameters

    Returns:
        Initialized document store
    """
    if backend == "memory":
        store: DocumentStore = InMemoryDocumentStore(kwargs.get("initial"))
        await store.initialize()
        return store

    if backend != "sql":
        raise ValueError(f"Unknown storage backend: {backend}")

    connection_string = kwargs.get("connection_string")
    if not connection_string:
        raise ValueError("connection_string is required for sql backend")

    store = SQLDocumentStore(connection_string)
    await store.initialize()
    return store


__all__ = [
    "ID_FIELD",
    "Document",
    "DocumentOperations",
    "DocumentStore",
    "InMemoryDocumentStore",
    "Predicate",
    "SQLDocumentStore",
    "Update",
    "get_document_store",
    "matches",
    "new_document_id",
    "resolve_path",
]
