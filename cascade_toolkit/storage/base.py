"""
Abstract document store interface.

The cascade components depend only on this interface: per-collection reads
and writes with dot-path matching, plus a way to run a block of operations as
one atomic, isolated unit of work.
"""

import uuid
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import List, Optional, Tuple

from .matching import Document, Predicate, Update

ID_FIELD = "_id"


def new_document_id() -> str:
    """Generate an id for a document inserted without one."""
    return uuid.uuid4().hex


class DocumentOperations(ABC):
    """Operations available both on a store and inside a transaction."""

    @abstractmethod
    async def find(
        self,
        collection: str,
        predicate: Optional[Predicate] = None,
        sort: Optional[List[Tuple[str, int]]] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Document]:
        """
        Find documents matching a predicate.

        Args:
            collection: Collection name
            predicate: Field path to value or operator dict
            sort: ``(field, direction)`` pairs
            skip: Number of matches to skip
            limit: Maximum number of documents to return

        Returns:
            Copies of the matching documents
        """

    @abstractmethod
    async def find_one(
        self, collection: str, predicate: Optional[Predicate] = None
    ) -> Optional[Document]:
        """Return a copy of the first matching document, or None."""

    async def find_for_update(
        self, collection: str, document_id: str
    ) -> Optional[Document]:
        """
        Read a document by id and hold it against concurrent writers.

        Inside a transaction, backends that can lock rows keep the document
        locked until the unit ends. The default is a plain read, enough for
        backends whose transactions are already serialized.
        """
        return await self.find_one(collection, {ID_FIELD: document_id})

    @abstractmethod
    async def insert(self, collection: str, document: Document) -> str:
        """
        Insert a document.

        Raises:
            StorageError: A document with the same id already exists
        """

    @abstractmethod
    async def replace(self, collection: str, document_id: str, document: Document) -> bool:
        """Replace a whole document by id. Returns False when it does not exist."""

    @abstractmethod
    async def update_many(
        self, collection: str, predicate: Predicate, update: Update
    ) -> int:
        """Apply an update to every matching document. Returns the modified count."""

    @abstractmethod
    async def delete_many(self, collection: str, predicate: Predicate) -> int:
        """Delete every matching document. Returns the deleted count."""

    @abstractmethod
    async def count_documents(
        self, collection: str, predicate: Optional[Predicate] = None
    ) -> int:
        """Count matching documents."""


class DocumentStore(DocumentOperations):
    """A document store able to run atomic units of work."""

    async def initialize(self) -> None:
        """Initialize the backend."""

    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[DocumentOperations]:
        """
        Open an atomic, isolated unit of work.

        Usage:
            async with store.transaction() as tx:
                await tx.delete_many("lessons", {"studentId": student_id})

        Writes issued through ``tx`` become visible together when the block
        exits normally. Any exception raised inside the block discards them
        all and propagates.
        """

    @abstractmethod
    async def list_collections(self) -> List[str]:
        """Names of collections holding at least one document."""
