"""In-memory document store backend."""

import asyncio
import copy
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Tuple

from ..exceptions import StorageError
from .base import ID_FIELD, DocumentOperations, DocumentStore, new_document_id
from .matching import Document, Predicate, Update, apply_update, matches, sort_documents

CollectionData = Dict[str, Dict[str, Document]]


class _MemoryOperations(DocumentOperations):
    """Document operations over one snapshot of collection data."""

    def __init__(self, data: CollectionData):
        self.data = data

    def _collection(self, name: str) -> Dict[str, Document]:
        return self.data.setdefault(name, {})

    def _matching(self, collection: str, predicate: Optional[Predicate]) -> List[Document]:
        return [
            doc
            for doc in self.data.get(collection, {}).values()
            if matches(doc, predicate)
        ]

    async def find(
        self,
        collection: str,
        predicate: Optional[Predicate] = None,
        sort: Optional[List[Tuple[str, int]]] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Document]:
        results = sort_documents(self._matching(collection, predicate), sort)
        results = results[skip:]
        if limit is not None:
            results = results[:limit]
        return copy.deepcopy(results)

    async def find_one(
        self, collection: str, predicate: Optional[Predicate] = None
    ) -> Optional[Document]:
        for doc in self.data.get(collection, {}).values():
            if matches(doc, predicate):
                return copy.deepcopy(doc)
        return None

    async def insert(self, collection: str, document: Document) -> str:
        docs = self._collection(collection)
        stored = copy.deepcopy(document)
        doc_id = str(stored.setdefault(ID_FIELD, new_document_id()))
        if doc_id in docs:
            raise StorageError(
                f"Duplicate id {doc_id} in collection {collection}", entity_id=doc_id
            )
        docs[doc_id] = stored
        return doc_id

    async def replace(self, collection: str, document_id: str, document: Document) -> bool:
        docs = self._collection(collection)
        if document_id not in docs:
            return False
        stored = copy.deepcopy(document)
        stored[ID_FIELD] = docs[document_id][ID_FIELD]
        docs[document_id] = stored
        return True

    async def update_many(
        self, collection: str, predicate: Predicate, update: Update
    ) -> int:
        docs = self._collection(collection)
        modified = 0
        for doc_id, doc in list(docs.items()):
            if not matches(doc, predicate):
                continue
            updated, changed = apply_update(doc, update)
            if changed:
                docs[doc_id] = updated
                modified += 1
        return modified

    async def delete_many(self, collection: str, predicate: Predicate) -> int:
        docs = self._collection(collection)
        doomed = [doc_id for doc_id, doc in docs.items() if matches(doc, predicate)]
        for doc_id in doomed:
            del docs[doc_id]
        return len(doomed)

    async def count_documents(
        self, collection: str, predicate: Optional[Predicate] = None
    ) -> int:
        return len(self._matching(collection, predicate))


class InMemoryDocumentStore(DocumentStore):
    """Document store kept in process memory.

    Transactions are serialized by an ``asyncio.Lock`` and applied
    copy-on-write: the block works on a private copy of every collection,
    which replaces the committed data only when the block exits normally.
    Plain writes take the same lock so they never interleave with a commit.
    """

    def __init__(self, initial: Optional[Dict[str, List[Document]]] = None):
        self._data: CollectionData = {}
        self._lock = asyncio.Lock()
        for collection, documents in (initial or {}).items():
            docs = self._data.setdefault(collection, {})
            for document in documents:
                stored = copy.deepcopy(document)
                doc_id = str(stored.setdefault(ID_FIELD, new_document_id()))
                docs[doc_id] = stored

    @property
    def _ops(self) -> _MemoryOperations:
        return _MemoryOperations(self._data)

    async def find(
        self,
        collection: str,
        predicate: Optional[Predicate] = None,
        sort: Optional[List[Tuple[str, int]]] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Document]:
        return await self._ops.find(collection, predicate, sort, skip, limit)

    async def find_one(
        self, collection: str, predicate: Optional[Predicate] = None
    ) -> Optional[Document]:
        return await self._ops.find_one(collection, predicate)

    async def insert(self, collection: str, document: Document) -> str:
        async with self._lock:
            return await self._ops.insert(collection, document)

    async def replace(self, collection: str, document_id: str, document: Document) -> bool:
        async with self._lock:
            return await self._ops.replace(collection, document_id, document)

    async def update_many(
        self, collection: str, predicate: Predicate, update: Update
    ) -> int:
        async with self._lock:
            return await self._ops.update_many(collection, predicate, update)

    async def delete_many(self, collection: str, predicate: Predicate) -> int:
        async with self._lock:
            return await self._ops.delete_many(collection, predicate)

    async def count_documents(
        self, collection: str, predicate: Optional[Predicate] = None
    ) -> int:
        return await self._ops.count_documents(collection, predicate)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[DocumentOperations]:
        async with self._lock:
            working = copy.deepcopy(self._data)
            yield _MemoryOperations(working)
            # Only reached when the block raised nothing
            self._data = working

    async def list_collections(self) -> List[str]:
        return sorted(name for name, docs in self._data.items() if docs)

    def dump(self) -> Dict[str, List[Document]]:
        """Copy of all committed data, keyed by collection."""
        return {
            name: copy.deepcopy(list(docs.values()))
            for name, docs in self._data.items()
        }
