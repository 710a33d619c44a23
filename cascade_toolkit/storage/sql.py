"""SQL database backend storing documents as JSON rows."""

import asyncio
import copy
import json
from contextlib import asynccontextmanager
from functools import partial
from typing import AsyncIterator, List, Optional, Tuple

from sqlalchemy import JSON, Column, Integer, String, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from ..exceptions import ConcurrentModificationError, StorageError
from .base import ID_FIELD, DocumentOperations, DocumentStore, new_document_id
from .matching import Document, Predicate, Update, apply_update, matches, sort_documents

Base = declarative_base()


class DocumentRow(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model holding one document of one collection.

    ``revision`` is the mapper's version counter: every UPDATE and DELETE is
    issued with ``WHERE revision = <value read>``, so a row changed by another
    session since it was read fails the flush with ``StaleDataError``.
    """

    __tablename__ = "documents"

    collection = Column(String(100), primary_key=True)
    doc_id = Column(String(100), primary_key=True)
    body = Column(JSON, nullable=False)
    revision = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": revision}


class _SQLOperations(DocumentOperations):
    """Document operations bound to one SQLAlchemy session.

    Matching happens in Python over the rows of a collection, so any dot-path
    predicate works regardless of the database's JSON support.
    """

    def __init__(self, session: Session):
        self.session = session

    def _rows(self, collection: str) -> List[DocumentRow]:
        return list(
            self.session.scalars(
                select(DocumentRow).where(DocumentRow.collection == collection)
            )
        )

    def _matching_rows(
        self, collection: str, predicate: Optional[Predicate]
    ) -> List[DocumentRow]:
        return [row for row in self._rows(collection) if matches(row.body, predicate)]

    async def find(
        self,
        collection: str,
        predicate: Optional[Predicate] = None,
        sort: Optional[List[Tuple[str, int]]] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Document]:
        rows = self._matching_rows(collection, predicate)
        results = sort_documents([copy.deepcopy(row.body) for row in rows], sort)
        results = results[skip:]
        if limit is not None:
            results = results[:limit]
        return results

    async def find_one(
        self, collection: str, predicate: Optional[Predicate] = None
    ) -> Optional[Document]:
        rows = self._matching_rows(collection, predicate)
        return copy.deepcopy(rows[0].body) if rows else None

    async def find_for_update(
        self, collection: str, document_id: str
    ) -> Optional[Document]:
        row = self.session.get(
            DocumentRow,
            (collection, str(document_id)),
            with_for_update=True,
            populate_existing=True,
        )
        return copy.deepcopy(row.body) if row is not None else None

    async def insert(self, collection: str, document: Document) -> str:
        stored = copy.deepcopy(document)
        doc_id = str(stored.setdefault(ID_FIELD, new_document_id()))
        if self.session.get(DocumentRow, (collection, doc_id)) is not None:
            raise StorageError(
                f"Duplicate id {doc_id} in collection {collection}", entity_id=doc_id
            )
        self.session.add(DocumentRow(collection=collection, doc_id=doc_id, body=stored))
        self.session.flush()
        return doc_id

    async def replace(self, collection: str, document_id: str, document: Document) -> bool:
        row = self.session.get(DocumentRow, (collection, document_id))
        if row is None:
            return False
        stored = copy.deepcopy(document)
        stored[ID_FIELD] = row.body.get(ID_FIELD, document_id)
        row.body = stored
        self.session.flush()
        return True

    async def update_many(
        self, collection: str, predicate: Predicate, update: Update
    ) -> int:
        modified = 0
        for row in self._matching_rows(collection, predicate):
            updated, changed = apply_update(row.body, update)
            if changed:
                # Assign a new object so the JSON column is flagged dirty
                row.body = updated
                modified += 1
        self.session.flush()
        return modified

    async def delete_many(self, collection: str, predicate: Predicate) -> int:
        rows = self._matching_rows(collection, predicate)
        for row in rows:
            self.session.delete(row)
        self.session.flush()
        return len(rows)

    async def count_documents(
        self, collection: str, predicate: Optional[Predicate] = None
    ) -> int:
        return len(self._matching_rows(collection, predicate))


class SQLDocumentStore(DocumentStore):
    """SQL database document store.

    Plain calls run in their own short session and commit immediately. A
    ``transaction()`` block shares one session that commits on normal exit
    and rolls back on any exception. Writes and transactions are serialized
    in-process because SQLite offers a single writer.

    Across processes sharing one database, ``find_for_update`` takes a row
    lock (``SELECT ... FOR UPDATE``) on backends that support it, and the
    row revision check rejects a commit over a row another session changed
    meanwhile with ``ConcurrentModificationError``. The latter also covers
    SQLite, which ignores ``FOR UPDATE``.
    """

    def __init__(self, connection_string: str):
        """
        Initialize SQL document storage.

        Args:
            connection_string: Database connection string
        """
        self.connection_string = connection_string
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None  # type: ignore[type-arg]
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize the database."""
        serializer = partial(json.dumps, default=str)
        if self.connection_string.startswith("sqlite"):
            # SQLite doesn't support pool_size and max_overflow
            self.engine = create_engine(
                self.connection_string, pool_pre_ping=True, json_serializer=serializer
            )
        else:
            self.engine = create_engine(
                self.connection_string,
                pool_pre_ping=True,
                pool_size=10,
                max_overflow=20,
                json_serializer=serializer,
            )

        Base.metadata.create_all(bind=self.engine)

        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    async def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()

    def _session(self) -> Session:
        if self.SessionLocal is None:  # nosec B101
            raise RuntimeError("Storage not initialized. Call initialize() first.")
        return self.SessionLocal()

    async def find(
        self,
        collection: str,
        predicate: Optional[Predicate] = None,
        sort: Optional[List[Tuple[str, int]]] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Document]:
        with self._session() as session:
            return await _SQLOperations(session).find(
                collection, predicate, sort, skip, limit
            )

    async def find_one(
        self, collection: str, predicate: Optional[Predicate] = None
    ) -> Optional[Document]:
        with self._session() as session:
            return await _SQLOperations(session).find_one(collection, predicate)

    async def count_documents(
        self, collection: str, predicate: Optional[Predicate] = None
    ) -> int:
        with self._session() as session:
            return await _SQLOperations(session).count_documents(collection, predicate)

    async def insert(self, collection: str, document: Document) -> str:
        async with self.transaction() as tx:
            return await tx.insert(collection, document)

    async def replace(self, collection: str, document_id: str, document: Document) -> bool:
        async with self.transaction() as tx:
            return await tx.replace(collection, document_id, document)

    async def update_many(
        self, collection: str, predicate: Predicate, update: Update
    ) -> int:
        async with self.transaction() as tx:
            return await tx.update_many(collection, predicate, update)

    async def delete_many(self, collection: str, predicate: Predicate) -> int:
        async with self.transaction() as tx:
            return await tx.delete_many(collection, predicate)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[DocumentOperations]:
        async with self._lock:
            session = self._session()
            try:
                yield _SQLOperations(session)
                session.commit()
            except StaleDataError as e:
                session.rollback()
                raise ConcurrentModificationError(
                    f"A record was modified by another session: {e}"
                ) from e
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(f"Database operation failed: {e}") from e
            except BaseException:
                session.rollback()
                raise
            finally:
                session.close()

    async def list_collections(self) -> List[str]:
        with self._session() as session:
            names = session.scalars(select(DocumentRow.collection).distinct())
            return sorted(names)
