"""
Tests for the document store backends and predicate matching.

Both backends are exercised through the same operations; the SQL backend
runs against a temporary SQLite database.
"""

from datetime import datetime, timedelta

import pytest

from cascade_toolkit.exceptions import ConcurrentModificationError, StorageError
from cascade_toolkit.storage import (
    ID_FIELD,
    InMemoryDocumentStore,
    SQLDocumentStore,
    Update,
    get_document_store,
    matches,
    resolve_path,
)
from cascade_toolkit.storage.matching import apply_update, sort_documents


def sample_documents():
    return {
        "rehearsals": [
            {
                "_id": "r1",
                "date": datetime(2024, 3, 1, 18, 0),
                "attendees": [
                    {"studentId": "s1", "status": "present"},
                    {"studentId": "s2", "status": "late"},
                ],
            },
            {
                "_id": "r2",
                "date": datetime(2024, 4, 1, 18, 0),
                "attendees": [{"studentId": "s2", "status": "present"}],
            },
        ],
        "orchestras": [
            {"_id": "o1", "name": "Youth Orchestra", "memberIds": ["s1", "s2"]},
            {"_id": "o2", "name": "Chamber Ensemble", "memberIds": ["s3"]},
        ],
        "private_lessons": [
            {"_id": "pl1", "studentId": "s1", "instrument": "violin"},
            {"_id": "pl2", "studentId": "s1", "instrument": "piano"},
            {"_id": "pl3", "studentId": "s2", "instrument": "flute"},
        ],
    }


async def make_store(backend, tmp_path, initial=None):
    """Create an initialized store of the given backend seeded with documents."""
    if backend == "memory":
        return await get_document_store("memory", initial=initial)

    store = await get_document_store(
        "sql", connection_string=f"sqlite:///{tmp_path / 'documents.db'}"
    )
    async with store.transaction() as tx:
        for collection, documents in (initial or {}).items():
            for document in documents:
                await tx.insert(collection, document)
    return store


BACKENDS = ["memory", "sql"]


class TestMatching:
    """Test predicate matching over plain documents."""

    def test_plain_field_match(self):
        """Test equality on a scalar field."""
        doc = {"_id": "pl1", "studentId": "s1"}
        assert matches(doc, {"studentId": "s1"})
        assert not matches(doc, {"studentId": "s2"})

    def test_array_element_sub_field_match(self):
        """Test dotted paths step into arrays of objects."""
        doc = sample_documents()["rehearsals"][0]
        assert matches(doc, {"attendees.studentId": "s2"})
        assert not matches(doc, {"attendees.studentId": "s9"})

    def test_value_list_membership(self):
        """Test equality matches a member of an array of raw values."""
        doc = sample_documents()["orchestras"][0]
        assert matches(doc, {"memberIds": "s1"})
        assert not matches(doc, {"memberIds": "s3"})

    def test_operators(self):
        """Test supported comparison operators."""
        doc = {"_id": "x", "grade": 90, "tags": ["a", "b"]}
        assert matches(doc, {"grade": {"$gte": 90, "$lt": 100}})
        assert not matches(doc, {"grade": {"$gt": 90}})
        assert matches(doc, {"tags": {"$in": ["b", "z"]}})
        assert matches(doc, {"tags": {"$ne": "c"}})
        assert not matches(doc, {"tags": {"$ne": "a"}})
        assert matches(doc, {"grade": {"$exists": True}})
        assert matches(doc, {"missing": {"$exists": False}})

    def test_datetime_against_iso_string(self):
        """Test datetimes compare with ISO strings returned by JSON backends."""
        doc = {"_id": "x", "expires_at": "2024-05-01T00:00:00"}
        assert matches(doc, {"expires_at": {"$lt": datetime(2024, 6, 1)}})
        assert not matches(doc, {"expires_at": {"$gt": datetime(2024, 6, 1)}})

    def test_unknown_operator_raises(self):
        """Test an unsupported operator is rejected."""
        with pytest.raises(ValueError):
            matches({"a": 1}, {"a": {"$regex": "x"}})

    def test_empty_predicate_matches_everything(self):
        """Test an empty predicate selects every document."""
        assert matches({"_id": "x"}, {})
        assert matches({"_id": "x"}, None)

    def test_resolve_path(self):
        """Test resolving every value behind a dotted path."""
        doc = sample_documents()["rehearsals"][0]
        assert resolve_path(doc, "attendees.studentId") == ["s1", "s2"]
        assert resolve_path(doc, "attendees.missing") == []


class TestApplyUpdate:
    """Test update application."""

    def test_set_and_unset(self):
        """Test setting and removing fields."""
        doc = {"_id": "s1", "is_active": True, "note": "x"}
        updated, changed = apply_update(
            doc, Update(set={"is_active": False, "meta.by": "admin"}, unset=["note"])
        )
        assert changed
        assert updated == {"_id": "s1", "is_active": False, "meta": {"by": "admin"}}
        assert doc["is_active"] is True

    def test_pull_sub_document(self):
        """Test pulling array elements by sub-field match."""
        doc = sample_documents()["rehearsals"][0]
        updated, changed = apply_update(
            doc, Update(pull={"attendees": {"studentId": "s1"}})
        )
        assert changed
        assert updated["attendees"] == [{"studentId": "s2", "status": "late"}]

    def test_pull_value(self):
        """Test pulling raw values from an array."""
        doc = sample_documents()["orchestras"][0]
        updated, _ = apply_update(doc, Update(pull={"memberIds": "s1"}))
        assert updated["memberIds"] == ["s2"]

    def test_replace_inside_array_elements(self):
        """Test replacing a reference held inside array elements."""
        doc = sample_documents()["rehearsals"][0]
        stamp = {"original_entity_id": "s1"}
        updated, changed = apply_update(
            doc, Update(replace={"attendees.studentId": ("s1", stamp)})
        )
        assert changed
        assert updated["attendees"][0]["studentId"] == stamp
        assert updated["attendees"][1]["studentId"] == "s2"

    def test_no_change_reported(self):
        """Test an update that changes nothing is reported as such."""
        doc = {"_id": "o1", "memberIds": ["s2"]}
        _, changed = apply_update(doc, Update(pull={"memberIds": "s1"}))
        assert not changed

    def test_sort_documents(self):
        """Test multi-key sorting with missing values last."""
        docs = [
            {"_id": "a", "rank": 2},
            {"_id": "b"},
            {"_id": "c", "rank": 1},
        ]
        ordered = sort_documents(docs, [("rank", 1)])
        assert [d["_id"] for d in ordered] == ["c", "a", "b"]


class TestDocumentStores:
    """Test operations shared by every backend."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_find_with_array_paths(self, backend, tmp_path):
        """Test finding documents through array-embedded references."""
        store = await make_store(backend, tmp_path, sample_documents())
        found = await store.find("rehearsals", {"attendees.studentId": "s1"})
        assert [doc[ID_FIELD] for doc in found] == ["r1"]

        members = await store.find("orchestras", {"memberIds": "s1"})
        assert [doc[ID_FIELD] for doc in members] == ["o1"]
        await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_find_sort_skip_limit(self, backend, tmp_path):
        """Test sorting and paging results."""
        store = await make_store(backend, tmp_path, sample_documents())
        found = await store.find(
            "private_lessons", sort=[("instrument", -1)], skip=1, limit=1
        )
        assert [doc["instrument"] for doc in found] == ["piano"]
        await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_datetime_comparison(self, backend, tmp_path):
        """Test datetime predicates work on both backends."""
        store = await make_store(backend, tmp_path, sample_documents())
        found = await store.find(
            "rehearsals", {"date": {"$gt": datetime(2024, 3, 15)}}
        )
        assert [doc[ID_FIELD] for doc in found] == ["r2"]
        await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_update_many_and_count(self, backend, tmp_path):
        """Test conditional updates report modified documents only."""
        store = await make_store(backend, tmp_path, sample_documents())
        modified = await store.update_many(
            "rehearsals",
            {"attendees.studentId": "s2"},
            Update(pull={"attendees": {"studentId": "s2"}}),
        )
        assert modified == 2
        assert await store.count_documents("rehearsals", {"attendees.studentId": "s2"}) == 0

        again = await store.update_many(
            "rehearsals", {}, Update(pull={"attendees": {"studentId": "s2"}})
        )
        assert again == 0
        await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_delete_many(self, backend, tmp_path):
        """Test deleting every matching document."""
        store = await make_store(backend, tmp_path, sample_documents())
        assert await store.delete_many("private_lessons", {"studentId": "s1"}) == 2
        remaining = await store.find("private_lessons")
        assert [doc[ID_FIELD] for doc in remaining] == ["pl3"]
        await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_insert_and_replace(self, backend, tmp_path):
        """Test inserting, duplicate detection and replacement."""
        store = await make_store(backend, tmp_path)
        doc_id = await store.insert("students", {"name": "Noa"})
        assert await store.find_one("students", {ID_FIELD: doc_id}) == {
            "_id": doc_id,
            "name": "Noa",
        }

        with pytest.raises(StorageError):
            await store.insert("students", {"_id": doc_id, "name": "Other"})

        assert await store.replace("students", doc_id, {"name": "Noa Levi"})
        assert not await store.replace("students", "missing", {"name": "x"})
        found = await store.find_one("students", {ID_FIELD: doc_id})
        assert found == {"_id": doc_id, "name": "Noa Levi"}
        await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_transaction_commits(self, backend, tmp_path):
        """Test writes inside a transaction are visible after it commits."""
        store = await make_store(backend, tmp_path, sample_documents())
        async with store.transaction() as tx:
            await tx.delete_many("private_lessons", {"studentId": "s1"})
            assert await tx.count_documents("private_lessons") == 1
        assert await store.count_documents("private_lessons") == 1
        await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_transaction_rolls_back_on_error(self, backend, tmp_path):
        """Test no write of a failed transaction is persisted."""
        store = await make_store(backend, tmp_path, sample_documents())
        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await tx.delete_many("private_lessons", {"studentId": "s1"})
                await tx.update_many(
                    "orchestras", {}, Update(set={"archived": True})
                )
                raise RuntimeError("abort")

        assert await store.count_documents("private_lessons") == 3
        assert await store.count_documents("orchestras", {"archived": True}) == 0
        await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_results_are_copies(self, backend, tmp_path):
        """Test mutating a returned document does not change the store."""
        store = await make_store(backend, tmp_path, sample_documents())
        doc = await store.find_one("orchestras", {ID_FIELD: "o1"})
        doc["memberIds"].append("s9")
        fresh = await store.find_one("orchestras", {ID_FIELD: "o1"})
        assert fresh["memberIds"] == ["s1", "s2"]
        await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_list_collections(self, backend, tmp_path):
        """Test listing collections holding documents."""
        store = await make_store(backend, tmp_path, sample_documents())
        assert await store.list_collections() == [
            "orchestras",
            "private_lessons",
            "rehearsals",
        ]
        await store.close()


class TestInMemoryDocumentStore:
    """Test in-memory specifics."""

    def test_initial_documents_get_ids(self):
        """Test seeding generates ids for documents without one."""
        store = InMemoryDocumentStore({"students": [{"name": "Noa"}]})
        dumped = store.dump()
        assert len(dumped["students"]) == 1
        assert ID_FIELD in dumped["students"][0]

    @pytest.mark.asyncio
    async def test_datetimes_kept_as_objects(self):
        """Test the memory backend keeps values bit-identical."""
        when = datetime(2024, 1, 1) + timedelta(microseconds=5)
        store = InMemoryDocumentStore({"events": [{"_id": "e1", "at": when}]})
        found = await store.find_one("events", {ID_FIELD: "e1"})
        assert found["at"] == when


class TestSQLDocumentStoreSessions:
    """Test stores in separate sessions sharing one database."""

    @pytest.fixture
    def database_url(self, tmp_path):
        """Database shared by two store instances."""
        return f"sqlite:///{tmp_path / 'shared.db'}"

    @pytest.mark.asyncio
    async def test_find_for_update(self, database_url):
        """Test reading a document by id inside a unit."""
        store = SQLDocumentStore(database_url)
        await store.initialize()
        await store.insert("people", {"_id": "p1", "is_active": True})

        async with store.transaction() as tx:
            assert (await tx.find_for_update("people", "p1"))["is_active"] is True
            assert await tx.find_for_update("people", "missing") is None
        await store.close()

    @pytest.mark.asyncio
    async def test_stale_write_rejected(self, database_url):
        """Test a unit cannot overwrite a row another session changed meanwhile."""
        first = SQLDocumentStore(database_url)
        second = SQLDocumentStore(database_url)
        await first.initialize()
        await second.initialize()
        await first.insert("people", {"_id": "p1", "is_active": True})

        with pytest.raises(ConcurrentModificationError):
            async with second.transaction() as tx:
                current = await tx.find_for_update("people", "p1")
                assert current["is_active"] is True
                await first.update_many(
                    "people", {ID_FIELD: "p1"}, Update(set={"is_active": False})
                )
                await tx.update_many(
                    "people",
                    {ID_FIELD: "p1"},
                    Update(set={"is_active": False, "deactivated_by": "second"}),
                )

        stored = await first.find_one("people", {ID_FIELD: "p1"})
        assert stored["is_active"] is False
        assert "deactivated_by" not in stored
        await first.close()
        await second.close()


class TestStoreFactory:
    """Test the get_document_store factory."""

    @pytest.mark.asyncio
    async def test_unknown_backend(self):
        """Test unknown backends are rejected."""
        with pytest.raises(ValueError):
            await get_document_store("mongo")

    @pytest.mark.asyncio
    async def test_sql_requires_connection_string(self):
        """Test the SQL backend needs a connection string."""
        with pytest.raises(ValueError):
            await get_document_store("sql")

    @pytest.mark.asyncio
    async def test_sql_requires_initialize(self):
        """Test using an uninitialized SQL store fails clearly."""
        store = SQLDocumentStore("sqlite:///:memory:")
        with pytest.raises(RuntimeError):
            await store.find("students")
