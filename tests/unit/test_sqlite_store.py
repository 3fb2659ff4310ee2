"""
Unit tests for the SQLite document store.

Tests cover:
- Document CRUD and version sequencing
- Compare-and-swap writes
- Declarative statements with REGEXP and json_each
- View staleness, key ranges and reduce
"""

import json
import tempfile

import pytest

from docrepo.errors import CasMismatchError, ErrorKind, StatementError, StoreUnavailableError
from docrepo.store import Stale, ViewQuery
from docstore import SqliteDocumentStore, StoreConfig, ViewDefinition


class TestSqliteDocumentStore:
    """Tests for document operations."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        """Create an initialized store."""
        store = SqliteDocumentStore(StoreConfig(data_dir=data_dir, wal_mode=False))
        store.initialize()
        return store

    def test_uninitialized(self, data_dir):
        """Operations before initialize() report the store as unavailable."""
        store = SqliteDocumentStore(StoreConfig(data_dir=data_dir))

        with pytest.raises(StoreUnavailableError) as exc_info:
            store.get("missing")
        assert exc_info.value.kind is ErrorKind.STORE_IO

    def test_upsert_and_get(self, store):
        """Upsert stores the body and returns the new version."""
        version = store.upsert("u-1", {"_class": "user", "username": "ada"})

        doc = store.get("u-1")
        assert doc is not None
        assert doc.fields == {"_class": "user", "username": "ada"}
        assert doc.version == version
        assert version > 0

    def test_get_missing(self, store):
        assert store.get("missing") is None

    def test_versions_increase(self, store):
        """Every write draws a new, larger version."""
        v1 = store.upsert("a", {"n": 1})
        v2 = store.upsert("b", {"n": 2})
        v3 = store.upsert("a", {"n": 3})

        assert v1 < v2 < v3
        assert store.get("a").version == v3

    def test_cas_success(self, store):
        """A matching expected version replaces the document."""
        v1 = store.upsert("a", {"n": 1})

        v2 = store.upsert("a", {"n": 2}, expected_version=v1)

        assert v2 > v1
        assert store.get("a").fields == {"n": 2}

    def test_cas_mismatch(self, store):
        """A stale expected version is rejected and nothing is written."""
        v1 = store.upsert("a", {"n": 1})
        v2 = store.upsert("a", {"n": 2})

        with pytest.raises(CasMismatchError) as exc_info:
            store.upsert("a", {"n": 3}, expected_version=v1)

        error = exc_info.value
        assert error.kind is ErrorKind.STORE_CONFLICT
        assert (error.expected_version, error.actual_version) == (v1, v2)
        assert store.get("a").fields == {"n": 2}

    def test_cas_on_missing_document(self, store):
        """A conditional write to a missing document is a conflict."""
        with pytest.raises(CasMismatchError) as exc_info:
            store.upsert("ghost", {"n": 1}, expected_version=4)

        assert exc_info.value.actual_version is None
        assert store.get("ghost") is None

    def test_remove(self, store):
        store.upsert("a", {"n": 1})

        assert store.remove("a") is True
        assert store.remove("a") is False
        assert store.get("a") is None


class TestDeclarativeQueries:
    """Tests for query_declarative."""

    @pytest.fixture
    def store(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = SqliteDocumentStore(StoreConfig(data_dir=tmpdir, wal_mode=False))
            store.initialize()
            for i in range(5):
                store.upsert(f"testuser-{i}", {"_class": "user", "username": f"uname-{i}", "age": 20 + i})
            store.upsert("other", {"_class": "city", "name": "London"})
            yield store

    def test_json_fields(self, store):
        rows = store.query_declarative(
            "SELECT d.id AS _ID FROM documents d WHERE json_extract(d.body, '$.age') >= :age ORDER BY d.id",
            {"age": 23},
        )

        assert [r["_ID"] for r in rows] == ["testuser-3", "testuser-4"]

    def test_regexp(self, store):
        """REGEXP is available to statements."""
        rows = store.query_declarative(
            "SELECT d.id FROM documents d WHERE json_extract(d.body, '$.username') REGEXP :p ORDER BY d.id",
            {"p": "uname-[13]"},
        )

        assert [r["id"] for r in rows] == ["testuser-1", "testuser-3"]

    def test_regexp_matches_whole_value(self, store):
        """A pattern matching only a prefix does not select the row."""
        store.upsert("testuser-10", {"_class": "user", "username": "uname-10", "age": 30})

        rows = store.query_declarative(
            "SELECT d.id FROM documents d WHERE json_extract(d.body, '$.username') REGEXP :p ORDER BY d.id",
            {"p": "uname-1"},
        )

        assert [r["id"] for r in rows] == ["testuser-1"]

    def test_json_each_membership(self, store):
        rows = store.query_declarative(
            "SELECT d.id FROM documents d WHERE json_extract(d.body, '$.username') "
            "IN (SELECT value FROM json_each(:names)) ORDER BY d.id",
            {"names": json.dumps(["uname-2", "uname-4", "nobody"])},
        )

        assert [r["id"] for r in rows] == ["testuser-2", "testuser-4"]

    def test_bad_statement(self, store):
        """Malformed SQL raises StatementError carrying the statement."""
        with pytest.raises(StatementError) as exc_info:
            store.query_declarative("SELEC nothing")

        assert exc_info.value.statement == "SELEC nothing"
        assert exc_info.value.kind is ErrorKind.QUERY_EXECUTION


class TestViews:
    """Tests for materialised views."""

    @pytest.fixture
    def store(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = SqliteDocumentStore(StoreConfig(data_dir=tmpdir, wal_mode=False))
            store.initialize()
            store.define_view(ViewDefinition("user", "all", collection="user", reduce="_count"))
            store.define_view(ViewDefinition("user", "by_age", key_field="age", collection="user"))
            for i in range(5):
                store.upsert(f"testuser-{i}", {"_class": "user", "username": f"uname-{i}", "age": 20 + i})
            store.upsert("other", {"_class": "city", "name": "London"})
            yield store

    def test_all(self, store):
        """A view indexes only its collection, with documents attached."""
        rows = store.query_view(ViewQuery("user", "all"))

        assert [r.id for r in rows] == [f"testuser-{i}" for i in range(5)]
        assert rows[0].document.fields["username"] == "uname-0"

    def test_key_range(self, store):
        rows = store.query_view(ViewQuery("user", "by_age", startkey=21, endkey=23))
        assert [r.key for r in rows] == [21, 22, 23]

        rows = store.query_view(ViewQuery("user", "by_age", startkey=21, endkey=23, inclusive_end=False))
        assert [r.key for r in rows] == [21, 22]

    def test_keys_and_limit(self, store):
        rows = store.query_view(ViewQuery("user", "by_age", keys=[24, 20, 99]))
        assert [r.id for r in rows] == ["testuser-0", "testuser-4"]

        rows = store.query_view(ViewQuery("user", "by_age", limit=2))
        assert len(rows) == 2

    def test_reduce_count(self, store):
        rows = store.query_view(ViewQuery("user", "all", reduce=True))

        assert len(rows) == 1
        assert rows[0].value == 5

    def test_reduce_without_reducer(self, store):
        with pytest.raises(StatementError, match="no reduce"):
            store.query_view(ViewQuery("user", "by_age", reduce=True))

    def test_unknown_view(self, store):
        with pytest.raises(StatementError, match="View not found"):
            store.query_view(ViewQuery("user", "nope"))

    def test_stale_ok_reads_old_index(self, store):
        """stale=ok does not see writes until a consistent query refreshes the index."""
        assert len(store.query_view(ViewQuery("user", "all", stale=Stale.FALSE))) == 5

        store.upsert("testuser-9", {"_class": "user", "username": "uname-9", "age": 29})

        assert len(store.query_view(ViewQuery("user", "all", stale=Stale.OK))) == 5
        assert len(store.query_view(ViewQuery("user", "all", stale=Stale.FALSE))) == 6

    def test_update_after(self, store):
        """update_after answers from the old index, then refreshes it."""
        store.query_view(ViewQuery("user", "all"))
        store.upsert("testuser-9", {"_class": "user", "username": "uname-9", "age": 29})

        assert len(store.query_view(ViewQuery("user", "all", stale=Stale.UPDATE_AFTER))) == 5
        assert len(store.query_view(ViewQuery("user", "all", stale=Stale.OK))) == 6

    def test_removed_document_detached(self, store):
        """Stale rows for removed documents carry no document."""
        store.query_view(ViewQuery("user", "all"))
        store.remove("testuser-0")

        rows = store.query_view(ViewQuery("user", "all", stale=Stale.OK))

        assert rows[0].id == "testuser-0"
        assert rows[0].document is None
