"""
SQLite document store.

Reference implementation of docrepo's DocumentStore protocol on a single
SQLite file. Documents are JSON bodies keyed by identifier, versioned by
a store-wide sequence, and queryable two ways:

- query_declarative(): SQLite SQL over the documents table, with the
  JSON1 functions and a REGEXP function available (the pattern must
  match the whole value)
- query_view(): materialised secondary indexes defined with
  define_view(), refreshed according to the query's staleness

Invariants:
    - Every mutation (upsert or remove) advances the sequence by one
    - A document's version is the sequence value of its last write
    - Conditional writes compare and swap inside one IMMEDIATE transaction
    - A view is consistent with documents as of its recorded sequence

How to change safely:
    - Schema migrations must be backward compatible
    - Keep REGEXP registered on every connection that runs statements
    - Use transactions for all write operations

Table schema:
    documents:
        - id TEXT PRIMARY KEY
        - version INTEGER
        - body TEXT (JSON)

    sequence:
        - name TEXT PRIMARY KEY
        - value INTEGER

    view_rows:
        - view_name TEXT
        - doc_id TEXT
        - view_key (raw scalar or JSON text)
        - value_json TEXT
        - INDEX on (view_name, view_key, doc_id)

    view_state:
        - view_name TEXT PRIMARY KEY
        - indexed_seq INTEGER
"""

from __future__ import annotations

import functools
import json
import logging
import re
import sqlite3
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from docrepo.errors import CasMismatchError, StatementError, StoreUnavailableError
from docrepo.mapping import to_stored
from docrepo.store import Document, Stale, ViewQuery, ViewRow

from .config import StoreConfig
from .views import ViewDefinition

logger = logging.getLogger(__name__)

# OperationalError messages that mean the store itself is unhealthy
_IO_MARKERS = ("locked", "unable to open", "disk", "readonly", "busy")


@functools.lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def _regexp(pattern: str | None, value: Any) -> int:
    """SQLite REGEXP: ``value REGEXP pattern`` calls regexp(pattern, value)."""
    if pattern is None or value is None:
        return 0
    return 1 if _compile(pattern).fullmatch(str(value)) else 0


def _key_column(key: Any) -> Any:
    """Store a view key as a sortable SQLite value."""
    key = to_stored(key)
    if key is None or isinstance(key, (str, int, float)) and not isinstance(key, bool):
        return key
    return json.dumps(key, sort_keys=True)


def _is_io_error(error: sqlite3.Error) -> bool:
    if not isinstance(error, sqlite3.OperationalError):
        return False
    message = str(error).lower()
    return any(marker in message for marker in _IO_MARKERS)


class SqliteDocumentStore:
    """Single-file SQLite implementation of DocumentStore.

    Thread safety:
        Each operation opens its own connection. SQLite serialises
        writers; WAL mode lets readers proceed during writes.

    Example:
        >>> store = SqliteDocumentStore(StoreConfig(data_dir="/tmp/docs"))
        >>> store.initialize()
        >>> store.define_view(ViewDefinition("user", "all", collection="user"))
        >>> version = store.upsert("u-1", {"_class": "user", "username": "ada"})
    """

    SCHEMA_VERSION = 1

    def __init__(self, config: StoreConfig | None = None) -> None:
        """Initialize the store.

        Args:
            config: Store configuration (defaults to StoreConfig())
        """
        self.config = config or StoreConfig()
        self._views: dict[str, ViewDefinition] = {}
        self._views_lock = threading.Lock()

    @property
    def db_path(self) -> Path:
        return self.config.db_path

    @contextmanager
    def _get_connection(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Get a database connection.

        Args:
            create: Whether to create the database file if missing

        Yields:
            SQLite connection

        Raises:
            StoreUnavailableError: If the database is missing or cannot be opened
        """
        db_path = self.db_path
        if not create and not db_path.exists():
            raise StoreUnavailableError(f"Document database not found: {db_path}", operation="connect")

        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(db_path),
                timeout=self.config.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except (OSError, sqlite3.Error) as e:
            raise StoreUnavailableError(f"Cannot open document database {db_path}: {e}", operation="connect") from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {int(self.config.busy_timeout_ms)}")
            conn.execute(f"PRAGMA cache_size = {int(self.config.cache_size_pages)}")
            if self.config.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.create_function("REGEXP", 2, _regexp, deterministic=True)

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            -- Schema version tracking
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            -- Documents
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                version INTEGER NOT NULL,
                body TEXT NOT NULL DEFAULT '{}'
            );

            -- Store-wide mutation sequence
            CREATE TABLE IF NOT EXISTS sequence (
                name TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            );

            INSERT OR IGNORE INTO sequence (name, value) VALUES ('documents', 0);

            -- Materialised view rows
            CREATE TABLE IF NOT EXISTS view_rows (
                view_name TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                view_key,
                value_json TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_view_rows_key ON view_rows(view_name, view_key, doc_id);

            -- Sequence each view was last indexed at
            CREATE TABLE IF NOT EXISTS view_state (
                view_name TEXT PRIMARY KEY,
                indexed_seq INTEGER NOT NULL
            );

            -- Record schema version
            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        with self._get_connection(create=True) as conn:
            self._create_schema(conn)
        logger.info("Initialized document store", extra={"db_path": str(self.db_path)})

    def define_view(self, definition: ViewDefinition) -> None:
        """Register (or replace) a view.

        The view is indexed on its next non-stale query.
        """
        with self._views_lock:
            self._views[definition.name] = definition
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("DELETE FROM view_rows WHERE view_name = ?", (definition.name,))
                conn.execute("DELETE FROM view_state WHERE view_name = ?", (definition.name,))
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        logger.info("Defined view", extra={"view": definition.name, "reduce": definition.reduce})

    # =========================================================================
    # Key-value operations
    # =========================================================================

    def get(self, doc_id: str) -> Document | None:
        """Get a document by identifier, or None."""
        with self._io("get") as conn:
            row = conn.execute("SELECT id, version, body FROM documents WHERE id = ?", (doc_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_document(row)

    def upsert(
        self,
        doc_id: str,
        fields: Mapping[str, Any],
        expected_version: int | None = None,
    ) -> int:
        """Insert or replace a document.

        Args:
            doc_id: Document identifier
            fields: Field values
            expected_version: Version the stored document must have

        Returns:
            The document's new version

        Raises:
            CasMismatchError: If expected_version is set and does not match,
                including when the document does not exist
        """
        body = json.dumps(dict(fields))
        with self._io("upsert") as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if expected_version is not None:
                    row = conn.execute("SELECT version FROM documents WHERE id = ?", (doc_id,)).fetchone()
                    actual = row["version"] if row is not None else None
                    if actual != expected_version:
                        raise CasMismatchError(doc_id, expected_version, actual)

                version = self._next_sequence(conn)
                conn.execute(
                    """
                    INSERT INTO documents (id, version, body) VALUES (?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET version = excluded.version, body = excluded.body
                    """,
                    (doc_id, version, body),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug("Upserted document", extra={"doc_id": doc_id, "version": version})
        return version

    def remove(self, doc_id: str) -> bool:
        """Remove a document; returns False if it did not exist."""
        with self._io("remove") as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute("DELETE FROM documents WHERE id = ?", (doc_id,))
                removed = cursor.rowcount > 0
                if removed:
                    self._next_sequence(conn)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return removed

    # =========================================================================
    # Queries
    # =========================================================================

    def query_declarative(
        self,
        statement: str,
        params: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Run a SQL statement against the documents table.

        Raises:
            StatementError: If SQLite rejects the statement
            StoreUnavailableError: On I/O failure
        """
        with self._get_connection() as conn:
            try:
                cursor = conn.execute(statement, dict(params or {}))
                rows = cursor.fetchall()
            except sqlite3.Error as e:
                if _is_io_error(e):
                    raise StoreUnavailableError(f"Declarative query failed: {e}", operation="query") from e
                raise StatementError(str(e), statement=statement) from e
        return [{key: row[key] for key in row.keys()} for row in rows]

    def query_view(self, query: ViewQuery) -> list[ViewRow]:
        """Query a view, honouring the requested staleness.

        Raises:
            StatementError: If the view is not defined, or reduce is
                requested on a view without one
        """
        definition = self._views.get(query.name)
        if definition is None:
            raise StatementError(f"View not found: {query.name}")
        if query.reduce and definition.reduce is None:
            raise StatementError(f"View {query.name} has no reduce function")

        with self._io("query_view") as conn:
            indexed = self._indexed_sequence(conn, definition)
            if query.stale is Stale.FALSE or indexed is None:
                self._refresh(conn, definition)
            rows = self._read_view(conn, definition, query)
            if query.stale is Stale.UPDATE_AFTER:
                self._refresh(conn, definition)
        return rows

    def refresh_view(self, design_doc: str, view_name: str) -> None:
        """Bring a view up to date with the documents table."""
        definition = self._views.get(f"{design_doc}/{view_name}")
        if definition is None:
            raise StatementError(f"View not found: {design_doc}/{view_name}")
        with self._io("refresh_view") as conn:
            self._refresh(conn, definition)

    # =========================================================================
    # Internals
    # =========================================================================

    @contextmanager
    def _io(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Connection whose SQLite failures surface as StoreUnavailableError."""
        with self._get_connection() as conn:
            try:
                yield conn
            except sqlite3.Error as e:
                raise StoreUnavailableError(f"{operation} failed: {e}", operation=operation) from e

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> Document:
        return Document(id=row["id"], fields=json.loads(row["body"]), version=row["version"])

    @staticmethod
    def _next_sequence(conn: sqlite3.Connection) -> int:
        conn.execute("UPDATE sequence SET value = value + 1 WHERE name = 'documents'")
        return conn.execute("SELECT value FROM sequence WHERE name = 'documents'").fetchone()["value"]

    @staticmethod
    def _current_sequence(conn: sqlite3.Connection) -> int:
        return conn.execute("SELECT value FROM sequence WHERE name = 'documents'").fetchone()["value"]

    @staticmethod
    def _indexed_sequence(conn: sqlite3.Connection, definition: ViewDefinition) -> int | None:
        row = conn.execute("SELECT indexed_seq FROM view_state WHERE view_name = ?", (definition.name,)).fetchone()
        return row["indexed_seq"] if row is not None else None

    def _refresh(self, conn: sqlite3.Connection, definition: ViewDefinition) -> None:
        """Rebuild a view's rows if documents changed since it was indexed."""
        conn.execute("BEGIN IMMEDIATE")
        try:
            current = self._current_sequence(conn)
            if self._indexed_sequence(conn, definition) == current:
                conn.execute("COMMIT")
                return

            conn.execute("DELETE FROM view_rows WHERE view_name = ?", (definition.name,))
            emitted = 0
            for row in conn.execute("SELECT id, version, body FROM documents").fetchall():
                doc = self._row_to_document(row)
                for key, value in definition.emit(doc):
                    conn.execute(
                        "INSERT INTO view_rows (view_name, doc_id, view_key, value_json) VALUES (?, ?, ?, ?)",
                        (definition.name, doc.id, _key_column(key), json.dumps(value)),
                    )
                    emitted += 1
            conn.execute(
                """
                INSERT INTO view_state (view_name, indexed_seq) VALUES (?, ?)
                ON CONFLICT(view_name) DO UPDATE SET indexed_seq = excluded.indexed_seq
                """,
                (definition.name, current),
            )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        logger.debug("Refreshed view", extra={"view": definition.name, "rows": emitted, "seq": current})

    def _read_view(
        self,
        conn: sqlite3.Connection,
        definition: ViewDefinition,
        query: ViewQuery,
    ) -> list[ViewRow]:
        where = ["v.view_name = :view"]
        params: dict[str, Any] = {"view": definition.name}
        if query.key is not None:
            where.append("v.view_key = :key")
            params["key"] = _key_column(query.key)
        if query.keys is not None:
            where.append("v.view_key IN (SELECT value FROM json_each(:keys))")
            params["keys"] = json.dumps([_key_column(k) for k in query.keys])
        if query.startkey is not None:
            where.append("v.view_key >= :startkey")
            params["startkey"] = _key_column(query.startkey)
        if query.endkey is not None:
            where.append("v.view_key <= :endkey" if query.inclusive_end else "v.view_key < :endkey")
            params["endkey"] = _key_column(query.endkey)
        conditions = " AND ".join(where)

        if query.reduce:
            # Only the built-in _count reducer exists
            count = conn.execute(f"SELECT COUNT(*) AS n FROM view_rows v WHERE {conditions}", params).fetchone()["n"]
            return [ViewRow(id=None, key=None, value=count)]

        sql = (
            "SELECT v.doc_id, v.view_key, v.value_json, d.version, d.body "
            "FROM view_rows v LEFT JOIN documents d ON d.id = v.doc_id "
            f"WHERE {conditions} ORDER BY v.view_key, v.doc_id"
        )
        if query.limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = int(query.limit)

        rows = []
        for row in conn.execute(sql, params).fetchall():
            document = None
            if query.include_docs and row["body"] is not None:
                document = Document(id=row["doc_id"], fields=json.loads(row["body"]), version=row["version"])
            rows.append(
                ViewRow(
                    id=row["doc_id"],
                    key=row["view_key"],
                    value=json.loads(row["value_json"]) if row["value_json"] is not None else None,
                    document=document,
                )
            )
        return rows
