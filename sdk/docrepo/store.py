"""
Store client protocol and wire types for docrepo.

This module defines the DocumentStore protocol that store clients must
implement, along with the value types exchanged with them.

Invariants:
    - Every read returns the document's current version token
    - upsert() with an expected version is a compare-and-swap
    - Stores never retry internally; failures surface to the caller

How to change safely:
    - Protocol changes require updating every store client
    - Keep ViewQuery fields optional so existing callers keep working
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable


class Stale(Enum):
    """View consistency level.

    FALSE refreshes the index before answering (fully consistent).
    OK answers from the index as last refreshed.
    UPDATE_AFTER answers from the index, then refreshes it.
    """

    FALSE = "false"
    OK = "ok"
    UPDATE_AFTER = "update_after"

    @classmethod
    def from_str(cls, value: str) -> Stale:
        """Convert string to Stale."""
        for stale in cls:
            if stale.value == value.lower():
                return stale
        raise ValueError(f"Invalid stale value: {value}")


@dataclass(frozen=True)
class Document:
    """A stored document.

    Attributes:
        id: Document identifier
        fields: Field values (JSON-compatible)
        version: Store-assigned version token (0 means never written)
    """

    id: str
    fields: Dict[str, Any]
    version: int = 0


@dataclass(frozen=True)
class ViewQuery:
    """Parameters for a secondary-index view query.

    Attributes:
        design_doc: Design document holding the view
        view_name: View name
        stale: Consistency level
        limit: Maximum rows to return
        key: Exact key match
        keys: Set of keys to match
        startkey: Inclusive lower bound
        endkey: Upper bound
        inclusive_end: Whether endkey is inclusive
        include_docs: Attach the current document to each row
        reduce: Run the view's reduce function instead of returning rows
    """

    design_doc: str
    view_name: str
    stale: Stale = Stale.FALSE
    limit: Optional[int] = None
    key: Any = None
    keys: Optional[List[Any]] = None
    startkey: Any = None
    endkey: Any = None
    inclusive_end: bool = True
    include_docs: bool = True
    reduce: bool = False

    @property
    def name(self) -> str:
        return f"{self.design_doc}/{self.view_name}"


@dataclass
class ViewRow:
    """A single view result row.

    Attributes:
        id: Document identifier (None for reduce rows)
        key: Emitted key
        value: Emitted or reduced value
        document: Current document when include_docs was requested
    """

    id: Optional[str]
    key: Any
    value: Any = None
    document: Optional[Document] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for document store clients.

    Durability contract:
        - upsert() returns only after the write is durable
        - the returned version is the document's new version token

    Concurrency contract:
        - upsert(expected_version=v) succeeds only if the stored version is v
        - on mismatch it raises CasMismatchError and writes nothing

    Example:
        >>> version = store.upsert("user-1", {"name": "Ada"})
        >>> store.upsert("user-1", {"name": "Ada L."}, expected_version=version)
    """

    @abstractmethod
    def get(self, doc_id: str) -> Optional[Document]:
        """Get a document by identifier.

        Returns:
            Document or None if not found

        Raises:
            StoreUnavailableError: On I/O failure
        """
        ...

    @abstractmethod
    def upsert(
        self,
        doc_id: str,
        fields: Mapping[str, Any],
        expected_version: Optional[int] = None,
    ) -> int:
        """Insert or replace a document.

        Args:
            doc_id: Document identifier
            fields: Field values
            expected_version: Version the stored document must have

        Returns:
            The new version token

        Raises:
            CasMismatchError: If expected_version does not match
            StoreUnavailableError: On I/O failure
        """
        ...

    @abstractmethod
    def remove(self, doc_id: str) -> bool:
        """Remove a document.

        Returns:
            True if removed, False if not found
        """
        ...

    @abstractmethod
    def query_view(self, query: ViewQuery) -> List[ViewRow]:
        """Query a named secondary-index view."""
        ...

    @abstractmethod
    def query_declarative(
        self,
        statement: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Run a declarative statement with bound parameters.

        Returns:
            Result rows as dictionaries

        Raises:
            StatementError: If the store rejects the statement
            StoreUnavailableError: On I/O failure
        """
        ...
