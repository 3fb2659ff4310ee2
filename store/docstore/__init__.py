"""
docstore - Reference SQLite document store for docrepo.

Implements the docrepo DocumentStore protocol on a single SQLite file:
- Versioned JSON documents with compare-and-swap writes
- SQL statements over the documents table (JSON1 + REGEXP)
- Materialised views with stale / update_after consistency

Example:
    >>> from docstore import SqliteDocumentStore, StoreConfig, ViewDefinition
    >>>
    >>> store = SqliteDocumentStore(StoreConfig(data_dir="/tmp/docs"))
    >>> store.initialize()
    >>> store.define_view(ViewDefinition("user", "all", collection="user"))
"""

from .config import StoreConfig, setup_logging
from .sqlite_store import SqliteDocumentStore
from .views import REDUCE_COUNT, ViewDefinition

__all__ = [
    "SqliteDocumentStore",
    "StoreConfig",
    "ViewDefinition",
    "REDUCE_COUNT",
    "setup_logging",
]
