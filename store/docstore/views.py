"""
View definitions for the SQLite document store.

A view is a named secondary index over documents. Its map step turns a
document into zero or more (key, value) rows; an optional reduce step
collapses matching rows into a single value.

Example:
    >>> ViewDefinition("user", "by_username", key_field="username", collection="user")
    >>> ViewDefinition("user", "all", collection="user", reduce="_count")
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from docrepo.store import Document

MapFunction = Callable[[Document], Iterable[tuple[Any, Any]]]

REDUCE_COUNT = "_count"
_REDUCERS = (REDUCE_COUNT,)


@dataclass(frozen=True)
class ViewDefinition:
    """A stored view.

    Attributes:
        design_doc: Design document name
        view_name: View name
        key_field: Document field emitted as the key (None emits the id)
        collection: Only index documents whose type key equals this
        type_key: Document field holding the collection name
        reduce: Built-in reduce function name ("_count") or None
        map_function: Custom map step; overrides key_field
    """

    design_doc: str
    view_name: str
    key_field: str | None = None
    collection: str | None = None
    type_key: str = "_class"
    reduce: str | None = None
    map_function: MapFunction | None = None

    def __post_init__(self) -> None:
        if not self.design_doc or not self.view_name:
            raise ValueError("design_doc and view_name are required")
        if self.reduce is not None and self.reduce not in _REDUCERS:
            raise ValueError(f"Unsupported reduce '{self.reduce}', expected one of {_REDUCERS}")

    @property
    def name(self) -> str:
        return f"{self.design_doc}/{self.view_name}"

    def emit(self, doc: Document) -> list[tuple[Any, Any]]:
        """Rows this view produces for one document."""
        if self.collection is not None and doc.fields.get(self.type_key) != self.collection:
            return []
        if self.map_function is not None:
            return list(self.map_function(doc))
        if self.key_field is None:
            return [(doc.id, None)]
        key = doc.fields.get(self.key_field)
        if key is None:
            return []
        return [(key, None)]
