"""
Optimistic concurrency control for entity writes.

Every save passes through ConcurrencyController:

    prepare_write  -> WriteRequest(doc_id, fields, expected_version)
    store.upsert   -> new version, or CasMismatchError
    apply_write    -> version stamped back onto the entity

An entity whose version is unset (0) is written unconditionally. An
entity carrying a version is written with that version as a
precondition; if the stored version has moved on, the store rejects the
write and the controller raises OptimisticLockingError chained to the
store's CasMismatchError.

Invariants:
    - No retries: the first successful compare-and-swap wins
    - Only the controller writes the version attribute
    - StoreUnavailableError propagates unchanged, so callers can tell
      "lost the race" from "store down"

How to change safely:
    - Deletes are intentionally not version-checked; adding a guard here
      changes the repository's consistency contract
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import CasMismatchError, InvalidEntityError, OptimisticLockingError
from .mapping import EntityMapper
from .store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteRequest:
    """A single-document write ready for the store.

    Attributes:
        doc_id: Document identifier
        fields: Field values including the type key
        expected_version: Version precondition (None for unconditional)
    """

    doc_id: str
    fields: Dict[str, Any]
    expected_version: Optional[int] = None

    @property
    def is_conditional(self) -> bool:
        return self.expected_version is not None


class ConcurrencyController:
    """Version stamping and CAS writes for one entity type.

    Attributes:
        store: Store client
        mapper: Mapper for the entity type
    """

    def __init__(self, store: DocumentStore, mapper: EntityMapper) -> None:
        self.store = store
        self.mapper = mapper

    def prepare_write(self, entity: Any) -> WriteRequest:
        """Build the write request for an entity.

        Raises:
            InvalidEntityError: If the identifier is empty
        """
        descriptor = self.mapper.descriptor
        doc_id = self.mapper.get_id(entity)
        if not doc_id:
            raise InvalidEntityError(
                f"Cannot save {descriptor.name}: identifier '{descriptor.id_property.name}' is empty",
                type_name=descriptor.name,
            )

        doc = self.mapper.to_document(entity)
        expected: Optional[int] = None
        if descriptor.is_versioned and doc.version:
            expected = doc.version
        return WriteRequest(doc_id=doc_id, fields=doc.fields, expected_version=expected)

    def apply_write_result(self, entity: Any, new_version: int) -> Any:
        """Stamp the store's new version onto the entity."""
        self.mapper.set_version(entity, new_version)
        return entity

    def save(self, entity: Any) -> Any:
        """Write an entity, honouring its version precondition.

        Returns:
            The same entity, with its version updated

        Raises:
            InvalidEntityError: If the identifier is empty
            OptimisticLockingError: If the stored version has moved on
            StoreUnavailableError: On store I/O failure
        """
        request = self.prepare_write(entity)
        try:
            new_version = self.store.upsert(
                request.doc_id,
                request.fields,
                expected_version=request.expected_version,
            )
        except CasMismatchError as e:
            logger.debug(
                "Conditional write rejected",
                extra={
                    "doc_id": request.doc_id,
                    "expected_version": request.expected_version,
                    "actual_version": e.actual_version,
                },
            )
            raise OptimisticLockingError(
                f"Optimistic locking failure for {self.mapper.descriptor.name} '{request.doc_id}': "
                f"expected version {request.expected_version} is no longer current",
                doc_id=request.doc_id,
                expected_version=request.expected_version or 0,
                cause=e,
            ) from e

        logger.debug(
            "Document written",
            extra={
                "doc_id": request.doc_id,
                "conditional": request.is_conditional,
                "version": new_version,
            },
        )
        return self.apply_write_result(entity, new_version)
