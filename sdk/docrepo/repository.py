"""
Repository base class and call dispatcher.

Application code declares one interface per entity type:

    >>> class UserRepository(DocumentRepository[User, str]):
    ...     def find_by_username(self, username: str) -> Optional[User]: ...
    ...     def count_by_status(self, status: str) -> int: ...

and obtains an instance from RepositoryFactory. CRUD methods are
implemented here; derived methods are compiled by the factory into
QueryPlans and routed through _execute_plan().

Invariants:
    - save() always goes through the ConcurrencyController
    - Deletes remove by identifier without a version check
    - Read entities are new objects, never the instance that was saved
    - Not-found is None / False / 0, never an error
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Generic, Iterable, List, Optional, Sequence, TypeVar

from .concurrency import ConcurrencyController
from .execution import DeclarativeQueryExecutor, ViewQueryExecutor
from .mapping import EntityDescriptor, EntityMapper
from .query.parser import Subject
from .query.plan import ExecutionMode, QueryPlan, ResultShape
from .store import Document, DocumentStore

logger = logging.getLogger(__name__)

E = TypeVar("E")
ID = TypeVar("ID")


@dataclass(frozen=True)
class RepositoryContext:
    """Collaborators shared by every call on one repository instance.

    Attributes:
        store: Store client
        descriptor: Entity descriptor
        mapper: Entity mapper
        controller: Concurrency controller
        declarative: Declarative-query adapter
        views: View adapter
        find_all_plan: Plan behind find_all()
        count_plan: Plan behind count()
    """

    store: DocumentStore
    descriptor: EntityDescriptor
    mapper: EntityMapper
    controller: ConcurrencyController
    declarative: DeclarativeQueryExecutor
    views: ViewQueryExecutor
    find_all_plan: QueryPlan
    count_plan: QueryPlan


class DocumentRepository(Generic[E, ID]):
    """CRUD repository over one entity collection.

    Subclass with concrete type arguments to declare an interface, then
    obtain instances from RepositoryFactory.get_repository().
    """

    def __init__(self, context: RepositoryContext) -> None:
        self._context = context

    @property
    def entity_type(self) -> type:
        return self._context.descriptor.entity_type

    # =========================================================================
    # Writes
    # =========================================================================

    def save(self, entity: E) -> E:
        """Insert or update an entity.

        Versioned entities carrying a version are written conditionally.

        Returns:
            The same entity with its version updated

        Raises:
            InvalidEntityError: If the identifier is empty
            OptimisticLockingError: If the stored version has moved on
        """
        return self._context.controller.save(entity)

    def save_all(self, entities: Iterable[E]) -> List[E]:
        """Save entities one by one; stops at the first failure."""
        return [self.save(entity) for entity in entities]

    def delete(self, entity: E) -> None:
        """Delete an entity by its identifier (no version check)."""
        self.delete_by_id(self._context.mapper.get_id(entity))

    def delete_by_id(self, entity_id: ID) -> None:
        """Delete by identifier; a missing document is not an error."""
        removed = self._context.store.remove(str(entity_id))
        logger.debug("Deleted document", extra={"doc_id": entity_id, "removed": removed})

    def delete_all(self) -> None:
        """Delete every entity in the collection."""
        for doc in self._collection_documents():
            self._context.store.remove(doc.id)

    # =========================================================================
    # Reads
    # =========================================================================

    def find_by_id(self, entity_id: ID) -> Optional[E]:
        """Get an entity by identifier, or None."""
        doc = self._context.store.get(str(entity_id))
        if doc is None or not self._belongs(doc):
            return None
        return self._context.mapper.from_document(doc)

    def find_all_by_id(self, entity_ids: Iterable[ID]) -> List[E]:
        """Get the entities that exist among the given identifiers."""
        found = []
        for entity_id in entity_ids:
            entity = self.find_by_id(entity_id)
            if entity is not None:
                found.append(entity)
        return found

    def exists_by_id(self, entity_id: ID) -> bool:
        doc = self._context.store.get(str(entity_id))
        return doc is not None and self._belongs(doc)

    def find_all(self) -> List[E]:
        """All entities in the collection (through a view when one is bound)."""
        return self._execute_plan(self._context.find_all_plan, ())

    def count(self) -> int:
        """Number of entities in the collection."""
        return self._execute_plan(self._context.count_plan, ())

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _execute_plan(self, plan: QueryPlan, args: Sequence[Any]) -> Any:
        """Run a compiled plan and shape its result."""
        adapter = self._adapter(plan)

        if plan.subject is Subject.DELETE:
            documents = adapter.find(plan, args)
            for doc in documents:
                self._context.store.remove(doc.id)
            logger.debug("Deleted matching documents", extra={"method": plan.method_name, "count": len(documents)})
            if plan.shape is ResultShape.COUNT:
                return len(documents)
            if plan.shape is ResultShape.MANY:
                return self._to_entities(documents)
            return None

        if plan.shape is ResultShape.COUNT:
            return adapter.count(plan, args)
        if plan.shape is ResultShape.EXISTS:
            return adapter.exists(plan, args)

        entities = self._to_entities(adapter.find(plan, args))
        if plan.shape is ResultShape.SINGLE:
            return entities[0] if entities else None
        if plan.shape is ResultShape.MANY:
            return entities
        return None

    def _adapter(self, plan: QueryPlan) -> Any:
        if plan.mode is ExecutionMode.VIEW:
            return self._context.views
        return self._context.declarative

    def _to_entities(self, documents: Iterable[Document]) -> List[E]:
        mapper = self._context.mapper
        return [mapper.from_document(doc) for doc in documents]

    def _collection_documents(self) -> List[Document]:
        plan = QueryPlan.collection_scan("delete_all", self._context.descriptor.collection, ResultShape.MANY)
        return self._context.declarative.find(plan, ())

    def _belongs(self, doc: Document) -> bool:
        mapper = self._context.mapper
        expected = mapper.descriptor.type_key_value
        return doc.fields.get(mapper.type_key, expected) == expected
