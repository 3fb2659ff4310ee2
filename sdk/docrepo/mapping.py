"""
Entity metadata and document mapping for docrepo.

This module provides:
- Field markers (id_field, version_field, transient_field)
- The document() class decorator naming an entity's collection
- EntityDescriptor: metadata extracted once per entity type
- EntityMapper: conversion between entities and Documents

Entities are dataclasses. Descriptors are extracted in a single pass and
cached process-wide; the cache is read-only after first use.

Invariants:
    - Exactly one identifier property, annotated str
    - At most one version property, annotated int
    - Version is only ever written by the concurrency controller
    - Unknown document fields are ignored on read

Example:
    >>> @document(collection="user")
    ... @dataclass
    ... class User:
    ...     key: str = id_field()
    ...     username: str = ""
    ...     version: int = version_field()
    >>>
    >>> mapper = EntityMapper(describe(User))
    >>> doc = mapper.to_document(User("u-1", "ada"))
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import typing
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

from .errors import ConfigurationError
from .store import Document

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TYPE_KEY = "_class"

_ROLE = "docrepo.role"
_ROLE_ID = "id"
_ROLE_VERSION = "version"
_ROLE_TRANSIENT = "transient"
_COLLECTION_ATTR = "__docrepo_collection__"
_TYPE_VALUE_ATTR = "__docrepo_type_key_value__"

# Process-wide descriptor cache
_descriptors: Dict[type, EntityDescriptor] = {}
_descriptor_lock = threading.Lock()


def id_field(**kwargs: Any) -> Any:
    """Mark a dataclass field as the entity identifier."""
    return dataclass_field(metadata={_ROLE: _ROLE_ID}, **kwargs)


def version_field(default: int = 0, **kwargs: Any) -> Any:
    """Mark a dataclass field as the optimistic-locking version."""
    return dataclass_field(default=default, metadata={_ROLE: _ROLE_VERSION}, **kwargs)


def transient_field(**kwargs: Any) -> Any:
    """Mark a dataclass field as never persisted."""
    return dataclass_field(metadata={_ROLE: _ROLE_TRANSIENT}, **kwargs)


def document(
    collection: Optional[str] = None,
    type_key_value: Optional[str] = None,
) -> Callable[[Type[T]], Type[T]]:
    """Class decorator naming the logical collection of an entity type.

    Args:
        collection: Collection name (defaults to the lowercased class name)
        type_key_value: Value written under the type key and used to filter
            the collection (defaults to the collection name)
    """

    def decorate(cls: Type[T]) -> Type[T]:
        setattr(cls, _COLLECTION_ATTR, collection or cls.__name__.lower())
        if type_key_value is not None:
            setattr(cls, _TYPE_VALUE_ATTR, type_key_value)
        return cls

    return decorate


@dataclass(frozen=True)
class PersistentProperty:
    """A single entity attribute as seen by the mapper.

    Attributes:
        name: Attribute name (also the stored field name)
        type: Resolved type annotation
        init: Whether the attribute is a constructor argument
        has_default: Whether the dataclass supplies a default
    """

    name: str
    type: Any
    init: bool = True
    has_default: bool = False


@dataclass(frozen=True)
class EntityDescriptor:
    """Metadata for one entity type.

    Attributes:
        entity_type: The dataclass
        collection: Logical collection name
        id_property: Identifier property
        version_property: Version property, if any
        properties: Persisted properties other than id and version
        transient: Names of transient attributes
        type_key_value: Value stored under the type key (defaults to the collection)
    """

    entity_type: type
    collection: str
    id_property: PersistentProperty
    version_property: Optional[PersistentProperty] = None
    properties: Tuple[PersistentProperty, ...] = ()
    transient: Tuple[PersistentProperty, ...] = ()
    type_key_value: str = ""

    @property
    def name(self) -> str:
        return self.entity_type.__name__

    @property
    def is_versioned(self) -> bool:
        return self.version_property is not None

    def get_property(self, name: str) -> Optional[PersistentProperty]:
        """Get a persisted property (including id and version) by name."""
        for prop in self.all_properties():
            if prop.name == name:
                return prop
        return None

    def all_properties(self) -> Tuple[PersistentProperty, ...]:
        """Id, version and regular persisted properties."""
        extra = (self.id_property,)
        if self.version_property is not None:
            extra += (self.version_property,)
        return extra + self.properties

    def property_names(self) -> list[str]:
        """Names of all queryable properties."""
        return [p.name for p in self.all_properties()]


def describe(entity_type: type) -> EntityDescriptor:
    """Get the descriptor for an entity type, extracting it on first use.

    Raises:
        ConfigurationError: If the type violates the entity contract
    """
    cached = _descriptors.get(entity_type)
    if cached is not None:
        return cached

    descriptor = _extract_descriptor(entity_type)
    with _descriptor_lock:
        # Concurrent first use: keep whichever descriptor landed first
        descriptor = _descriptors.setdefault(entity_type, descriptor)
    return descriptor


def reset_descriptors() -> None:
    """Clear the descriptor cache (for testing only)."""
    with _descriptor_lock:
        _descriptors.clear()


def _extract_descriptor(entity_type: type) -> EntityDescriptor:
    """Run the metadata-extraction pass for one entity type."""
    type_name = getattr(entity_type, "__name__", repr(entity_type))
    if not isinstance(entity_type, type) or not dataclasses.is_dataclass(entity_type):
        raise ConfigurationError(f"Entity type '{type_name}' must be a dataclass", type_name=type_name)

    try:
        hints = typing.get_type_hints(entity_type)
    except (NameError, TypeError) as e:
        raise ConfigurationError(
            f"Cannot resolve field annotations of entity '{type_name}': {e}",
            type_name=type_name,
        ) from e

    ids: list[PersistentProperty] = []
    versions: list[PersistentProperty] = []
    regular: list[PersistentProperty] = []
    transient: list[PersistentProperty] = []

    for f in dataclasses.fields(entity_type):
        if not f.name.isidentifier():
            raise ConfigurationError(
                f"Field name '{f.name}' of entity '{type_name}' is not a valid identifier",
                type_name=type_name,
            )
        prop = PersistentProperty(
            name=f.name,
            type=hints.get(f.name, Any),
            init=f.init,
            has_default=(
                f.default is not dataclasses.MISSING or f.default_factory is not dataclasses.MISSING
            ),
        )
        role = f.metadata.get(_ROLE)
        if role == _ROLE_ID:
            ids.append(prop)
        elif role == _ROLE_VERSION:
            versions.append(prop)
        elif role == _ROLE_TRANSIENT:
            transient.append(prop)
        else:
            regular.append(prop)

    if len(ids) > 1:
        raise ConfigurationError(
            f"Entity '{type_name}' declares more than one identifier field: "
            f"{[p.name for p in ids]}",
            type_name=type_name,
        )
    if not ids:
        # Fall back to a field literally named "id"
        implicit = [p for p in regular if p.name == "id"]
        if not implicit:
            raise ConfigurationError(
                f"Entity '{type_name}' must declare exactly one identifier field "
                "(use id_field() or name a field 'id')",
                type_name=type_name,
            )
        ids = implicit
        regular = [p for p in regular if p.name != "id"]

    if len(versions) > 1:
        raise ConfigurationError(
            f"Entity '{type_name}' declares more than one version field: "
            f"{[p.name for p in versions]}",
            type_name=type_name,
        )

    id_prop = ids[0]
    if id_prop.type is not str:
        raise ConfigurationError(
            f"Identifier field '{id_prop.name}' of entity '{type_name}' must be annotated str",
            type_name=type_name,
        )

    version_prop = versions[0] if versions else None
    if version_prop is not None:
        if version_prop.type is not int:
            raise ConfigurationError(
                f"Version field '{version_prop.name}' of entity '{type_name}' must be annotated int",
                type_name=type_name,
            )
        if entity_type.__dataclass_params__.frozen:  # type: ignore[attr-defined]
            raise ConfigurationError(
                f"Entity '{type_name}' is frozen but declares a version field",
                type_name=type_name,
            )

    collection = getattr(entity_type, _COLLECTION_ATTR, None) or type_name.lower()
    descriptor = EntityDescriptor(
        entity_type=entity_type,
        collection=collection,
        id_property=id_prop,
        version_property=version_prop,
        properties=tuple(regular),
        transient=tuple(transient),
        type_key_value=getattr(entity_type, _TYPE_VALUE_ATTR, None) or collection,
    )
    logger.debug(
        "Extracted entity descriptor",
        extra={
            "entity": type_name,
            "collection": descriptor.collection,
            "type_key_value": descriptor.type_key_value,
            "id": id_prop.name,
            "version": version_prop.name if version_prop else None,
        },
    )
    return descriptor


class EntityMapper:
    """Converts entities to documents and back.

    Attributes:
        descriptor: Entity descriptor
        type_key: Document field holding the collection name

    Example:
        >>> mapper = EntityMapper(describe(User))
        >>> doc = mapper.to_document(user)
        >>> copy = mapper.from_document(doc)
    """

    def __init__(self, descriptor: EntityDescriptor, type_key: str = DEFAULT_TYPE_KEY) -> None:
        self.descriptor = descriptor
        self.type_key = type_key

    def get_id(self, entity: Any) -> str:
        """Read the identifier attribute of an entity."""
        return getattr(entity, self.descriptor.id_property.name)

    def get_version(self, entity: Any) -> int:
        """Read the version attribute of an entity (0 if unversioned)."""
        prop = self.descriptor.version_property
        if prop is None:
            return 0
        return getattr(entity, prop.name) or 0

    def set_version(self, entity: Any, version: int) -> None:
        """Write the version attribute of an entity (no-op if unversioned)."""
        prop = self.descriptor.version_property
        if prop is not None:
            setattr(entity, prop.name, version)

    def to_document(self, entity: Any) -> Document:
        """Convert an entity to a Document.

        Transient attributes are omitted and the type key is added.
        """
        fields: Dict[str, Any] = {self.type_key: self.descriptor.type_key_value}
        for prop in self.descriptor.properties:
            fields[prop.name] = to_stored(getattr(entity, prop.name))
        return Document(
            id=self.get_id(entity),
            fields=fields,
            version=self.get_version(entity),
        )

    def from_document(self, doc: Document) -> Any:
        """Build a new entity instance from a Document.

        Unknown document fields are ignored. Missing fields use the
        dataclass default, or None when there is none.
        """
        descriptor = self.descriptor
        values: Dict[str, Any] = {descriptor.id_property.name: doc.id}
        for prop in descriptor.properties:
            if prop.name in doc.fields:
                values[prop.name] = _from_stored(prop.type, doc.fields[prop.name])
            elif prop.init and not prop.has_default:
                values[prop.name] = None
        for prop in descriptor.transient:
            if prop.init and not prop.has_default:
                values[prop.name] = None

        init_args = {}
        late_args = {}
        for name, value in values.items():
            prop = descriptor.get_property(name)
            if prop is not None and not prop.init:
                late_args[name] = value
            else:
                init_args[name] = value

        entity = descriptor.entity_type(**init_args)
        for name, value in late_args.items():
            setattr(entity, name, value)
        self.set_version(entity, doc.version)
        return entity


def to_stored(value: Any) -> Any:
    """Convert an attribute value to its JSON-compatible stored form."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_stored(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_stored(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_stored(v) for k, v in value.items()}
    return value


def _from_stored(hint: Any, value: Any) -> Any:
    """Convert a stored value back using the attribute's type annotation."""
    if value is None:
        return None

    origin = typing.get_origin(hint)
    args = typing.get_args(hint)

    if origin is typing.Union or (origin is not None and type(None) in args):
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1:
            return _from_stored(non_none[0], value)
        return value

    if origin in (list, tuple, set, frozenset) and isinstance(value, list):
        item_hint = args[0] if args else Any
        items = [_from_stored(item_hint, v) for v in value]
        return origin(items) if origin is not list else items

    if isinstance(hint, type):
        if dataclasses.is_dataclass(hint) and isinstance(value, dict):
            nested_hints = typing.get_type_hints(hint)
            kwargs = {
                f.name: _from_stored(nested_hints.get(f.name, Any), value[f.name])
                for f in dataclasses.fields(hint)
                if f.init and f.name in value
            }
            return hint(**kwargs)
        if issubclass(hint, Enum):
            return hint(value)

    return value
