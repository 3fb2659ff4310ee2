"""
Repository factory.

RepositoryFactory turns a repository interface into a working instance:

    >>> factory = RepositoryFactory(store)
    >>> users = factory.get_repository(UserRepository)
    >>> users.find_by_username("ada")

Construction does all static work up front: the entity descriptor is
extracted, every declared method is compiled into a QueryPlan, and a
subclass of the interface is generated whose methods dispatch through
those plans. Any malformed method fails here with ConfigurationError,
never on first call.

Compiled metadata is cached process-wide, keyed by interface, type key
and view bindings. The cache is written at most once per key under a
lock; concurrent first use is harmless since the losing writer's
metadata is simply discarded.

How to change safely:
    - New CRUD methods on DocumentRepository must be added to
      _BASE_METHODS or interfaces redeclaring them will be rejected
"""

from __future__ import annotations

import functools
import inspect
import logging
import threading
import typing
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Type, TypeVar

from .concurrency import ConcurrencyController
from .config import RepositorySettings
from .errors import ConfigurationError
from .execution import DeclarativeQueryExecutor, ViewQueryExecutor
from .mapping import EntityDescriptor, EntityMapper, describe
from .query.plan import VIEW_ATTR, QueryPlan, ResultShape, ViewBinding, derive_plan
from .query.statement import StatementBuilder
from .repository import DocumentRepository, RepositoryContext
from .store import DocumentStore

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=DocumentRepository)

# Methods that may be redeclared on an interface to attach a view
_VIEW_OVERRIDABLE = ("find_all", "count")
_BASE_METHODS = frozenset(
    name for name, attr in vars(DocumentRepository).items() if not name.startswith("_") and callable(attr)
)


@dataclass(frozen=True)
class RepositoryMetadata:
    """Compiled, immutable description of one repository interface.

    Attributes:
        interface: The repository interface
        descriptor: Entity descriptor
        plans: Plan per declared method
        find_all_plan: Plan behind find_all()
        count_plan: Plan behind count()
        implementation: Generated subclass of the interface
    """

    interface: type
    descriptor: EntityDescriptor
    plans: Mapping[str, QueryPlan]
    find_all_plan: QueryPlan
    count_plan: QueryPlan
    implementation: type


_MetadataKey = Tuple[type, str, Tuple[Tuple[str, str], ...]]

# Process-wide metadata cache
_metadata: Dict[_MetadataKey, RepositoryMetadata] = {}
_metadata_lock = threading.Lock()


def reset_metadata() -> None:
    """Clear the repository metadata cache (for testing only)."""
    with _metadata_lock:
        _metadata.clear()


class RepositoryFactory:
    """Builds repository instances bound to one store.

    Attributes:
        store: Store client shared by every repository
        settings: Repository settings
    """

    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[RepositorySettings] = None,
        view_bindings: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.store = store
        self.settings = settings or RepositorySettings()
        if view_bindings:
            merged = dict(self.settings.view_bindings)
            merged.update(view_bindings)
            self.settings = self.settings.model_copy(update={"view_bindings": merged})

    def get_repository(self, interface: Type[R]) -> R:
        """Build a repository instance for an interface.

        Raises:
            ConfigurationError: If the entity type or any method is malformed
        """
        metadata = self.metadata_for(interface)
        descriptor = metadata.descriptor
        mapper = EntityMapper(descriptor, type_key=self.settings.type_key)
        builder = StatementBuilder(
            collection=descriptor.type_key_value,
            type_key=self.settings.type_key,
            id_property=descriptor.id_property.name,
            version_property=descriptor.version_property.name if descriptor.version_property else None,
        )
        context = RepositoryContext(
            store=self.store,
            descriptor=descriptor,
            mapper=mapper,
            controller=ConcurrencyController(self.store, mapper),
            declarative=DeclarativeQueryExecutor(self.store, builder),
            views=ViewQueryExecutor(
                self.store,
                default_stale=self.settings.stale,
                default_limit=self.settings.default_view_limit,
            ),
            find_all_plan=metadata.find_all_plan,
            count_plan=metadata.count_plan,
        )
        return metadata.implementation(context)

    def metadata_for(self, interface: type) -> RepositoryMetadata:
        """Compiled metadata for an interface, compiling it on first use."""
        key: _MetadataKey = (
            interface,
            self.settings.type_key,
            tuple(sorted(self._bindings_for(interface).items())),
        )
        cached = _metadata.get(key)
        if cached is not None:
            return cached

        metadata = self._compile(interface)
        with _metadata_lock:
            metadata = _metadata.setdefault(key, metadata)
        return metadata

    def _bindings_for(self, interface: type) -> Dict[str, str]:
        prefix = f"{interface.__name__}."
        return {k: v for k, v in self.settings.view_bindings.items() if k.startswith(prefix)}

    def _compile(self, interface: type) -> RepositoryMetadata:
        name = interface.__name__
        entity_type = entity_type_of(interface)
        descriptor = describe(entity_type)
        type_key = self.settings.type_key

        plans: Dict[str, QueryPlan] = {}
        declared = declared_methods(interface)
        for method_name, func in declared.items():
            binding = self.settings.binding_for(name, method_name)
            if method_name in _BASE_METHODS:
                if method_name not in _VIEW_OVERRIDABLE:
                    raise ConfigurationError(
                        f"{name}.{method_name}: CRUD method cannot be redeclared",
                        type_name=descriptor.name,
                        method_name=method_name,
                    )
                if getattr(func, VIEW_ATTR, None) is None and binding is None:
                    raise ConfigurationError(
                        f"{name}.{method_name}: redeclaring {method_name} requires a view binding",
                        type_name=descriptor.name,
                        method_name=method_name,
                    )
            plans[method_name] = derive_plan(
                func,
                descriptor,
                type_key=type_key,
                view_binding=binding,
                repository_name=name,
            )

        find_all_plan = plans.get("find_all") or self._scan_plan(
            name, "find_all", descriptor, ResultShape.MANY
        )
        count_plan = plans.get("count") or self._scan_plan(name, "count", descriptor, ResultShape.COUNT)

        namespace: Dict[str, Any] = {
            method_name: _make_invoker(declared[method_name], plan) for method_name, plan in plans.items()
        }
        namespace["__module__"] = interface.__module__
        namespace["__qualname__"] = f"{interface.__qualname__}Impl"
        implementation = type(f"{name}Impl", (interface,), namespace)

        logger.info(
            "Built repository",
            extra={
                "repository": name,
                "entity": descriptor.name,
                "collection": descriptor.collection,
                "methods": sorted(plans),
            },
        )
        return RepositoryMetadata(
            interface=interface,
            descriptor=descriptor,
            plans=plans,
            find_all_plan=find_all_plan,
            count_plan=count_plan,
            implementation=implementation,
        )

    def _scan_plan(
        self,
        repository_name: str,
        method_name: str,
        descriptor: EntityDescriptor,
        shape: ResultShape,
    ) -> QueryPlan:
        binding: Optional[ViewBinding] = self.settings.binding_for(repository_name, method_name)
        if binding is not None and binding.reduce and shape is ResultShape.MANY:
            raise ConfigurationError(
                f"{repository_name}.{method_name}: reduce view {binding.name} cannot carry the "
                "_ID and _CAS metadata needed to rebuild entities",
                type_name=descriptor.name,
                method_name=method_name,
            )
        return QueryPlan.collection_scan(method_name, descriptor.collection, shape, view=binding)


def entity_type_of(interface: type) -> type:
    """Entity type argument of a repository interface.

    Raises:
        ConfigurationError: If the interface does not parameterize
            DocumentRepository[Entity, str]
    """
    for cls in interface.__mro__:
        for base in getattr(cls, "__orig_bases__", ()):
            origin = typing.get_origin(base)
            if not (isinstance(origin, type) and issubclass(origin, DocumentRepository)):
                continue
            args = typing.get_args(base)
            if len(args) != 2 or not all(isinstance(a, type) for a in args):
                continue
            entity_type, id_type = args
            if id_type is not str:
                raise ConfigurationError(
                    f"{interface.__name__}: identifier type must be str, got {id_type.__name__}",
                    type_name=entity_type.__name__,
                )
            return entity_type
    raise ConfigurationError(
        f"{interface.__name__} must subclass DocumentRepository[Entity, str] with concrete type arguments"
    )


def declared_methods(interface: type) -> Dict[str, Callable[..., Any]]:
    """Public functions declared on an interface and its interface bases.

    Methods inherited from DocumentRepository itself are excluded; the
    most derived declaration wins.
    """
    methods: Dict[str, Callable[..., Any]] = {}
    for cls in interface.__mro__:
        if cls in DocumentRepository.__mro__:
            continue
        for method_name, attr in vars(cls).items():
            if method_name.startswith("_") or method_name in methods:
                continue
            if inspect.isfunction(attr):
                methods[method_name] = attr
    return methods


def _make_invoker(func: Callable[..., Any], plan: QueryPlan) -> Callable[..., Any]:
    """Replacement method that binds arguments and dispatches the plan."""
    signature = inspect.signature(func)

    @functools.wraps(func)
    def invoke(self: DocumentRepository, *args: Any, **kwargs: Any) -> Any:
        bound = signature.bind(self, *args, **kwargs)
        bound.apply_defaults()
        values = list(bound.arguments.values())[1:]
        return self._execute_plan(plan, values)

    return invoke
