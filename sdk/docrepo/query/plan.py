"""
Query plans for repository methods.

A QueryPlan is derived once per repository method, from its name,
parameter list, return annotation and decorators, and reused for every
invocation. Derivation is static: everything that can be checked without
arguments is checked here, and failures raise ConfigurationError while
the repository is being built.

Execution path:
    - @query methods run their inline statement (declarative)
    - methods bound to a view (@view or settings) run against the view
    - everything else runs a derived declarative statement

Invariants:
    - Plans are immutable and shared between threads
    - Parameter count equals the derived predicates' operand count
    - A plan never reaches the store while it holds an unsupported operator
"""

from __future__ import annotations

import collections.abc
import inspect
import logging
import typing
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from ..errors import CAS_PROJECTION, ID_PROJECTION, ConfigurationError, UnsupportedOperatorError
from ..mapping import EntityDescriptor
from ..store import Stale
from .parser import Operator, PartTree, Predicate, Subject, is_derivable, parse_method_name, subject_of
from .statement import DECLARATIVE_MODE, INLINE_DECLARATIVE_MODE
from .template import CompiledTemplate, compile_template

logger = logging.getLogger(__name__)

QUERY_ATTR = "__docrepo_query__"
VIEW_ATTR = "__docrepo_view__"

# Operators a view key lookup can express
VIEW_OPERATORS = frozenset(
    {Operator.EQUALS, Operator.IN, Operator.BETWEEN, Operator.GREATER_THAN_EQUAL, Operator.LESS_THAN_EQUAL}
)

_SEQUENCE_ORIGINS = (
    list,
    collections.abc.Sequence,
    collections.abc.Iterable,
    collections.abc.Collection,
    collections.abc.MutableSequence,
)


class ExecutionMode(Enum):
    """Which execution adapter runs a plan."""

    VIEW = "view"
    DECLARATIVE = "declarative"


class ResultShape(Enum):
    """What a repository method returns."""

    SINGLE = "single"
    MANY = "many"
    COUNT = "count"
    EXISTS = "exists"
    NONE = "none"


@dataclass(frozen=True)
class ViewBinding:
    """A method's binding to a stored view.

    Attributes:
        design_doc: Design document holding the view
        view_name: View name
        stale: Consistency level (None means the repository default)
        limit: Maximum rows
        reduce: Query through the view's reduce function
    """

    design_doc: str
    view_name: str
    stale: Optional[Stale] = None
    limit: Optional[int] = None
    reduce: bool = False

    @property
    def name(self) -> str:
        return f"{self.design_doc}/{self.view_name}"

    @classmethod
    def parse(cls, text: str) -> ViewBinding:
        """Parse ``"design/view"`` or ``"design/view?stale=ok"``."""
        path, _, options = text.partition("?")
        design_doc, sep, view_name = path.partition("/")
        if not sep or not design_doc or not view_name:
            raise ConfigurationError(f"Invalid view binding '{text}': expected 'design_doc/view_name'")
        stale: Optional[Stale] = None
        limit: Optional[int] = None
        reduce = False
        for option in filter(None, options.split("&")):
            key, _, value = option.partition("=")
            try:
                if key == "stale":
                    stale = Stale.from_str(value)
                elif key == "limit":
                    limit = int(value)
                elif key == "reduce":
                    if value.lower() not in ("true", "false"):
                        raise ValueError(f"reduce must be true or false, got '{value}'")
                    reduce = value.lower() == "true"
                else:
                    raise ValueError(f"unknown option '{key}'")
            except ValueError as e:
                raise ConfigurationError(f"Invalid view binding '{text}': {e}") from e
        return cls(design_doc, view_name, stale=stale, limit=limit, reduce=reduce)


@dataclass(frozen=True)
class QueryPlan:
    """Executable description of one repository method.

    Attributes:
        method_name: Repository method name
        collection: Entity collection
        subject: find / count / exists / delete
        shape: Result shape
        mode: Execution adapter
        parameter_names: Method parameter names in order
        tree: Derived predicate tree (None for inline or unfiltered plans)
        template: Inline statement (None for derived plans)
        view: View binding (VIEW mode only)
        unsupported: Predicate the execution path cannot run
        required_mode: Execution mode the unsupported predicate needs
    """

    method_name: str
    collection: str
    subject: Subject
    shape: ResultShape
    mode: ExecutionMode
    parameter_names: Tuple[str, ...] = ()
    tree: Optional[PartTree] = None
    template: Optional[CompiledTemplate] = None
    view: Optional[ViewBinding] = None
    unsupported: Optional[Predicate] = None
    required_mode: Optional[str] = None

    @property
    def limit(self) -> Optional[int]:
        return self.tree.limit if self.tree is not None else None

    def ensure_supported(self) -> None:
        """Fail before any store request if the plan cannot run.

        Raises:
            UnsupportedOperatorError: If a predicate has no backend support
        """
        if self.unsupported is not None:
            raise UnsupportedOperatorError(
                self.unsupported.operator.value,
                self.unsupported.property,
                self.required_mode or DECLARATIVE_MODE,
                method_name=self.method_name,
            )

    @classmethod
    def collection_scan(
        cls,
        method_name: str,
        collection: str,
        shape: ResultShape,
        view: Optional[ViewBinding] = None,
    ) -> QueryPlan:
        """Plan for an unfiltered read of the whole collection."""
        return cls(
            method_name=method_name,
            collection=collection,
            subject=Subject.COUNT if shape is ResultShape.COUNT else Subject.FIND,
            shape=shape,
            mode=ExecutionMode.VIEW if view is not None else ExecutionMode.DECLARATIVE,
            view=view,
        )


def derive_plan(
    func: Callable[..., Any],
    descriptor: EntityDescriptor,
    type_key: str,
    view_binding: Optional[ViewBinding] = None,
    repository_name: Optional[str] = None,
) -> QueryPlan:
    """Derive the QueryPlan for one repository method.

    Args:
        func: The method as declared on the repository interface
        descriptor: Entity descriptor
        type_key: Document field holding the collection name
        view_binding: View binding from configuration, if any
        repository_name: Repository class name for error messages

    Returns:
        QueryPlan

    Raises:
        ConfigurationError: If the method cannot be turned into a plan
    """
    method_name = func.__name__
    qualified = f"{repository_name}.{method_name}" if repository_name else method_name

    def fail(message: str) -> ConfigurationError:
        return ConfigurationError(f"{qualified}: {message}", type_name=descriptor.name, method_name=method_name)

    parameter_names = _parameter_names(func, fail)
    shape = _result_shape(func, descriptor, fail)

    inline = getattr(func, QUERY_ATTR, None)
    declared_view = getattr(func, VIEW_ATTR, None)
    if inline is not None and (declared_view is not None or view_binding is not None):
        raise fail("ambiguous view binding: method has both an inline query and a view binding")
    if declared_view is not None and view_binding is not None and declared_view != view_binding:
        raise fail(
            f"ambiguous view binding: declared {declared_view.name} but configured {view_binding.name}"
        )
    view = declared_view or view_binding

    if inline is not None:
        subject = subject_of(method_name) or Subject.FIND
        _check_shape(subject, shape, fail, inline=True)
        template = compile_template(
            inline,
            parameter_names,
            type_key=type_key,
            collection=descriptor.type_key_value,
            method_name=qualified,
        )
        plan = QueryPlan(
            method_name=method_name,
            collection=descriptor.collection,
            subject=subject,
            shape=shape,
            mode=ExecutionMode.DECLARATIVE,
            parameter_names=parameter_names,
            template=template,
        )
        logger.debug("Compiled inline query plan", extra={"method": qualified, "statement": template.text})
        return plan

    tree: Optional[PartTree] = None
    if view is not None and not is_derivable(method_name):
        # Unfiltered view read, e.g. a view-bound find_all
        subject = Subject.COUNT if shape is ResultShape.COUNT else Subject.FIND
    else:
        tree = parse_method_name(method_name, descriptor.property_names(), type_name=descriptor.name)
        subject = tree.subject
    _check_shape(subject, shape, fail, inline=False)

    expected = tree.arity if tree is not None else 0
    if expected != len(parameter_names):
        raise fail(
            f"derived query expects {expected} parameter(s) but the method declares "
            f"{len(parameter_names)} {list(parameter_names)}"
        )

    unsupported: Optional[Predicate] = None
    required_mode: Optional[str] = None

    if view is not None:
        if view.reduce and shape in (ResultShape.SINGLE, ResultShape.MANY):
            raise fail(
                f"view {view.name} is queried through reduce, so its rows cannot carry the "
                f"{ID_PROJECTION} and {CAS_PROJECTION} metadata needed to rebuild entities"
            )
        if tree is not None:
            if tree.sort:
                raise fail(f"view {view.name} cannot apply order_by; use a declarative query")
            if len(tree.predicates) != 1:
                raise fail(f"view {view.name} supports exactly one predicate, got {len(tree.predicates)}")
            predicate = tree.predicates[0]
            if predicate.operator not in VIEW_OPERATORS:
                unsupported, required_mode = predicate, DECLARATIVE_MODE
        mode = ExecutionMode.VIEW
    else:
        mode = ExecutionMode.DECLARATIVE
        for predicate in tree.predicates if tree is not None else ():
            if predicate.operator is Operator.NEAR:
                unsupported, required_mode = predicate, INLINE_DECLARATIVE_MODE
                break

    plan = QueryPlan(
        method_name=method_name,
        collection=descriptor.collection,
        subject=subject,
        shape=shape,
        mode=mode,
        parameter_names=parameter_names,
        tree=tree,
        view=view,
        unsupported=unsupported,
        required_mode=required_mode,
    )
    logger.debug(
        "Derived query plan",
        extra={
            "method": qualified,
            "mode": mode.value,
            "shape": shape.value,
            "predicates": len(tree.predicates) if tree is not None else 0,
        },
    )
    return plan


def _parameter_names(func: Callable[..., Any], fail: Callable[[str], ConfigurationError]) -> Tuple[str, ...]:
    names = []
    params = list(inspect.signature(func).parameters.values())
    for param in params[1:]:
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            raise fail(f"variadic parameter '{param.name}' is not supported")
        names.append(param.name)
    return tuple(names)


def _result_shape(
    func: Callable[..., Any],
    descriptor: EntityDescriptor,
    fail: Callable[[str], ConfigurationError],
) -> ResultShape:
    try:
        hints = typing.get_type_hints(func, localns={descriptor.name: descriptor.entity_type})
    except (NameError, TypeError) as e:
        raise fail(f"cannot resolve return annotation: {e}") from e

    if "return" not in hints:
        return ResultShape.NONE
    hint = hints["return"]
    entity = descriptor.entity_type

    if hint is type(None):
        return ResultShape.NONE
    if hint is bool:
        return ResultShape.EXISTS
    if hint is int:
        return ResultShape.COUNT
    if hint is entity:
        return ResultShape.SINGLE

    origin = typing.get_origin(hint)
    args = typing.get_args(hint)
    if args and type(None) in args:
        rest = [a for a in args if a is not type(None)]
        if rest == [entity]:
            return ResultShape.SINGLE
    if origin in _SEQUENCE_ORIGINS and args == (entity,):
        return ResultShape.MANY

    raise fail(
        f"unsupported return annotation {hint!r}: expected {entity.__name__}, "
        f"Optional[{entity.__name__}], list[{entity.__name__}], int or bool"
    )


def _check_shape(
    subject: Subject,
    shape: ResultShape,
    fail: Callable[[str], ConfigurationError],
    inline: bool,
) -> None:
    if subject is Subject.COUNT:
        allowed = {ResultShape.COUNT}
    elif subject is Subject.EXISTS:
        allowed = {ResultShape.EXISTS}
    elif subject is Subject.DELETE:
        allowed = {ResultShape.COUNT, ResultShape.MANY, ResultShape.NONE}
    elif inline:
        allowed = {ResultShape.SINGLE, ResultShape.MANY, ResultShape.COUNT, ResultShape.EXISTS}
    else:
        allowed = {ResultShape.SINGLE, ResultShape.MANY, ResultShape.COUNT}
    if shape not in allowed:
        raise fail(
            f"{subject.value} methods cannot return {shape.value}; "
            f"allowed: {sorted(s.value for s in allowed)}"
        )
