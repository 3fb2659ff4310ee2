"""
Method-name parser for derived queries.

Repository method names encode their predicate:

    find_by_username_regex_and_username_in(pattern, names)
    count_by_age_greater_than(age)
    find_top3_by_status_order_by_created_desc(status)

Grammar:
    <prefix> <part> { (_and_ | _or_) <part> } [ _order_by_ <field> [_asc|_desc] { _and_ ... } ]
    <prefix> := (find|read|get|query)[_all][_first|_top<N>]_by_
              | count_by_ | exists_by_ | (delete|remove)_by_
    <part>   := <field> [ _<operator> ]

Field names are matched against the entity's properties longest first,
so properties containing underscores resolve correctly.

Invariants:
    - Parsing depends only on the name and the entity descriptor
    - The result is immutable and safe to share between threads
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional, Sequence, Tuple

from ..errors import ConfigurationError


class Subject(Enum):
    """What a derived method does with matching documents."""

    FIND = "find"
    COUNT = "count"
    EXISTS = "exists"
    DELETE = "delete"


class Operator(Enum):
    """Predicate operators."""

    EQUALS = "equals"
    NOT = "not"
    CONTAINS = "contains"
    STARTING_WITH = "starting_with"
    ENDING_WITH = "ending_with"
    REGEX = "regex"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    GREATER_THAN_EQUAL = "greater_than_equal"
    LESS_THAN = "less_than"
    LESS_THAN_EQUAL = "less_than_equal"
    BETWEEN = "between"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"
    TRUE = "true"
    FALSE = "false"
    NEAR = "near"

    @property
    def arity(self) -> int:
        """Number of method parameters the operator consumes."""
        return _ARITY.get(self, 1)

    @property
    def takes_collection(self) -> bool:
        return self in (Operator.IN, Operator.NOT_IN)


_ARITY = {
    Operator.BETWEEN: 2,
    Operator.IS_NULL: 0,
    Operator.IS_NOT_NULL: 0,
    Operator.TRUE: 0,
    Operator.FALSE: 0,
}

# Suffix keywords; longest first so "not_in" wins over "in"
_KEYWORDS: List[Tuple[str, Operator]] = sorted(
    [
        ("is", Operator.EQUALS),
        ("equals", Operator.EQUALS),
        ("not", Operator.NOT),
        ("is_not", Operator.NOT),
        ("contains", Operator.CONTAINS),
        ("containing", Operator.CONTAINS),
        ("starting_with", Operator.STARTING_WITH),
        ("starts_with", Operator.STARTING_WITH),
        ("ending_with", Operator.ENDING_WITH),
        ("ends_with", Operator.ENDING_WITH),
        ("regex", Operator.REGEX),
        ("matches", Operator.REGEX),
        ("matches_regex", Operator.REGEX),
        ("in", Operator.IN),
        ("is_in", Operator.IN),
        ("not_in", Operator.NOT_IN),
        ("is_not_in", Operator.NOT_IN),
        ("greater_than", Operator.GREATER_THAN),
        ("greater_than_equal", Operator.GREATER_THAN_EQUAL),
        ("less_than", Operator.LESS_THAN),
        ("less_than_equal", Operator.LESS_THAN_EQUAL),
        ("between", Operator.BETWEEN),
        ("is_null", Operator.IS_NULL),
        ("null", Operator.IS_NULL),
        ("is_not_null", Operator.IS_NOT_NULL),
        ("not_null", Operator.IS_NOT_NULL),
        ("true", Operator.TRUE),
        ("is_true", Operator.TRUE),
        ("false", Operator.FALSE),
        ("is_false", Operator.FALSE),
        ("near", Operator.NEAR),
        ("is_near", Operator.NEAR),
    ],
    key=lambda kw: len(kw[0]),
    reverse=True,
)

_PREFIX = re.compile(
    r"^(?P<verb>find|read|get|query|count|exists|delete|remove)"
    r"(?:_all)?"
    r"(?:_(?P<limit>first|top)(?P<n>\d*))?"
    r"_by_"
)

_VERBS = {
    "find": Subject.FIND,
    "read": Subject.FIND,
    "get": Subject.FIND,
    "query": Subject.FIND,
    "count": Subject.COUNT,
    "exists": Subject.EXISTS,
    "delete": Subject.DELETE,
    "remove": Subject.DELETE,
}

_AND = "_and_"
_OR = "_or_"
_ORDER_BY = "_order_by_"


@dataclass(frozen=True)
class Predicate:
    """One field comparison.

    Attributes:
        property: Entity property name
        operator: Comparison operator
        arg_index: Index of the first method parameter bound to it
    """

    property: str
    operator: Operator
    arg_index: int

    @property
    def arity(self) -> int:
        return self.operator.arity

    def args(self, values: Sequence[object]) -> Tuple[object, ...]:
        """Slice this predicate's operands out of the call arguments."""
        return tuple(values[self.arg_index : self.arg_index + self.arity])


@dataclass(frozen=True)
class Sort:
    """Ordering on one property."""

    property: str
    descending: bool = False


@dataclass(frozen=True)
class PartTree:
    """Parsed form of a derived method name.

    Attributes:
        subject: find / count / exists / delete
        groups: OR of AND-groups of predicates
        sort: Ordering, in priority order
        limit: Maximum results (find_first_by / find_topN_by)
    """

    subject: Subject
    groups: Tuple[Tuple[Predicate, ...], ...]
    sort: Tuple[Sort, ...] = ()
    limit: Optional[int] = None

    @property
    def predicates(self) -> Tuple[Predicate, ...]:
        return tuple(p for group in self.groups for p in group)

    @property
    def arity(self) -> int:
        return sum(p.arity for p in self.predicates)

    @property
    def is_disjunction(self) -> bool:
        return len(self.groups) > 1


def is_derivable(method_name: str) -> bool:
    """Whether the name starts with a recognised query prefix."""
    return _PREFIX.match(method_name) is not None


def subject_of(method_name: str) -> Optional[Subject]:
    """Subject implied by the method prefix, if it has one."""
    match = _PREFIX.match(method_name)
    return _VERBS[match.group("verb")] if match else None


def parse_method_name(
    method_name: str,
    property_names: Sequence[str],
    type_name: Optional[str] = None,
) -> PartTree:
    """Parse a repository method name into a PartTree.

    Args:
        method_name: Python method name
        property_names: Queryable entity property names
        type_name: Entity name for error messages

    Returns:
        PartTree

    Raises:
        ConfigurationError: If the name does not follow the grammar
    """
    match = _PREFIX.match(method_name)
    if match is None:
        raise ConfigurationError(
            f"Cannot derive a query from method name '{method_name}': "
            "expected a prefix like find_by_, count_by_, exists_by_ or delete_by_",
            type_name=type_name,
            method_name=method_name,
        )

    subject = _VERBS[match.group("verb")]
    limit: Optional[int] = None
    if match.group("limit"):
        if subject is not Subject.FIND:
            raise ConfigurationError(
                f"Result limiting is only supported on find methods: '{method_name}'",
                type_name=type_name,
                method_name=method_name,
            )
        limit = int(match.group("n")) if match.group("n") else 1
        if limit <= 0:
            raise ConfigurationError(
                f"Result limit must be positive in '{method_name}'",
                type_name=type_name,
                method_name=method_name,
            )

    rest = method_name[match.end() :]
    if not rest:
        raise ConfigurationError(
            f"Method '{method_name}' has no criteria after its prefix",
            type_name=type_name,
            method_name=method_name,
        )

    parser = _Parser(method_name, rest, property_names, type_name)
    groups, sort = parser.parse()
    return PartTree(subject=subject, groups=groups, sort=sort, limit=limit)


class _Parser:
    """Backtracking parser over the criteria part of a method name."""

    def __init__(
        self,
        method_name: str,
        text: str,
        property_names: Sequence[str],
        type_name: Optional[str],
    ) -> None:
        self.method_name = method_name
        self.text = text
        self.properties = sorted(set(property_names), key=len, reverse=True)
        self.type_name = type_name

    def parse(self) -> Tuple[Tuple[Tuple[Predicate, ...], ...], Tuple[Sort, ...]]:
        for result in self._parse_parts(0, [[]], 0):
            return result
        raise ConfigurationError(
            f"Cannot derive a query from method name '{self.method_name}': "
            f"'{self.text}' does not match properties {sorted(self.properties)}",
            type_name=self.type_name,
            method_name=self.method_name,
        )

    def _parse_parts(
        self,
        pos: int,
        groups: List[List[Predicate]],
        arg_index: int,
    ) -> Iterator[Tuple[Tuple[Tuple[Predicate, ...], ...], Tuple[Sort, ...]]]:
        for prop, after_prop in self._match_properties(pos):
            for operator, after_op in self._match_operators(after_prop):
                predicate = Predicate(prop, operator, arg_index)
                current = [list(g) for g in groups]
                current[-1].append(predicate)
                next_arg = arg_index + operator.arity

                if after_op == len(self.text):
                    yield _freeze(current), ()
                elif self.text.startswith(_AND, after_op):
                    yield from self._parse_parts(after_op + len(_AND), current, next_arg)
                elif self.text.startswith(_OR, after_op):
                    yield from self._parse_parts(after_op + len(_OR), current + [[]], next_arg)
                elif self.text.startswith(_ORDER_BY, after_op):
                    sort = self._parse_sort(after_op + len(_ORDER_BY))
                    if sort is not None:
                        yield _freeze(current), sort

    def _match_properties(self, pos: int) -> Iterator[Tuple[str, int]]:
        for name in self.properties:
            end = pos + len(name)
            if self.text.startswith(name, pos) and (end == len(self.text) or self.text[end] == "_"):
                yield name, end

    def _match_operators(self, pos: int) -> Iterator[Tuple[Operator, int]]:
        for keyword, operator in _KEYWORDS:
            token = "_" + keyword
            end = pos + len(token)
            if self.text.startswith(token, pos) and self._at_boundary(end):
                yield operator, end
        if self._at_boundary(pos):
            yield Operator.EQUALS, pos

    def _at_boundary(self, pos: int) -> bool:
        return (
            pos == len(self.text)
            or self.text.startswith(_AND, pos)
            or self.text.startswith(_OR, pos)
            or self.text.startswith(_ORDER_BY, pos)
        )

    def _parse_sort(self, pos: int) -> Optional[Tuple[Sort, ...]]:
        orders: List[Sort] = []
        while True:
            matched = False
            for prop, end in self._match_properties(pos):
                descending = False
                if self.text.startswith("_desc", end):
                    descending, end = True, end + len("_desc")
                elif self.text.startswith("_asc", end):
                    end += len("_asc")
                if end == len(self.text):
                    orders.append(Sort(prop, descending))
                    return tuple(orders)
                if self.text.startswith(_AND, end):
                    orders.append(Sort(prop, descending))
                    pos = end + len(_AND)
                    matched = True
                    break
            if not matched:
                return None


def _freeze(groups: List[List[Predicate]]) -> Tuple[Tuple[Predicate, ...], ...]:
    return tuple(tuple(g) for g in groups)
