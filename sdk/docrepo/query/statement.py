"""
Declarative statement builder.

Renders a PartTree into the document store's declarative dialect: SQLite
SQL over the ``documents(id, version, body)`` table, with document fields
read through ``json_extract`` and a ``REGEXP`` function available.

Every statement projects the three columns the executor needs:

    _ID   document identifier
    _CAS  document version
    _DOC  JSON body

Parameter values are always bound by the driver; field paths come from
the entity descriptor and are validated identifiers.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..errors import CAS_PROJECTION, ID_PROJECTION, UnsupportedOperatorError
from ..mapping import to_stored
from .parser import Operator, PartTree, Predicate, Subject

DOC_PROJECTION = "_DOC"
TABLE_ALIAS = "d"
ID_COLUMN = f"{TABLE_ALIAS}.id"
VERSION_COLUMN = f"{TABLE_ALIAS}.version"
BODY_COLUMN = f"{TABLE_ALIAS}.body"
COLLECTION_PARAM = "__collection"

SELECT_ENTITY = (
    f"SELECT {ID_COLUMN} AS {ID_PROJECTION}, {VERSION_COLUMN} AS {CAS_PROJECTION}, "
    f"{BODY_COLUMN} AS {DOC_PROJECTION} FROM documents {TABLE_ALIAS}"
)
SELECT_COUNT = f"SELECT COUNT(*) AS count FROM documents {TABLE_ALIAS}"

DECLARATIVE_MODE = "declarative query"
INLINE_DECLARATIVE_MODE = "explicit inline declarative query"


@dataclass(frozen=True)
class Statement:
    """A statement ready for query_declarative().

    Attributes:
        text: Statement text with named placeholders
        params: Bound parameter values
    """

    text: str
    params: Dict[str, Any] = field(default_factory=dict)


def field_path(name: str) -> str:
    """Expression reading a top-level document field."""
    return f"json_extract({BODY_COLUMN}, '$.{name}')"


def type_filter(type_key: str) -> str:
    """Condition restricting rows to one collection."""
    return f"{field_path(type_key)} = :{COLLECTION_PARAM}"


def column_for(name: str, id_property: str, version_property: Optional[str]) -> str:
    """Map an entity property to its column expression."""
    if name == id_property:
        return ID_COLUMN
    if version_property is not None and name == version_property:
        return VERSION_COLUMN
    return field_path(name)


def bind_value(value: Any) -> Any:
    """Convert a Python value to a driver-bindable value.

    Values take the form EntityMapper stores them in. Arrays and objects
    are bound as compact JSON text, the form json_extract() returns them in.
    """
    stored = to_stored(value)
    if isinstance(stored, (list, dict)):
        return json.dumps(stored, separators=(",", ":"))
    return stored


class StatementBuilder:
    """Builds declarative statements for derived queries.

    Attributes:
        collection: Collection the statement is restricted to
        type_key: Document field holding the collection name
        id_property: Entity identifier property
        version_property: Entity version property, if any
    """

    def __init__(
        self,
        collection: str,
        type_key: str,
        id_property: str,
        version_property: Optional[str] = None,
    ) -> None:
        self.collection = collection
        self.type_key = type_key
        self.id_property = id_property
        self.version_property = version_property

    def select_all(self, count: bool = False) -> Statement:
        """Statement over the whole collection, without predicates."""
        head = SELECT_COUNT if count else SELECT_ENTITY
        return Statement(
            text=f"{head} WHERE {type_filter(self.type_key)}",
            params={COLLECTION_PARAM: self.collection},
        )

    def build(
        self,
        tree: PartTree,
        args: Sequence[Any],
        method_name: Optional[str] = None,
    ) -> Statement:
        """Render a PartTree with call arguments.

        Raises:
            UnsupportedOperatorError: If a predicate uses NEAR
        """
        params: Dict[str, Any] = {COLLECTION_PARAM: self.collection}
        group_sql: List[str] = []
        for group in tree.groups:
            conditions = [self._condition(p, args, params, method_name) for p in group]
            group_sql.append(" AND ".join(conditions))

        if len(group_sql) == 1:
            where = group_sql[0]
        else:
            where = " OR ".join(f"({g})" for g in group_sql)

        counting = tree.subject in (Subject.COUNT, Subject.EXISTS)
        head = SELECT_COUNT if counting else SELECT_ENTITY
        text = f"{head} WHERE {type_filter(self.type_key)} AND ({where})"

        if tree.sort and not counting:
            orders = ", ".join(
                f"{self._column(s.property)} {'DESC' if s.descending else 'ASC'}" for s in tree.sort
            )
            text += f" ORDER BY {orders}"
        if tree.limit is not None and not counting:
            text += f" LIMIT {int(tree.limit)}"

        return Statement(text=text, params=params)

    def _column(self, name: str) -> str:
        return column_for(name, self.id_property, self.version_property)

    def _condition(
        self,
        predicate: Predicate,
        args: Sequence[Any],
        params: Dict[str, Any],
        method_name: Optional[str],
    ) -> str:
        column = self._column(predicate.property)
        operands = predicate.args(args)
        names = []
        for offset, value in enumerate(operands):
            name = f"arg{predicate.arg_index + offset}"
            params[name] = bind_value(value)
            names.append(f":{name}")

        op = predicate.operator
        if op is Operator.EQUALS:
            return f"{column} = {names[0]}"
        if op is Operator.NOT:
            return f"{column} != {names[0]}"
        if op is Operator.CONTAINS:
            return f"instr({column}, {names[0]}) > 0"
        if op is Operator.STARTING_WITH:
            return f"substr({column}, 1, length({names[0]})) = {names[0]}"
        if op is Operator.ENDING_WITH:
            return f"substr({column}, -length({names[0]})) = {names[0]}"
        if op is Operator.REGEX:
            return f"{column} REGEXP {names[0]}"
        if op is Operator.IN:
            return f"{column} IN (SELECT value FROM json_each({names[0]}))"
        if op is Operator.NOT_IN:
            return f"{column} NOT IN (SELECT value FROM json_each({names[0]}))"
        if op is Operator.GREATER_THAN:
            return f"{column} > {names[0]}"
        if op is Operator.GREATER_THAN_EQUAL:
            return f"{column} >= {names[0]}"
        if op is Operator.LESS_THAN:
            return f"{column} < {names[0]}"
        if op is Operator.LESS_THAN_EQUAL:
            return f"{column} <= {names[0]}"
        if op is Operator.BETWEEN:
            return f"{column} BETWEEN {names[0]} AND {names[1]}"
        if op is Operator.IS_NULL:
            return f"{column} IS NULL"
        if op is Operator.IS_NOT_NULL:
            return f"{column} IS NOT NULL"
        if op is Operator.TRUE:
            return f"{column} = 1"
        if op is Operator.FALSE:
            return f"{column} = 0"
        raise UnsupportedOperatorError(
            op.value,
            predicate.property,
            INLINE_DECLARATIVE_MODE,
            method_name=method_name,
        )


def macro_expansions(type_key: str) -> Mapping[str, str]:
    """Text for the entity macros usable in inline query templates."""
    return {
        "select_entity": SELECT_ENTITY,
        "count_entity": SELECT_COUNT,
        "type_filter": type_filter(type_key),
        "collection": f":{COLLECTION_PARAM}",
        "id": ID_COLUMN,
        "version": VERSION_COLUMN,
        "body": BODY_COLUMN,
    }
