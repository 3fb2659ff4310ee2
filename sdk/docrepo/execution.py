"""
Execution adapters for query plans.

Two interchangeable strategies turn a QueryPlan plus call arguments into
a store request and parse the response into Documents:

- DeclarativeQueryExecutor: runs a derived or inline statement through
  DocumentStore.query_declarative()
- ViewQueryExecutor: runs a key lookup against a stored view through
  DocumentStore.query_view()

Invariants:
    - Adapters never retry and never swallow store errors
    - Declarative rows must project _ID and _CAS or mapping fails
    - The plan's unsupported-operator check runs before any store request
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import CAS_PROJECTION, ID_PROJECTION, QueryExecutionError, StatementError
from .mapping import to_stored
from .query.parser import Operator, Subject
from .query.plan import QueryPlan, ResultShape
from .query.statement import DOC_PROJECTION, Statement, StatementBuilder
from .store import Document, DocumentStore, Stale, ViewQuery, ViewRow

logger = logging.getLogger(__name__)


class DeclarativeQueryExecutor:
    """Runs plans through the store's declarative query language.

    Attributes:
        store: Store client
        builder: Statement builder for the entity collection
    """

    def __init__(self, store: DocumentStore, builder: StatementBuilder) -> None:
        self.store = store
        self.builder = builder

    def statement_for(self, plan: QueryPlan, args: Sequence[Any]) -> Statement:
        """Render the statement a plan runs for one set of arguments."""
        plan.ensure_supported()
        if plan.template is not None:
            return Statement(text=plan.template.text, params=plan.template.bind(args))
        if plan.tree is not None:
            return self.builder.build(plan.tree, args, method_name=plan.method_name)
        return self.builder.select_all(count=plan.shape is ResultShape.COUNT)

    def run(self, statement: Statement) -> List[Dict[str, Any]]:
        """Run a statement and return its raw rows.

        Raises:
            QueryExecutionError: If the store rejects the statement
        """
        logger.debug("Running declarative statement", extra={"statement": statement.text})
        try:
            return self.store.query_declarative(statement.text, statement.params)
        except StatementError as e:
            raise QueryExecutionError(
                f"Declarative statement failed: {e.message}",
                statement=statement.text,
            ) from e

    def find(self, plan: QueryPlan, args: Sequence[Any]) -> List[Document]:
        """Run a plan and map its rows to documents."""
        statement = self.statement_for(plan, args)
        rows = self.run(statement)
        return [row_to_document(row, statement.text) for row in rows]

    def count(self, plan: QueryPlan, args: Sequence[Any]) -> int:
        """Run a counting plan; the first column of the first row is the count."""
        if plan.tree is not None and plan.tree.subject not in (Subject.COUNT, Subject.EXISTS):
            # find_by_... declared to return int
            return len(self.find(plan, args))
        statement = self.statement_for(plan, args)
        rows = self.run(statement)
        if not rows:
            return 0
        value = next(iter(rows[0].values()), 0)
        try:
            return int(value or 0)
        except (TypeError, ValueError) as e:
            raise QueryExecutionError(
                f"Counting statement returned a non-numeric value: {value!r}",
                statement=statement.text,
            ) from e

    def exists(self, plan: QueryPlan, args: Sequence[Any]) -> bool:
        """Run a plan and report whether anything matched."""
        if plan.template is None:
            return self.count(plan, args) > 0

        statement = self.statement_for(plan, args)
        rows = self.run(statement)
        if not rows:
            return False
        first = rows[0]
        # A single numeric column is read as a count
        if len(first) == 1:
            value = next(iter(first.values()))
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return value > 0
        return True


def row_to_document(row: Mapping[str, Any], statement: Optional[str] = None) -> Document:
    """Rebuild a Document from one declarative result row.

    Fields come from the ``_DOC`` JSON column when present, otherwise from
    the row's remaining columns.

    Raises:
        QueryExecutionError: If _ID or _CAS is missing
    """
    if ID_PROJECTION not in row or CAS_PROJECTION not in row:
        raise QueryExecutionError.missing_projections(statement, row.keys())

    if DOC_PROJECTION in row:
        body = row[DOC_PROJECTION]
        if isinstance(body, (str, bytes)):
            try:
                body = json.loads(body)
            except json.JSONDecodeError as e:
                raise QueryExecutionError(
                    f"Column {DOC_PROJECTION} does not hold a JSON document: {e}",
                    statement=statement,
                ) from e
        fields = dict(body or {})
    else:
        fields = {k: v for k, v in row.items() if k not in (ID_PROJECTION, CAS_PROJECTION)}

    return Document(id=str(row[ID_PROJECTION]), fields=fields, version=int(row[CAS_PROJECTION] or 0))


class ViewQueryExecutor:
    """Runs plans against stored views.

    Attributes:
        store: Store client
        default_stale: Consistency level when the binding does not set one
        default_limit: Row limit when neither binding nor method sets one
    """

    def __init__(
        self,
        store: DocumentStore,
        default_stale: Stale = Stale.FALSE,
        default_limit: Optional[int] = None,
    ) -> None:
        self.store = store
        self.default_stale = default_stale
        self.default_limit = default_limit

    def view_query(self, plan: QueryPlan, args: Sequence[Any]) -> ViewQuery:
        """Build the ViewQuery for one invocation.

        Raises:
            UnsupportedOperatorError: If the predicate has no key mapping
        """
        plan.ensure_supported()
        binding = plan.view
        if binding is None:
            raise ValueError(f"Plan for '{plan.method_name}' is not bound to a view")

        keys: Dict[str, Any] = {}
        if plan.tree is not None and plan.tree.predicates:
            predicate = plan.tree.predicates[0]
            operands = [to_stored(value) for value in predicate.args(args)]
            op = predicate.operator
            if op is Operator.EQUALS:
                keys["key"] = operands[0]
            elif op is Operator.IN:
                keys["keys"] = list(operands[0])
            elif op is Operator.BETWEEN:
                keys["startkey"], keys["endkey"] = operands
            elif op is Operator.GREATER_THAN_EQUAL:
                keys["startkey"] = operands[0]
            elif op is Operator.LESS_THAN_EQUAL:
                keys["endkey"] = operands[0]

        limits = [n for n in (plan.limit, binding.limit, self.default_limit) if n is not None]
        counting = plan.shape in (ResultShape.COUNT, ResultShape.EXISTS)
        return ViewQuery(
            design_doc=binding.design_doc,
            view_name=binding.view_name,
            stale=binding.stale or self.default_stale,
            limit=min(limits) if limits else None,
            include_docs=not (counting or binding.reduce),
            reduce=binding.reduce,
            **keys,
        )

    def rows(self, plan: QueryPlan, args: Sequence[Any]) -> List[ViewRow]:
        """Run the view query for one invocation.

        Raises:
            QueryExecutionError: If the store rejects the view query
        """
        query = self.view_query(plan, args)
        logger.debug(
            "Querying view",
            extra={"view": query.name, "stale": query.stale.value, "limit": query.limit},
        )
        try:
            return self.store.query_view(query)
        except StatementError as e:
            raise QueryExecutionError(
                f"View query failed: {e.message}",
                statement=query.name,
            ) from e

    def find(self, plan: QueryPlan, args: Sequence[Any]) -> List[Document]:
        """Run a plan and return the current document of every row."""
        documents = []
        for row in self.rows(plan, args):
            if row.document is None:
                logger.warning(
                    "Skipping view row without a current document",
                    extra={"view": plan.view.name if plan.view else None, "doc_id": row.id},
                )
                continue
            documents.append(row.document)
        return documents

    def count(self, plan: QueryPlan, args: Sequence[Any]) -> int:
        """Count matching rows, or read the reduce value for reduce views."""
        rows = self.rows(plan, args)
        if plan.view is not None and plan.view.reduce:
            return int(rows[0].value or 0) if rows else 0
        return len(rows)

    def exists(self, plan: QueryPlan, args: Sequence[Any]) -> bool:
        return self.count(plan, args) > 0
