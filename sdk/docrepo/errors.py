"""
Error types for docrepo.

This module defines all exception types raised by the repository layer:
- DocRepoError: Base exception
- ConfigurationError: Malformed entity type or repository method
- UnsupportedOperatorError: Derived predicate has no backend support
- QueryExecutionError: Store rejected a statement or a row is incomplete
- OptimisticLockingError: A conditional write lost a version race
- InvalidEntityError: Entity cannot be written as-is
- StoreError and subclasses: Raised by store clients

Every error carries an ErrorKind discriminant in ``kind`` so callers can
branch on it directly:

    >>> try:
    ...     repo.save(entity)
    ... except DocRepoError as e:
    ...     if e.kind is ErrorKind.CONCURRENCY_CONFLICT:
    ...         reload_and_retry()
    ...     else:
    ...         raise

Invariants:
    - All errors inherit from DocRepoError
    - Errors include context for debugging in ``details``
    - Not-found is never an error
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, Optional

# Projections every declarative result row must carry.
ID_PROJECTION = "_ID"
CAS_PROJECTION = "_CAS"


class ErrorKind(Enum):
    """Discriminant for every error raised by docrepo."""

    CONFIGURATION = "CONFIGURATION"
    UNSUPPORTED_OPERATOR = "UNSUPPORTED_OPERATOR"
    QUERY_EXECUTION = "QUERY_EXECUTION"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    INVALID_ENTITY = "INVALID_ENTITY"
    STORE_CONFLICT = "STORE_CONFLICT"
    STORE_IO = "STORE_IO"


class DocRepoError(Exception):
    """Base exception for all docrepo errors.

    Attributes:
        message: Error message
        kind: Error kind for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.details = details or {}


class ConfigurationError(DocRepoError):
    """Repository or entity configuration is invalid.

    Raised at repository construction when:
    - Entity type has a missing or duplicate identifier/version field
    - A method name cannot be parsed into a query
    - Parameter count does not match the derived predicates
    - A method has an ambiguous view binding
    """

    def __init__(
        self,
        message: str,
        type_name: Optional[str] = None,
        method_name: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            ErrorKind.CONFIGURATION,
            details={"type_name": type_name, "method_name": method_name},
        )
        self.type_name = type_name
        self.method_name = method_name


class UnsupportedOperatorError(DocRepoError):
    """Derived predicate uses an operator the execution path cannot run.

    Raised at call time, before any store request is made.
    """

    def __init__(
        self,
        operator: str,
        field_name: str,
        required_mode: str,
        method_name: Optional[str] = None,
    ) -> None:
        msg = (
            f"Operator '{operator}' on field '{field_name}' is not supported by this "
            f"execution path: {required_mode} required"
        )
        if method_name:
            msg += f" (method '{method_name}')"
        super().__init__(
            msg,
            ErrorKind.UNSUPPORTED_OPERATOR,
            details={
                "operator": operator,
                "field": field_name,
                "required_mode": required_mode,
                "method_name": method_name,
            },
        )
        self.operator = operator
        self.field_name = field_name
        self.required_mode = required_mode
        self.method_name = method_name


class QueryExecutionError(DocRepoError):
    """Query could not be executed or its result could not be mapped.

    Raised when:
    - The store rejects a malformed statement
    - A result row lacks the identifier or version projection
    """

    def __init__(
        self,
        message: str,
        statement: Optional[str] = None,
        missing: Optional[Iterable[str]] = None,
    ) -> None:
        missing_list = list(missing or [])
        super().__init__(
            message,
            ErrorKind.QUERY_EXECUTION,
            details={"statement": statement, "missing": missing_list},
        )
        self.statement = statement
        self.missing = missing_list

    @classmethod
    def missing_projections(cls, statement: Optional[str], row_keys: Iterable[str]) -> QueryExecutionError:
        """Build the error for a row without identifier and version metadata."""
        keys = set(row_keys)
        missing = [p for p in (ID_PROJECTION, CAS_PROJECTION) if p not in keys]
        return cls(
            f"Unable to retrieve enough metadata for entity reconstruction: "
            f"result rows must project both {ID_PROJECTION} and {CAS_PROJECTION} "
            f"(missing: {', '.join(missing)})",
            statement=statement,
            missing=missing,
        )


class OptimisticLockingError(DocRepoError):
    """Conditional write rejected because the stored version moved on.

    The underlying store-level mismatch is available both as ``cause`` and
    as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        doc_id: str,
        expected_version: int,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message,
            ErrorKind.CONCURRENCY_CONFLICT,
            details={"doc_id": doc_id, "expected_version": expected_version},
        )
        self.doc_id = doc_id
        self.expected_version = expected_version
        self.cause = cause


class InvalidEntityError(DocRepoError):
    """Entity cannot be persisted (for example an empty identifier)."""

    def __init__(self, message: str, type_name: Optional[str] = None) -> None:
        super().__init__(
            message,
            ErrorKind.INVALID_ENTITY,
            details={"type_name": type_name},
        )
        self.type_name = type_name


class StoreError(DocRepoError):
    """Base for errors raised by document store clients."""

    pass


class CasMismatchError(StoreError):
    """Store-level compare-and-swap failure.

    Raised when:
    - The supplied version does not match the stored version
    - A conditional write targets a document that no longer exists
    """

    def __init__(
        self,
        doc_id: str,
        expected_version: int,
        actual_version: Optional[int] = None,
    ) -> None:
        super().__init__(
            f"CAS mismatch for document '{doc_id}': expected {expected_version}, "
            f"found {actual_version if actual_version is not None else 'no document'}",
            ErrorKind.STORE_CONFLICT,
            details={
                "doc_id": doc_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.doc_id = doc_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class StoreUnavailableError(StoreError):
    """Store could not be reached or failed to complete an I/O request."""

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        super().__init__(
            message,
            ErrorKind.STORE_IO,
            details={"operation": operation},
        )
        self.operation = operation


class StatementError(StoreError):
    """Store rejected a declarative statement."""

    def __init__(self, message: str, statement: Optional[str] = None) -> None:
        super().__init__(
            message,
            ErrorKind.QUERY_EXECUTION,
            details={"statement": statement},
        )
        self.statement = statement
