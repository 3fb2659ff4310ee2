"""
docrepo - Typed repositories over a schemaless document store.

This library lets application code declare data-access interfaces and
have them implemented against any DocumentStore:
- Entity markers (id_field, version_field, transient_field, document)
- DocumentRepository base class with CRUD
- Derived query methods (find_by_..., count_by_..., exists_by_..., delete_by_...)
- Inline declarative queries (@query) and view bindings (@view)
- Optimistic locking on versioned entities

Example:
    >>> from docrepo import DocumentRepository, RepositoryFactory, document, id_field, version_field
    >>>
    >>> @document(collection="user")
    ... @dataclass
    ... class User:
    ...     key: str = id_field()
    ...     username: str = ""
    ...     version: int = version_field()
    >>>
    >>> class UserRepository(DocumentRepository[User, str]):
    ...     def find_by_username(self, username: str) -> Optional[User]: ...
    >>>
    >>> users = RepositoryFactory(store).get_repository(UserRepository)
    >>> users.save(User("u-1", "ada"))
    >>> users.find_by_username("ada")

Invariants:
    - Malformed entities and methods fail when the repository is built
    - Every error carries an ErrorKind in ``kind``
    - No internal retries; conflicts surface to the caller

Version: 1.0.0
"""

__version__ = "1.0.0"

from .concurrency import ConcurrencyController, WriteRequest
from .config import RepositorySettings
from .decorators import query, view
from .errors import (
    CAS_PROJECTION,
    ID_PROJECTION,
    CasMismatchError,
    ConfigurationError,
    DocRepoError,
    ErrorKind,
    InvalidEntityError,
    OptimisticLockingError,
    QueryExecutionError,
    StatementError,
    StoreError,
    StoreUnavailableError,
    UnsupportedOperatorError,
)
from .factory import RepositoryFactory
from .mapping import (
    EntityDescriptor,
    EntityMapper,
    describe,
    document,
    id_field,
    transient_field,
    version_field,
)
from .repository import DocumentRepository
from .store import Document, DocumentStore, Stale, ViewQuery, ViewRow

__all__ = [
    # Version
    "__version__",
    # Entities
    "document",
    "id_field",
    "version_field",
    "transient_field",
    "describe",
    "EntityDescriptor",
    "EntityMapper",
    # Repositories
    "DocumentRepository",
    "RepositoryFactory",
    "RepositorySettings",
    "query",
    "view",
    "ConcurrencyController",
    "WriteRequest",
    # Store protocol
    "DocumentStore",
    "Document",
    "Stale",
    "ViewQuery",
    "ViewRow",
    # Errors
    "DocRepoError",
    "ErrorKind",
    "ConfigurationError",
    "UnsupportedOperatorError",
    "QueryExecutionError",
    "OptimisticLockingError",
    "InvalidEntityError",
    "StoreError",
    "CasMismatchError",
    "StoreUnavailableError",
    "StatementError",
    "ID_PROJECTION",
    "CAS_PROJECTION",
]
