"""
Method decorators for repository interfaces.

- query(): attach an inline declarative statement to a method
- view(): bind a method to a stored view

Example:
    >>> class UserRepository(DocumentRepository[User, str]):
    ...     @query("#{select_entity} WHERE #{type_filter} AND json_extract(d.body, '$.username') = $username")
    ...     def find_by_login(self, username: str) -> Optional[User]: ...
    ...
    ...     @view("user", "all")
    ...     def find_all(self) -> list[User]: ...
"""

from __future__ import annotations

from typing import Any, Callable, Optional, TypeVar

from .query.plan import QUERY_ATTR, VIEW_ATTR, ViewBinding
from .store import Stale

F = TypeVar("F", bound=Callable[..., Any])


def query(statement: str) -> Callable[[F], F]:
    """Attach an inline declarative statement to a repository method."""

    def decorate(func: F) -> F:
        setattr(func, QUERY_ATTR, statement)
        return func

    return decorate


def view(
    design_doc: str,
    view_name: str,
    *,
    stale: Optional[Stale] = None,
    limit: Optional[int] = None,
    reduce: bool = False,
) -> Callable[[F], F]:
    """Bind a repository method to a stored view.

    Args:
        design_doc: Design document holding the view
        view_name: View name
        stale: Consistency level (defaults to the repository settings)
        limit: Maximum rows
        reduce: Whether the view is queried through its reduce function
    """
    binding = ViewBinding(design_doc, view_name, stale=stale, limit=limit, reduce=reduce)

    def decorate(func: F) -> F:
        setattr(func, VIEW_ATTR, binding)
        return func

    return decorate
