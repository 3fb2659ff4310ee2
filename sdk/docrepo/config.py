"""
Configuration for docrepo repositories.

Uses pydantic-settings for environment variable loading, so deployments
can rebind views or relax view consistency without code changes:

    DOCREPO_DEFAULT_STALE=ok
    DOCREPO_VIEW_BINDINGS='{"UserRepository.find_all": "user/all"}'
"""

from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from .mapping import DEFAULT_TYPE_KEY
from .query.plan import ViewBinding
from .store import Stale


class RepositorySettings(BaseSettings):
    """Repository configuration loaded from environment."""

    # Document field naming the entity collection
    type_key: str = Field(default=DEFAULT_TYPE_KEY, description="Document field holding the collection name")

    # View consistency when a binding does not set one
    default_stale: str = Field(default=Stale.FALSE.value, description="View consistency: false, ok or update_after")
    default_view_limit: Optional[int] = Field(default=None, description="Row limit for unbounded view queries")

    # "<RepositoryClass>.<method>" -> "design_doc/view_name[?stale=ok&limit=N&reduce=true]"
    view_bindings: Dict[str, str] = Field(default_factory=dict, description="Method to view bindings")

    model_config = {"env_prefix": "DOCREPO_"}

    @field_validator("default_stale")
    @classmethod
    def _check_stale(cls, value: str) -> str:
        return Stale.from_str(value).value

    @field_validator("type_key")
    @classmethod
    def _check_type_key(cls, value: str) -> str:
        if not value.isidentifier():
            raise ValueError(f"type_key must be a plain field name, got '{value}'")
        return value

    @property
    def stale(self) -> Stale:
        """Default view consistency as a Stale value."""
        return Stale.from_str(self.default_stale)

    def binding_for(self, repository_name: str, method_name: str) -> Optional[ViewBinding]:
        """View binding configured for a repository method, if any."""
        value = self.view_bindings.get(f"{repository_name}.{method_name}")
        return ViewBinding.parse(value) if value else None
