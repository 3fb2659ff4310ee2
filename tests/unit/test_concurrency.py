"""
Unit tests for the concurrency controller.

Tests cover:
- Unconditional writes for new entities
- Conditional writes for versioned entities
- Conflict translation and error kinds
"""

from dataclasses import dataclass
from unittest.mock import MagicMock

import pytest

from docrepo.concurrency import ConcurrencyController
from docrepo.errors import (
    CasMismatchError,
    ErrorKind,
    InvalidEntityError,
    OptimisticLockingError,
    StoreUnavailableError,
)
from docrepo.mapping import EntityMapper, describe, id_field, version_field
from docrepo.store import DocumentStore


@dataclass
class VersionedData:
    key: str = id_field()
    data: str = ""
    version: int = version_field()


@dataclass
class Note:
    id: str
    text: str = ""


class TestConcurrencyController:
    """Tests for ConcurrencyController."""

    @pytest.fixture
    def store(self):
        return MagicMock(spec=DocumentStore)

    @pytest.fixture
    def controller(self, store):
        return ConcurrencyController(store, EntityMapper(describe(VersionedData)))

    def test_prepare_new_entity(self, controller):
        """Version 0 means an unconditional write."""
        request = controller.prepare_write(VersionedData("k", "ABCD"))

        assert request.doc_id == "k"
        assert request.fields == {"_class": "versioneddata", "data": "ABCD"}
        assert request.expected_version is None
        assert not request.is_conditional

    def test_prepare_versioned_entity(self, controller):
        """A set version becomes the write precondition."""
        request = controller.prepare_write(VersionedData("k", "ABCD", version=9))

        assert request.expected_version == 9
        assert request.is_conditional

    def test_unversioned_entity_is_unconditional(self, store):
        controller = ConcurrencyController(store, EntityMapper(describe(Note)))

        request = controller.prepare_write(Note("n-1", "hi"))

        assert request.expected_version is None

    def test_empty_id_rejected(self, controller, store):
        """An empty identifier fails before any store call."""
        with pytest.raises(InvalidEntityError) as exc_info:
            controller.save(VersionedData("", "x"))

        assert exc_info.value.kind is ErrorKind.INVALID_ENTITY
        store.upsert.assert_not_called()

    def test_save_stamps_version(self, controller, store):
        """The store's new version is written back onto the entity."""
        store.upsert.return_value = 42
        entity = VersionedData("k", "ABCD")

        result = controller.save(entity)

        assert result is entity
        assert entity.version == 42
        store.upsert.assert_called_once_with("k", {"_class": "versioneddata", "data": "ABCD"}, expected_version=None)

    def test_conflict_becomes_optimistic_locking_error(self, controller, store):
        """CAS mismatch surfaces as a concurrency conflict with the store error as cause."""
        mismatch = CasMismatchError("k", 5, 6)
        store.upsert.side_effect = mismatch
        entity = VersionedData("k", "ZZZZ", version=5)

        with pytest.raises(OptimisticLockingError) as exc_info:
            controller.save(entity)

        error = exc_info.value
        assert error.kind is ErrorKind.CONCURRENCY_CONFLICT
        assert error.cause is mismatch
        assert error.__cause__ is mismatch
        assert error.expected_version == 5
        assert entity.version == 5

    def test_io_failure_propagates(self, controller, store):
        """Store I/O errors are not reported as conflicts."""
        store.upsert.side_effect = StoreUnavailableError("down", operation="upsert")

        with pytest.raises(StoreUnavailableError) as exc_info:
            controller.save(VersionedData("k", "x", version=1))

        assert exc_info.value.kind is ErrorKind.STORE_IO
