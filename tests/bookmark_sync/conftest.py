"""Fixtures for sync client tests."""
import pytest

from tests.bookmark_sync.fakes import FakeBookmarkStore


@pytest.fixture
def store() -> FakeBookmarkStore:
    """A store signed in as alice with no rows."""
    return FakeBookmarkStore()
