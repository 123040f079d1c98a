"""
Repository fixtures backed by the in-memory store.
"""

import pytest

from sdk.docrepo_sdk.config import RepositorySettings, StoreBackend
from sdk.docrepo_sdk.repository import DocumentRepository
from sdk.docrepo_sdk.store.memory import InMemoryDocumentStore


@pytest.fixture
def store():
    """Fresh in-memory store."""
    return InMemoryDocumentStore()


@pytest.fixture
def settings():
    return RepositorySettings(
        database_name="calcs",
        collection_name="providers",
        backend=StoreBackend.MEMORY,
        items_per_page=100,
    )


@pytest.fixture
def repo(settings, store):
    """Repository over an unpartitioned collection."""
    return DocumentRepository(settings, store=store)


@pytest.fixture
def partitioned_repo(store):
    """Repository over a collection partitioned by content.region."""
    settings = RepositorySettings(
        database_name="calcs",
        collection_name="regional",
        partition_key="/content/region",
        backend=StoreBackend.MEMORY,
    )
    return DocumentRepository(settings, store=store)
