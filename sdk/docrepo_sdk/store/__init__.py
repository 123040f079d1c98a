"""
Document store abstraction for docrepo.

This module provides a pluggable store interface supporting:
- Azure Cosmos DB SQL API (production)
- In-memory (for testing)

Invariants:
    - Point operations address one document by id and partition key
    - Queries are paged; cursors are single-pass
    - Driver errors surface as docrepo errors

How to change safely:
    - New backends must implement the DocumentStore protocol
    - Keep the in-memory backend's behaviour aligned with the real store
"""

from .base import (
    CollectionInfo,
    CollectionRef,
    DocumentStore,
    JsonValue,
    QueryCursor,
    QueryOptions,
    QuerySpec,
    create_document_store,
    resolve_path,
)
from .cosmos import CosmosDocumentStore
from .memory import InMemoryDocumentStore

__all__ = [
    # Protocol and types
    "DocumentStore",
    "QueryCursor",
    "CollectionRef",
    "CollectionInfo",
    "QuerySpec",
    "QueryOptions",
    "JsonValue",
    "resolve_path",
    # Factory
    "create_document_store",
    # Implementations
    "CosmosDocumentStore",
    "InMemoryDocumentStore",
]
