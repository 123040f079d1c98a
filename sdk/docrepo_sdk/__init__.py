"""
docrepo Python SDK - Typed document repository over Azure Cosmos DB.

This SDK provides a typed client layer over a partitioned document store:
- DocumentEntity envelope (type tag, soft delete, audit timestamps)
- DocumentRepository for CRUD, queries, streaming and bulk writes
- BulkOperationEngine for bounded-concurrency fan-out
- Pluggable stores (Cosmos DB, in-memory)

Example:
    >>> from pydantic import BaseModel
    >>> from sdk.docrepo_sdk import DocumentRepository, RepositorySettings
    >>>
    >>> class Provider(BaseModel):
    ...     id: str
    ...     name: str
    >>>
    >>> settings = RepositorySettings.from_env()
    >>> async with DocumentRepository(settings) as repo:
    ...     await repo.upsert(Provider, Provider(id="p1", name="Acme"))
    ...     providers = await repo.query_sql(Provider, "SELECT * FROM c")

Invariants:
    - A document's type never changes after its first write
    - Soft-deleted documents are hidden from default reads
    - Bulk calls report every failed item, never only the first

Version: 1.0.0
"""

__version__ = "1.0.0"

from .bulk import BulkItemOutcome, BulkItemState, BulkOperationEngine, BulkResult
from .config import ObservabilityConfig, RepositorySettings, StoreBackend
from .envelope import DocumentEntity, document_type_for
from .errors import (
    AggregateOperationError,
    ConflictError,
    ConsistencyError,
    DocRepoError,
    NotFoundError,
    OperationCancelledError,
    ProvisioningError,
    StoreConnectionError,
    StoreError,
    TypeMismatchError,
    ValidationError,
)
from .logs import setup_logging
from .query import DocumentQuery, QueryBuilder
from .repository import DocumentRepository
from .session import CollectionSession
from .store import (
    CollectionRef,
    CosmosDocumentStore,
    InMemoryDocumentStore,
    QueryOptions,
    QuerySpec,
)
from .streaming import stream_batches

__all__ = [
    # Version
    "__version__",
    # Envelope
    "DocumentEntity",
    "document_type_for",
    # Configuration
    "RepositorySettings",
    "ObservabilityConfig",
    "StoreBackend",
    "setup_logging",
    # Repository
    "DocumentRepository",
    "CollectionSession",
    "QueryBuilder",
    "DocumentQuery",
    "stream_batches",
    # Bulk
    "BulkOperationEngine",
    "BulkResult",
    "BulkItemOutcome",
    "BulkItemState",
    # Stores
    "CollectionRef",
    "QuerySpec",
    "QueryOptions",
    "CosmosDocumentStore",
    "InMemoryDocumentStore",
    # Errors
    "DocRepoError",
    "NotFoundError",
    "TypeMismatchError",
    "ProvisioningError",
    "ConsistencyError",
    "AggregateOperationError",
    "OperationCancelledError",
    "ValidationError",
    "ConflictError",
    "StoreError",
    "StoreConnectionError",
]
