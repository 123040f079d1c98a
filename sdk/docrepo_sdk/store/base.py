"""
Base protocol and types for the document store abstraction.

This module defines the DocumentStore protocol that all backends must
implement, along with the common types for collection addressing, query
specs and paged query cursors.

Invariants:
    - CollectionRef uniquely identifies a database/collection pair
    - Point operations are addressed by id plus optional partition key
    - Query cursors are lazy and single-pass

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Union,
    runtime_checkable,
)
import logging

if TYPE_CHECKING:
    from ..config import RepositorySettings

logger = logging.getLogger(__name__)

JsonValue = Union[Dict[str, Any], List[Any], str, int, float, bool, None]


@dataclass(frozen=True)
class CollectionRef:
    """Address of a collection within a database."""

    database: str
    collection: str

    def __str__(self) -> str:
        return f"{self.database}/{self.collection}"


@dataclass(frozen=True)
class CollectionInfo:
    """Handle to a collection that is known to exist.

    Attributes:
        ref: Database/collection address
        self_link: Store resource link (used to locate throughput offers)
        partition_key_path: Partition key path, e.g. "/content/providerId"
    """

    ref: CollectionRef
    self_link: str
    partition_key_path: Optional[str] = None


@dataclass(frozen=True)
class QuerySpec:
    """A parameterised SQL query.

    Attributes:
        query: Query text, e.g. "SELECT * FROM c WHERE c.id = @Id"
        parameters: Parameters as ({"name": "@Id", "value": ...}, ...)
    """

    query: str
    parameters: Sequence[Dict[str, Any]] = field(default_factory=tuple)

    def parameter_map(self) -> Dict[str, Any]:
        """Parameters as a name -> value mapping."""
        return {p["name"]: p["value"] for p in self.parameters}


@dataclass(frozen=True)
class QueryOptions:
    """Feed options for a query.

    Attributes:
        partition_key: Restrict the query to this partition
        enable_cross_partition_query: Allow fanning out over all partitions
            when no partition key is given. Without it, the query only sees
            the store's current partition context.
        max_item_count: Page size; None or a negative value lets the store decide
    """

    partition_key: Optional[str] = None
    enable_cross_partition_query: bool = False
    max_item_count: Optional[int] = None

    @property
    def page_size(self) -> Optional[int]:
        if self.max_item_count is None or self.max_item_count < 0:
            return None
        return self.max_item_count


@runtime_checkable
class QueryCursor(Protocol):
    """A paged query in progress.

    ``has_more_results`` is True until a fetch reports the end of the
    results. Once it turns False it never turns True again.
    """

    @property
    @abstractmethod
    def has_more_results(self) -> bool:
        ...

    @abstractmethod
    async def fetch_next(self) -> List[JsonValue]:
        """Fetch the next page of results."""
        ...


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for document store backends.

    Error contract:
        - NotFoundError when the addressed document/collection is absent
        - ConflictError when create_item hits an existing id
        - StoreConnectionError when not connected
        - StoreError for any other failure

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> info = await store.create_collection_if_not_exists(ref, "/id")
        >>> await store.create_item(ref, {"id": "a"}, None)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the store.

        Raises:
            StoreConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the connection."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected."""
        ...

    @abstractmethod
    async def probe(self) -> None:
        """Lightweight connectivity check; raises on failure."""
        ...

    @abstractmethod
    async def create_database_if_not_exists(self, database: str) -> None:
        ...

    @abstractmethod
    async def create_collection_if_not_exists(
        self,
        ref: CollectionRef,
        partition_key_path: Optional[str] = None,
    ) -> CollectionInfo:
        """Create the collection unless it exists; the database must exist."""
        ...

    @abstractmethod
    async def read_item(
        self,
        ref: CollectionRef,
        item_id: str,
        partition_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Point read of one document."""
        ...

    @abstractmethod
    async def create_item(
        self,
        ref: CollectionRef,
        body: Dict[str, Any],
        partition_key: Optional[str] = None,
    ) -> int:
        """Insert a new document. Returns the status code."""
        ...

    @abstractmethod
    async def upsert_item(
        self,
        ref: CollectionRef,
        body: Dict[str, Any],
        partition_key: Optional[str] = None,
    ) -> int:
        """Insert or replace a document. Returns the status code."""
        ...

    @abstractmethod
    async def replace_item(
        self,
        ref: CollectionRef,
        item_id: str,
        body: Dict[str, Any],
        partition_key: Optional[str] = None,
    ) -> int:
        """Replace an existing document. Returns the status code."""
        ...

    @abstractmethod
    async def delete_item(
        self,
        ref: CollectionRef,
        item_id: str,
        partition_key: Optional[str] = None,
    ) -> int:
        """Physically remove a document. Returns the status code."""
        ...

    @abstractmethod
    def open_query(
        self,
        ref: CollectionRef,
        spec: QuerySpec,
        options: QueryOptions,
    ) -> QueryCursor:
        """Start a paged query. No request is made until the first fetch."""
        ...

    @abstractmethod
    async def read_throughput(self, ref: CollectionRef) -> Optional[int]:
        """Provisioned throughput of the collection, or None if there is no offer."""
        ...

    @abstractmethod
    async def replace_throughput(self, ref: CollectionRef, units: int) -> None:
        ...

    @abstractmethod
    async def execute_stored_procedure(
        self,
        ref: CollectionRef,
        name: str,
        params: Sequence[Any],
        partition_key: Optional[str] = None,
    ) -> Any:
        ...


def resolve_path(document: Dict[str, Any], path: Optional[str]) -> Optional[str]:
    """Read the value at a partition key path such as "/content/providerId".

    Returns None when the path is unset or missing from the document.
    """
    if not path:
        return None
    value: Any = document
    for part in path.strip("/").split("/"):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return None if value is None else str(value)


def create_document_store(settings: "RepositorySettings") -> DocumentStore:
    """Factory function to create a store from configuration.

    Args:
        settings: Repository settings

    Returns:
        Appropriate DocumentStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .cosmos import CosmosDocumentStore
    from .memory import InMemoryDocumentStore

    if settings.backend == StoreBackend.COSMOS:
        return CosmosDocumentStore(settings)
    elif settings.backend == StoreBackend.MEMORY:
        return InMemoryDocumentStore()
    else:
        raise ValueError(f"Unsupported store backend: {settings.backend}")
