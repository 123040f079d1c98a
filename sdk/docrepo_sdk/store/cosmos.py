"""
Azure Cosmos DB document store implementation.

This module provides the production backend over the Cosmos DB SQL API.
It uses the azure-cosmos async client (aiohttp transport).

Invariants:
    - One CosmosClient per store; containers are resolved per call
    - Driver exceptions are translated into the SDK error taxonomy
    - Retries and backoff are left to the azure-cosmos retry policy

How to change safely:
    - Test against the Cosmos DB emulator before deploying
    - Keep status codes aligned with the REST API
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from http import HTTPStatus
from typing import Any, Dict, Iterator, List, Optional, Sequence

from azure.cosmos import PartitionKey
from azure.cosmos import exceptions as cosmos_exceptions
from azure.cosmos.aio import CosmosClient

from ..errors import ConflictError, NotFoundError, StoreConnectionError, StoreError
from .base import (
    CollectionInfo,
    CollectionRef,
    JsonValue,
    QueryOptions,
    QuerySpec,
    resolve_path,
)

logger = logging.getLogger(__name__)

# Containers must be partitioned; fall back to the id when no path is configured.
FALLBACK_PARTITION_KEY_PATH = "/id"


@contextmanager
def _translate_errors(resource_type: str, resource_id: str, partition_key: Optional[str] = None) -> Iterator[None]:
    """Map azure-cosmos exceptions onto the SDK error types."""
    try:
        yield
    except cosmos_exceptions.CosmosResourceNotFoundError as e:
        raise NotFoundError(
            f"{resource_type} {resource_id} not found", resource_type, resource_id, partition_key
        ) from e
    except cosmos_exceptions.CosmosResourceExistsError as e:
        raise ConflictError(f"{resource_type} {resource_id} already exists", resource_id) from e
    except cosmos_exceptions.CosmosHttpResponseError as e:
        raise StoreError(
            f"Cosmos DB error on {resource_type} {resource_id}: {e.message}",
            status_code=e.status_code,
        ) from e


class CosmosQueryCursor:
    """Paged cursor over a Cosmos DB query.

    Wraps the driver's page iterator; one fetch_next() is one round-trip.
    """

    def __init__(self, container: Any, spec: QuerySpec, kwargs: Dict[str, Any], ref: CollectionRef) -> None:
        self._container = container
        self._spec = spec
        self._kwargs = kwargs
        self._ref = ref
        self._pages: Any = None
        self._done = False

    @property
    def has_more_results(self) -> bool:
        return not self._done

    async def fetch_next(self) -> List[JsonValue]:
        if self._done:
            return []
        if self._pages is None:
            self._pages = self._container.query_items(
                query=self._spec.query,
                parameters=list(self._spec.parameters) or None,
                **self._kwargs,
            ).by_page()
        with _translate_errors("query", str(self._ref)):
            try:
                page = await self._pages.__anext__()
            except StopAsyncIteration:
                self._done = True
                return []
            items = [item async for item in page]
        if not self._pages.continuation_token:
            self._done = True
        return items


class CosmosDocumentStore:
    """Cosmos DB implementation of DocumentStore protocol.

    Attributes:
        settings: Repository settings (connection string, default partition)

    Example:
        >>> store = CosmosDocumentStore(settings)
        >>> await store.connect()
        >>> await store.create_database_if_not_exists("calcs")
    """

    def __init__(self, settings: Any) -> None:
        """Initialize the store.

        Args:
            settings: RepositorySettings instance
        """
        self.settings = settings
        self._client: Optional[CosmosClient] = None

    @property
    def is_connected(self) -> bool:
        """Whether a client has been created."""
        return self._client is not None

    async def connect(self) -> None:
        """Create the Cosmos client from the connection string.

        Raises:
            StoreConnectionError: If the connection string is rejected
        """
        if self._client is not None:
            return

        try:
            self._client = CosmosClient.from_connection_string(self.settings.connection_string)
            await self._client.__aenter__()
        except (ValueError, cosmos_exceptions.CosmosHttpResponseError) as e:
            self._client = None
            raise StoreConnectionError(f"Failed to connect to Cosmos DB: {e}") from e

        logger.info(
            "Connected to Cosmos DB",
            extra={"database": self.settings.database_name, "collection": self.settings.collection_name},
        )

    async def close(self) -> None:
        """Close the Cosmos client."""
        if self._client is not None:
            try:
                await self._client.close()
            finally:
                self._client = None
            logger.info("Cosmos DB connection closed")

    async def probe(self) -> None:
        """Read one database entry to prove the account answers."""
        client = self._require_client()
        with _translate_errors("account", "databases"):
            async for _ in client.list_databases(max_item_count=1):
                break

    async def create_database_if_not_exists(self, database: str) -> None:
        client = self._require_client()
        with _translate_errors("database", database):
            try:
                await client.get_database_client(database).read()
                return
            except cosmos_exceptions.CosmosResourceNotFoundError:
                pass
            await client.create_database_if_not_exists(id=database)
        logger.info("Database ensured", extra={"database": database})

    async def create_collection_if_not_exists(
        self,
        ref: CollectionRef,
        partition_key_path: Optional[str] = None,
    ) -> CollectionInfo:
        client = self._require_client()
        database = client.get_database_client(ref.database)
        with _translate_errors("collection", str(ref)):
            container = await database.create_container_if_not_exists(
                id=ref.collection,
                partition_key=PartitionKey(path=partition_key_path or FALLBACK_PARTITION_KEY_PATH),
            )
            properties = await container.read()
        return CollectionInfo(
            ref=ref,
            self_link=properties.get("_self", ""),
            partition_key_path=partition_key_path,
        )

    async def read_item(
        self,
        ref: CollectionRef,
        item_id: str,
        partition_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        container = self._container(ref)
        with _translate_errors("document", item_id, partition_key):
            if partition_key is None:
                return await self._find_by_id(container, item_id)
            return await container.read_item(item=item_id, partition_key=partition_key)

    async def create_item(
        self,
        ref: CollectionRef,
        body: Dict[str, Any],
        partition_key: Optional[str] = None,
    ) -> int:
        container = self._container(ref)
        with _translate_errors("document", body["id"], partition_key):
            await container.create_item(body=body)
        return HTTPStatus.CREATED

    async def upsert_item(
        self,
        ref: CollectionRef,
        body: Dict[str, Any],
        partition_key: Optional[str] = None,
    ) -> int:
        container = self._container(ref)
        with _translate_errors("document", body["id"], partition_key):
            await container.upsert_item(body=body)
        return HTTPStatus.OK

    async def replace_item(
        self,
        ref: CollectionRef,
        item_id: str,
        body: Dict[str, Any],
        partition_key: Optional[str] = None,
    ) -> int:
        container = self._container(ref)
        with _translate_errors("document", item_id, partition_key):
            await container.replace_item(item=item_id, body=body)
        return HTTPStatus.OK

    async def delete_item(
        self,
        ref: CollectionRef,
        item_id: str,
        partition_key: Optional[str] = None,
    ) -> int:
        container = self._container(ref)
        with _translate_errors("document", item_id, partition_key):
            if partition_key is None:
                existing = await self._find_by_id(container, item_id)
                partition_key = self._partition_value(existing, item_id)
            await container.delete_item(item=item_id, partition_key=partition_key)
        return HTTPStatus.NO_CONTENT

    def open_query(
        self,
        ref: CollectionRef,
        spec: QuerySpec,
        options: QueryOptions,
    ) -> CosmosQueryCursor:
        kwargs: Dict[str, Any] = {}
        if options.page_size is not None:
            kwargs["max_item_count"] = options.page_size
        if options.partition_key is not None:
            kwargs["partition_key"] = options.partition_key
        elif not options.enable_cross_partition_query and self.settings.default_partition_key:
            # The async driver fans out by default; pin to the configured context instead.
            kwargs["partition_key"] = self.settings.default_partition_key
        return CosmosQueryCursor(self._container(ref), spec, kwargs, ref)

    async def read_throughput(self, ref: CollectionRef) -> Optional[int]:
        container = self._container(ref)
        try:
            properties = await container.get_throughput()
        except cosmos_exceptions.CosmosResourceNotFoundError:
            return None
        except cosmos_exceptions.CosmosHttpResponseError as e:
            raise StoreError(f"Failed to read throughput for {ref}: {e.message}", status_code=e.status_code) from e
        return properties.offer_throughput

    async def replace_throughput(self, ref: CollectionRef, units: int) -> None:
        container = self._container(ref)
        with _translate_errors("offer", str(ref)):
            await container.replace_throughput(units)

    async def execute_stored_procedure(
        self,
        ref: CollectionRef,
        name: str,
        params: Sequence[Any],
        partition_key: Optional[str] = None,
    ) -> Any:
        container = self._container(ref)
        # Containers are always partitioned; a procedure needs a partition value
        if partition_key is None:
            partition_key = self.settings.default_partition_key
        with _translate_errors("sproc", name, partition_key):
            return await container.scripts.execute_stored_procedure(
                sproc=name,
                partition_key=partition_key,
                params=list(params),
            )

    # Internals

    def _require_client(self) -> CosmosClient:
        if self._client is None:
            raise StoreConnectionError("Not connected to Cosmos DB")
        return self._client

    def _container(self, ref: CollectionRef) -> Any:
        return self._require_client().get_database_client(ref.database).get_container_client(ref.collection)

    async def _find_by_id(self, container: Any, item_id: str) -> Dict[str, Any]:
        items = container.query_items(
            query="SELECT * FROM c WHERE c.id = @Id",
            parameters=[{"name": "@Id", "value": item_id}],
        )
        async for item in items:
            return item
        raise cosmos_exceptions.CosmosResourceNotFoundError(
            status_code=HTTPStatus.NOT_FOUND, message=f"Document {item_id} not found"
        )

    def _partition_value(self, document: Dict[str, Any], item_id: str) -> Any:
        path = self.settings.partition_key or FALLBACK_PARTITION_KEY_PATH
        value = resolve_path(document, path)
        return value if value is not None else item_id
