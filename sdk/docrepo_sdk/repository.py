"""
Typed document repository.

This module provides DocumentRepository, the public entry point for
reading and writing typed entities in one collection:
- Point reads and type-scoped queries (materialised, lazy or streamed)
- Dynamic queries returning plain JSON values
- Create / upsert / update / soft and hard delete
- Bulk variants with a concurrency bound and aggregated failures
- Throughput and health management

Example:
    >>> async with DocumentRepository(settings) as repo:
    ...     await repo.create(Provider, Provider(id="p1", name="Acme"))
    ...     provider = await repo.read_by_id(Provider, "p1")
    ...     await repo.bulk_upsert(Provider, providers, degree_of_parallelism=3)

Invariants:
    - Every call provisions the collection first (once per session)
    - Callers see payloads; envelopes only where a method says so
    - A document's type is fixed by its first write
    - Default reads never return soft-deleted documents

Partition contract:
    Queries that neither pass a partition key nor enable cross-partition
    queries only see the store's current partition context. A result
    spanning several partitions may be partial. Pass
    ``enable_cross_partition_query=True`` when every partition must be
    scanned.
"""

from __future__ import annotations

import asyncio
import json
import logging
from http import HTTPStatus
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from .bulk import BulkOperationEngine, BulkResult
from .config import RepositorySettings
from .envelope import (
    CONTENT_FIELD,
    DOCUMENT_TYPE_FIELD,
    DocumentEntity,
    document_type_for,
    entity_id,
    load_content,
    next_timestamp,
    utcnow,
)
from .errors import ConsistencyError, NotFoundError, TypeMismatchError, ValidationError
from .query import DocumentQuery, QueryBuilder
from .session import CollectionSession
from .store.base import (
    CollectionInfo,
    CollectionRef,
    DocumentStore,
    JsonValue,
    QueryCursor,
    QueryOptions,
    QuerySpec,
    resolve_path,
)
from .streaming import stream_batches

logger = logging.getLogger(__name__)

T = TypeVar("T")

SqlQuery = Union[str, QuerySpec]


def _as_spec(query: SqlQuery) -> QuerySpec:
    if isinstance(query, QuerySpec):
        spec = query
    else:
        spec = QuerySpec(query=query)
    if not spec.query or not spec.query.strip():
        raise ValidationError("Query text must not be empty", field_name="query")
    return spec


def _require(value: Optional[str], name: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{name} must not be empty", field_name=name)
    return value


class DocumentRepository:
    """Repository over a single collection of typed envelopes.

    Attributes:
        settings: Repository settings
        session: Connection and provisioning state

    Example:
        >>> repo = DocumentRepository(settings, store=InMemoryDocumentStore())
        >>> await repo.upsert(Provider, provider, partition_key="p1")
        >>> rows = await repo.query_dynamic("SELECT c.id FROM c", enable_cross_partition_query=True)
    """

    def __init__(
        self,
        settings: RepositorySettings,
        store: Optional[DocumentStore] = None,
    ) -> None:
        """Initialize the repository.

        Args:
            settings: Repository settings
            store: Optional store backend (built from settings if not provided)
        """
        self.settings = settings
        self.session = CollectionSession(settings, store)

    @property
    def store(self) -> DocumentStore:
        return self.session.store

    @property
    def ref(self) -> CollectionRef:
        return self.session.ref

    async def close(self) -> None:
        await self.session.close()

    async def __aenter__(self) -> DocumentRepository:
        await self.session.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # Health and lifecycle

    async def is_health_ok(self) -> Tuple[bool, str]:
        """Probe the store; never raises."""
        return await self.session.is_health_ok()

    async def ensure_collection_exists(self) -> CollectionInfo:
        return await self.session.ensure_collection_exists()

    async def get_throughput(self) -> int:
        return await self.session.get_throughput()

    async def set_throughput(self, request_units: int) -> None:
        await self.session.set_throughput(request_units)

    # Reads

    async def read(
        self,
        entity_type: Type[T],
        *,
        items_per_page: Optional[int] = None,
        enable_cross_partition_query: bool = False,
    ) -> DocumentQuery[DocumentEntity[T]]:
        """Lazy query over live envelopes of ``entity_type``.

        Nothing is fetched until the returned query is iterated.
        """
        spec = QueryBuilder(entity_type).build()
        return await self._query(
            spec,
            self._to_envelope(entity_type),
            items_per_page=items_per_page,
            enable_cross_partition_query=enable_cross_partition_query,
        )

    async def find_document(
        self,
        entity_type: Type[T],
        document_id: str,
        *,
        partition_key: Optional[str] = None,
        enable_cross_partition_query: bool = False,
    ) -> Optional[DocumentEntity[T]]:
        """Find a live envelope by id.

        With a partition key this is a single point read, which raises
        NotFoundError when nothing is stored at that id. Without one it
        is a filtered scan returning None when nothing matches.

        Returns:
            The envelope, or None if it is soft-deleted, of another type,
            or (for scans) absent
        """
        _require(document_id, "id")
        if partition_key is not None:
            document = await self._read_stored(document_id, partition_key)
            envelope = self._from_stored(entity_type, document)
            if envelope is None or envelope.deleted:
                return None
            return envelope

        spec = QueryBuilder(entity_type).where_id(document_id).build()
        query = await self._query(
            spec,
            self._to_envelope(entity_type),
            items_per_page=1,
            enable_cross_partition_query=enable_cross_partition_query,
        )
        return await query.first_or_none()

    async def read_document_by_id(
        self,
        entity_type: Type[T],
        document_id: str,
        *,
        partition_key: Optional[str] = None,
        include_deleted: bool = True,
    ) -> DocumentEntity[T]:
        """Point read of an envelope by id.

        Soft-deleted documents are returned unless ``include_deleted`` is
        False.

        Raises:
            NotFoundError: If no document of ``entity_type`` is stored at the id
        """
        _require(document_id, "id")
        document = await self._read_stored(document_id, partition_key)
        envelope = self._from_stored(entity_type, document)
        if envelope is None or (envelope.deleted and not include_deleted):
            raise NotFoundError(
                f"{document_type_for(entity_type)} {document_id} not found",
                "document",
                document_id,
                partition_key,
            )
        return envelope

    async def read_by_id(self, entity_type: Type[T], document_id: str) -> T:
        """Point read returning the payload (soft-deleted documents included)."""
        envelope = await self.read_document_by_id(entity_type, document_id)
        return envelope.content

    async def read_by_id_partitioned(
        self,
        entity_type: Type[T],
        document_id: str,
        partition_key: str,
    ) -> T:
        """Point read in one partition returning the payload."""
        _require(partition_key, "partition_key")
        envelope = await self.read_document_by_id(
            entity_type, document_id, partition_key=partition_key
        )
        return envelope.content

    # Queries

    async def query(
        self,
        entity_type: Type[T],
        sql: Optional[SqlQuery] = None,
        *,
        items_per_page: Optional[int] = None,
        enable_cross_partition_query: bool = False,
    ) -> DocumentQuery[T]:
        """Lazy query returning payloads.

        Without ``sql`` the query covers live documents of ``entity_type``.
        A custom query must select whole envelopes.
        """
        if sql is None:
            spec = QueryBuilder(entity_type).select_content().build()
            convert: Callable[[JsonValue], T] = self._to_content_value(entity_type)
        else:
            spec = _as_spec(sql)
            convert = self._to_content(entity_type)
        return await self._query(
            spec,
            convert,
            items_per_page=items_per_page,
            enable_cross_partition_query=enable_cross_partition_query,
        )

    async def query_sql(
        self,
        entity_type: Type[T],
        sql: SqlQuery,
        *,
        items_per_page: Optional[int] = None,
        enable_cross_partition_query: bool = False,
    ) -> List[T]:
        """Run an envelope-selecting query and return every payload."""
        query = await self._query(
            _as_spec(sql),
            self._to_content(entity_type),
            items_per_page=items_per_page,
            enable_cross_partition_query=enable_cross_partition_query,
        )
        return await query.to_list()

    async def query_partitioned_entity(
        self,
        entity_type: Type[T],
        sql: SqlQuery,
        partition_key: str,
        *,
        items_per_page: Optional[int] = None,
    ) -> List[T]:
        """Run an envelope-selecting query inside one partition."""
        query = await self._query(
            _as_spec(sql),
            self._to_content(entity_type),
            items_per_page=items_per_page,
            partition_key=_require(partition_key, "partition_key"),
        )
        return await query.to_list()

    async def query_dynamic(
        self,
        sql: SqlQuery,
        *,
        items_per_page: Optional[int] = None,
        enable_cross_partition_query: bool = False,
    ) -> List[JsonValue]:
        """Run any query and return its rows as plain JSON values."""
        query = await self._query(
            _as_spec(sql),
            _identity,
            items_per_page=items_per_page,
            enable_cross_partition_query=enable_cross_partition_query,
        )
        return await query.to_list()

    async def dynamic_query_partitioned(
        self,
        sql: SqlQuery,
        partition_key: str,
        *,
        items_per_page: Optional[int] = None,
    ) -> List[JsonValue]:
        """Run any query inside one partition, rows as JSON values."""
        query = await self._query(
            _as_spec(sql),
            _identity,
            items_per_page=items_per_page,
            partition_key=_require(partition_key, "partition_key"),
        )
        return await query.to_list()

    async def query_documents(
        self,
        entity_type: Type[T],
        sql: Optional[SqlQuery] = None,
        *,
        items_per_page: Optional[int] = None,
        enable_cross_partition_query: bool = False,
    ) -> DocumentQuery[DocumentEntity[T]]:
        """Lazy envelope query with no implicit type or deleted filter.

        Every row must be an envelope whose content is an ``entity_type``;
        pass ``sql`` to narrow a mixed collection.
        """
        spec = _as_spec(sql) if sql is not None else QueryBuilder(include_deleted=True).build()
        return await self._query(
            spec,
            self._to_envelope(entity_type),
            items_per_page=items_per_page,
            enable_cross_partition_query=enable_cross_partition_query,
        )

    async def get_all_documents(
        self,
        entity_type: Type[T],
        sql: Optional[SqlQuery] = None,
        *,
        items_per_page: Optional[int] = None,
        enable_cross_partition_query: bool = True,
    ) -> List[DocumentEntity[T]]:
        """All envelopes of ``entity_type``, soft-deleted ones included.

        Scans every partition unless told otherwise.
        """
        if sql is None:
            spec = QueryBuilder(entity_type, include_deleted=True).build()
        else:
            spec = _as_spec(sql)
        query = await self._query(
            spec,
            self._to_envelope(entity_type),
            items_per_page=items_per_page,
            enable_cross_partition_query=enable_cross_partition_query,
        )
        return await query.to_list()

    async def documents_batch_processing(
        self,
        entity_type: Type[T],
        handler: Callable[[List[Any]], Awaitable[None]],
        *,
        sql: Optional[SqlQuery] = None,
        items_per_page: Optional[int] = None,
        enable_cross_partition_query: bool = False,
        as_documents: bool = False,
    ) -> int:
        """Stream query results to ``handler`` in batches of ``items_per_page``.

        The next page is only fetched once the handler has returned, so
        memory stays bounded by the batch size.

        Args:
            entity_type: Payload type
            handler: Coroutine function receiving each batch
            sql: Envelope-selecting query (default: live documents of the type)
            items_per_page: Batch size
            enable_cross_partition_query: Scan every partition
            as_documents: Hand envelopes instead of payloads to the handler

        Returns:
            Number of items handed to the handler
        """
        page_size = items_per_page or self.settings.items_per_page
        spec = _as_spec(sql) if sql is not None else QueryBuilder(entity_type).build()
        convert = self._to_envelope(entity_type) if as_documents else self._to_content(entity_type)
        query = await self._query(
            spec,
            convert,
            items_per_page=page_size,
            enable_cross_partition_query=enable_cross_partition_query,
        )
        return await stream_batches(query, handler, page_size)

    async def query_as_json(
        self,
        sql: Optional[SqlQuery] = None,
        *,
        items_per_page: Optional[int] = None,
        enable_cross_partition_query: bool = False,
    ) -> AsyncIterator[str]:
        """Yield each envelope's content serialised as a JSON string."""
        spec = _as_spec(sql) if sql is not None else QueryBuilder(include_deleted=True).build()
        query = await self._query(
            spec,
            _identity,
            items_per_page=items_per_page,
            enable_cross_partition_query=enable_cross_partition_query,
        )
        async for page in query:
            for row in page:
                content = row.get(CONTENT_FIELD) if isinstance(row, dict) else row
                yield json.dumps(content)

    # Writes

    async def create(
        self,
        entity_type: Type[T],
        entity: T,
        partition_key: Optional[str] = None,
    ) -> int:
        """Store a new document.

        Returns:
            Store status code (201)

        Raises:
            ConflictError: If the id already exists in the partition
        """
        status, _ = await self._create(entity_type, entity, partition_key)
        return status

    async def create_document(
        self,
        entity_type: Type[T],
        entity: T,
        partition_key: Optional[str] = None,
    ) -> DocumentEntity[T]:
        """Store a new document and return its envelope."""
        _, envelope = await self._create(entity_type, entity, partition_key)
        return envelope

    async def upsert(
        self,
        entity_type: Type[T],
        entity: T,
        *,
        partition_key: Optional[str] = None,
        enable_cross_partition_query: bool = False,
        undelete: bool = False,
        maintain_created_date: bool = True,
        reset_created_date_on_undelete: bool = False,
    ) -> int:
        """Insert or replace a document.

        The existing document (if any) is looked up first so its type can
        be checked and, with ``maintain_created_date``, its creation time
        survives the write. The lookup honours the partition contract:
        without a partition key or ``enable_cross_partition_query`` it only
        sees the current partition.

        Args:
            entity_type: Declared payload type
            entity: Payload
            partition_key: Partition of the document
            enable_cross_partition_query: Let the lookup scan every partition
            undelete: Clear the soft-delete flag
            maintain_created_date: Keep the stored creation time
            reset_created_date_on_undelete: Restart the creation time when
                undeleting a soft-deleted document

        Returns:
            Store status code

        Raises:
            ConsistencyError: If more than one stored document has the id
            TypeMismatchError: If the stored document has another type
        """
        await self.session.ensure_collection_exists()
        envelope = await self._prepare_upsert(
            entity_type,
            entity,
            partition_key=partition_key,
            enable_cross_partition_query=enable_cross_partition_query,
            undelete=undelete,
            maintain_created_date=maintain_created_date,
            reset_created_date_on_undelete=reset_created_date_on_undelete,
        )
        status = await self.store.upsert_item(
            self.ref, envelope.to_document(entity_type), partition_key
        )
        logger.debug(
            "Document upserted",
            extra={"id": envelope.id, "document_type": envelope.document_type, "status": int(status)},
        )
        return status

    async def update(
        self,
        entity_type: Type[T],
        entity: T,
        *,
        partition_key: Optional[str] = None,
        undelete: bool = False,
    ) -> int:
        """Replace the payload of an existing document.

        Raises:
            NotFoundError: If the document does not exist
            TypeMismatchError: If the stored document has another type
        """
        await self.session.ensure_collection_exists()
        document_id = entity_id(entity)
        document = await self._read_stored(document_id, partition_key)
        stored = self._stored_envelope(entity_type, document)

        envelope = stored.with_changes(
            content=entity,
            updated_at=next_timestamp(stored.updated_at),
            deleted=False if undelete else stored.deleted,
        )
        body = envelope.to_document(entity_type)
        status = await self.store.replace_item(
            self.ref, document_id, body, partition_key or self._partition_of(body)
        )
        logger.debug("Document updated", extra={"id": document_id, "undelete": undelete})
        return status

    async def delete(
        self,
        entity_type: Type[T],
        document_id: str,
        *,
        partition_key: Optional[str] = None,
        enable_cross_partition_query: bool = False,
        hard_delete: bool = False,
    ) -> int:
        """Delete a document by id.

        A soft delete marks the document deleted; a hard delete removes it.
        With a partition key the document is located by point read,
        otherwise by a scan of live documents honouring the partition
        contract.

        Raises:
            NotFoundError: If no matching document exists
        """
        await self.session.ensure_collection_exists()
        _require(document_id, "id")
        if partition_key is not None:
            document = await self._read_stored(document_id, partition_key)
            stored = self._stored_envelope(entity_type, document)
        else:
            spec = QueryBuilder(entity_type).where_id(document_id).build()
            query = await self._query(
                spec,
                self._to_envelope(entity_type),
                items_per_page=1,
                enable_cross_partition_query=enable_cross_partition_query,
            )
            found = await query.first_or_none()
            if found is None:
                raise NotFoundError(
                    f"{document_type_for(entity_type)} {document_id} not found",
                    "document",
                    document_id,
                )
            stored = found
        return await self._delete_envelope(entity_type, stored, partition_key, hard_delete)

    # Bulk

    async def bulk_create(
        self,
        entity_type: Type[T],
        entities: Iterable[T],
        *,
        degree_of_parallelism: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkResult:
        """Create many documents with bounded concurrency.

        Raises:
            AggregateOperationError: If any item failed; carries every cause
        """
        return await self.bulk_create_partitioned(
            entity_type,
            [(None, entity) for entity in entities],
            degree_of_parallelism=degree_of_parallelism,
            cancel_event=cancel_event,
        )

    async def bulk_create_partitioned(
        self,
        entity_type: Type[T],
        entities: Iterable[Tuple[Optional[str], T]],
        *,
        degree_of_parallelism: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkResult:
        """Create many (partition_key, entity) pairs with bounded concurrency."""

        async def create_one(pair: Tuple[Optional[str], T]) -> int:
            return await self.create(entity_type, pair[1], pair[0])

        return await self._run_bulk("create", entities, create_one, degree_of_parallelism, cancel_event)

    async def bulk_upsert(
        self,
        entity_type: Type[T],
        entities: Iterable[T],
        *,
        degree_of_parallelism: Optional[int] = None,
        enable_cross_partition_query: bool = False,
        maintain_created_date: bool = True,
        undelete: bool = False,
        reset_created_date_on_undelete: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkResult:
        """Upsert many documents with bounded concurrency.

        Each item behaves like upsert(); see it for the created-date lookup.
        """
        return await self.bulk_upsert_partitioned(
            entity_type,
            [(None, entity) for entity in entities],
            degree_of_parallelism=degree_of_parallelism,
            enable_cross_partition_query=enable_cross_partition_query,
            maintain_created_date=maintain_created_date,
            undelete=undelete,
            reset_created_date_on_undelete=reset_created_date_on_undelete,
            cancel_event=cancel_event,
        )

    async def bulk_upsert_partitioned(
        self,
        entity_type: Type[T],
        entities: Iterable[Tuple[Optional[str], T]],
        *,
        degree_of_parallelism: Optional[int] = None,
        enable_cross_partition_query: bool = False,
        maintain_created_date: bool = True,
        undelete: bool = False,
        reset_created_date_on_undelete: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkResult:
        """Upsert many (partition_key, entity) pairs with bounded concurrency."""

        async def upsert_one(pair: Tuple[Optional[str], T]) -> int:
            return await self.upsert(
                entity_type,
                pair[1],
                partition_key=pair[0],
                enable_cross_partition_query=enable_cross_partition_query,
                undelete=undelete,
                maintain_created_date=maintain_created_date,
                reset_created_date_on_undelete=reset_created_date_on_undelete,
            )

        return await self._run_bulk("upsert", entities, upsert_one, degree_of_parallelism, cancel_event)

    async def bulk_delete(
        self,
        entity_type: Type[T],
        entities: Iterable[T],
        *,
        degree_of_parallelism: Optional[int] = None,
        hard_delete: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkResult:
        """Delete many documents with bounded concurrency.

        Each entity's partition key is read from the entity itself using
        the configured partition key path.
        """
        pairs = [(self._partition_of_entity(entity_type, entity), entity) for entity in entities]
        return await self.bulk_delete_partitioned(
            entity_type,
            pairs,
            degree_of_parallelism=degree_of_parallelism,
            hard_delete=hard_delete,
            cancel_event=cancel_event,
        )

    async def bulk_delete_partitioned(
        self,
        entity_type: Type[T],
        entities: Iterable[Tuple[Optional[str], T]],
        *,
        degree_of_parallelism: Optional[int] = None,
        hard_delete: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkResult:
        """Delete many (partition_key, entity) pairs with bounded concurrency."""

        async def delete_one(pair: Tuple[Optional[str], T]) -> int:
            partition_key, entity = pair
            document = await self._read_stored(entity_id(entity), partition_key)
            stored = self._stored_envelope(entity_type, document)
            return await self._delete_envelope(entity_type, stored, partition_key, hard_delete)

        return await self._run_bulk("delete", entities, delete_one, degree_of_parallelism, cancel_event)

    async def bulk_update(
        self,
        entity_type: Type[T],
        entities: Iterable[T],
        stored_procedure_name: str,
        partition_key: Optional[str] = None,
    ) -> int:
        """Update many documents through one stored procedure call.

        The procedure receives a single argument: the list of envelopes.
        Stored types are checked first; nothing is sent if any differ.
        A stored procedure runs inside one partition, so every entity must
        live in ``partition_key`` (the store's default partition if None).

        Raises:
            TypeMismatchError: If any stored document has another type
        """
        _require(stored_procedure_name, "stored_procedure_name")
        await self.session.ensure_collection_exists()
        entities = list(entities)
        requested = document_type_for(entity_type)

        ids = [entity_id(entity) for entity in entities]
        spec = QueryBuilder(include_deleted=True).where_ids(ids).build()
        query = await self._query(spec, _identity, enable_cross_partition_query=True)
        stored: Dict[str, Dict[str, Any]] = {}
        for document in await query.to_list():
            stored_type = document.get(DOCUMENT_TYPE_FIELD)
            if stored_type != requested:
                raise TypeMismatchError(document["id"], stored_type, requested)
            stored[document["id"]] = document

        now = utcnow()
        documents = []
        for entity in entities:
            existing = stored.get(entity_id(entity))
            if existing is None:
                envelope = DocumentEntity.wrap(entity_type, entity, created_at=now)
            else:
                previous = DocumentEntity.from_document(entity_type, existing)
                envelope = previous.with_changes(
                    content=entity, updated_at=next_timestamp(previous.updated_at)
                )
            documents.append(envelope.to_document(entity_type))

        await self.store.execute_stored_procedure(
            self.ref, stored_procedure_name, [documents], partition_key
        )
        logger.info(
            "Bulk update complete",
            extra={"procedure": stored_procedure_name, "documents": len(documents)},
        )
        return HTTPStatus.OK

    # Internals

    async def _query(
        self,
        spec: QuerySpec,
        convert: Callable[[JsonValue], Any],
        *,
        items_per_page: Optional[int] = None,
        enable_cross_partition_query: bool = False,
        partition_key: Optional[str] = None,
    ) -> DocumentQuery:
        await self.session.ensure_collection_exists()
        options = QueryOptions(
            partition_key=partition_key,
            enable_cross_partition_query=enable_cross_partition_query,
            max_item_count=items_per_page or self.settings.items_per_page,
        )
        cursor: QueryCursor = self.store.open_query(self.ref, spec, options)
        return DocumentQuery(cursor, convert)

    async def _create(
        self,
        entity_type: Type[T],
        entity: T,
        partition_key: Optional[str],
    ) -> Tuple[int, DocumentEntity[T]]:
        await self.session.ensure_collection_exists()
        envelope = DocumentEntity.wrap(entity_type, entity)
        status = await self.store.create_item(
            self.ref, envelope.to_document(entity_type), partition_key
        )
        logger.debug(
            "Document created",
            extra={"id": envelope.id, "document_type": envelope.document_type},
        )
        return status, envelope

    async def _prepare_upsert(
        self,
        entity_type: Type[T],
        entity: T,
        *,
        partition_key: Optional[str],
        enable_cross_partition_query: bool,
        undelete: bool,
        maintain_created_date: bool,
        reset_created_date_on_undelete: bool,
    ) -> DocumentEntity[T]:
        document_id = entity_id(entity)
        spec = QueryBuilder(include_deleted=True).where_id(document_id).build()
        query = await self._query(
            spec,
            _identity,
            partition_key=partition_key,
            enable_cross_partition_query=partition_key is None and enable_cross_partition_query,
        )
        existing = await query.to_list()
        if len(existing) > 1:
            raise ConsistencyError(
                f"Expected 1 record, found {len(existing)}, aborting",
                document_id=document_id,
                found=len(existing),
            )
        if not existing:
            return DocumentEntity.wrap(entity_type, entity)

        # The type check applies whether or not the created date is kept
        stored = self._stored_envelope(entity_type, existing[0])
        updated_at = next_timestamp(stored.updated_at)
        created_at = stored.created_at or updated_at
        if not maintain_created_date:
            created_at = updated_at
        deleted = stored.deleted
        if undelete:
            if stored.deleted and reset_created_date_on_undelete:
                created_at = updated_at
            deleted = False
        return stored.with_changes(
            content=entity,
            created_at=created_at,
            updated_at=updated_at,
            deleted=deleted,
        )

    async def _delete_envelope(
        self,
        entity_type: Type[T],
        stored: DocumentEntity[T],
        partition_key: Optional[str],
        hard_delete: bool,
    ) -> int:
        if hard_delete:
            body = stored.to_document(entity_type)
            status = await self.store.delete_item(
                self.ref, stored.id, partition_key or self._partition_of(body)
            )
        else:
            envelope = stored.with_changes(
                deleted=True, updated_at=next_timestamp(stored.updated_at)
            )
            body = envelope.to_document(entity_type)
            status = await self.store.replace_item(
                self.ref, stored.id, body, partition_key or self._partition_of(body)
            )
        logger.debug("Document deleted", extra={"id": stored.id, "hard_delete": hard_delete})
        return status

    async def _run_bulk(
        self,
        name: str,
        items: Iterable[Tuple[Optional[str], T]],
        operation: Callable[[Tuple[Optional[str], T]], Awaitable[Any]],
        degree_of_parallelism: Optional[int],
        cancel_event: Optional[asyncio.Event],
    ) -> BulkResult:
        await self.session.ensure_collection_exists()
        engine = BulkOperationEngine(degree_of_parallelism or self.settings.degree_of_parallelism)
        return await engine.run(
            items,
            operation,
            name=name,
            id_of=lambda pair: entity_id(pair[1]),
            cancel_event=cancel_event,
        )

    async def _read_stored(self, document_id: str, partition_key: Optional[str]) -> Dict[str, Any]:
        await self.session.ensure_collection_exists()
        return await self.store.read_item(self.ref, document_id, partition_key)

    def _from_stored(
        self, entity_type: Type[T], document: Dict[str, Any]
    ) -> Optional[DocumentEntity[T]]:
        if document.get(DOCUMENT_TYPE_FIELD) != document_type_for(entity_type):
            return None
        return DocumentEntity.from_document(entity_type, document)

    def _stored_envelope(self, entity_type: Type[T], document: Dict[str, Any]) -> DocumentEntity[T]:
        requested = document_type_for(entity_type)
        stored_type = document.get(DOCUMENT_TYPE_FIELD)
        if stored_type is not None and stored_type != requested:
            raise TypeMismatchError(document["id"], stored_type, requested)
        return DocumentEntity.from_document(entity_type, document)

    def _partition_of(self, body: Dict[str, Any]) -> Optional[str]:
        return resolve_path(body, self.settings.partition_key)

    def _partition_of_entity(self, entity_type: Type[T], entity: T) -> Optional[str]:
        if not self.settings.partition_key:
            return None
        return self._partition_of(DocumentEntity.wrap(entity_type, entity).to_document(entity_type))

    @staticmethod
    def _to_envelope(entity_type: Type[T]) -> Callable[[JsonValue], DocumentEntity[T]]:
        return lambda item: DocumentEntity.from_document(entity_type, item)

    @staticmethod
    def _to_content(entity_type: Type[T]) -> Callable[[JsonValue], T]:
        return lambda item: DocumentEntity.from_document(entity_type, item).content

    @staticmethod
    def _to_content_value(entity_type: Type[T]) -> Callable[[JsonValue], T]:
        return lambda item: load_content(entity_type, item)


def _identity(item: JsonValue) -> JsonValue:
    return item
