"""
In-memory document store implementation for testing.

This module provides a simple in-memory backend for:
- Unit tests
- Integration tests
- Local development without a cloud account

It follows the same contract as the real store: partition scoping,
continuation paging, throughput offers, stored procedures and
id-conflict detection.

Invariants:
    - All data is lost on process exit
    - Result order is insertion order (the store's natural order)
    - A query without a partition key and without the cross-partition
      flag only sees the current partition (the first partition written,
      unless set explicitly)

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with DocumentStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import logging

from ..errors import ConflictError, NotFoundError, StoreConnectionError, StoreError
from .base import (
    CollectionInfo,
    CollectionRef,
    JsonValue,
    QueryOptions,
    QuerySpec,
    resolve_path,
)
from .sql_subset import ParsedQuery, is_undefined, matches, parse_query, project

logger = logging.getLogger(__name__)

DEFAULT_THROUGHPUT = 400
DEFAULT_PAGE_SIZE = 100

StoredProcedure = Callable[..., Any]


@dataclass
class InMemoryCollection:
    """In-memory collection storage.

    Documents are keyed by (partition value, id); dict order is insertion
    order.
    """

    info: CollectionInfo
    documents: Dict[Tuple[Optional[str], str], Dict[str, Any]] = field(default_factory=dict)
    current_partition: Optional[str] = None
    throughput: Optional[int] = DEFAULT_THROUGHPUT
    procedures: Dict[str, StoredProcedure] = field(default_factory=dict)

    @property
    def partitioned(self) -> bool:
        return bool(self.info.partition_key_path)

    def partition_of(self, body: Dict[str, Any]) -> Optional[str]:
        return resolve_path(body, self.info.partition_key_path)

    def find(self, item_id: str, partition_key: Optional[str]) -> List[Dict[str, Any]]:
        if partition_key is not None or not self.partitioned:
            doc = self.documents.get((partition_key, item_id))
            return [doc] if doc is not None else []
        return [d for (pk, i), d in self.documents.items() if i == item_id]


class InMemoryQueryCursor:
    """Paged cursor over an in-memory query.

    Results are evaluated on the first fetch and then handed out one page
    at a time.
    """

    def __init__(
        self,
        store: InMemoryDocumentStore,
        ref: CollectionRef,
        query: ParsedQuery,
        params: Dict[str, Any],
        options: QueryOptions,
    ) -> None:
        self._store = store
        self._ref = ref
        self._query = query
        self._params = params
        self._page_size = options.page_size or DEFAULT_PAGE_SIZE
        self._options = options
        self._results: Optional[List[JsonValue]] = None
        self._offset = 0
        self._done = False

    @property
    def has_more_results(self) -> bool:
        return not self._done

    async def fetch_next(self) -> List[JsonValue]:
        if self._done:
            return []
        if self._results is None:
            self._results = await self._store._evaluate(
                self._ref, self._query, self._params, self._options
            )
        page = self._results[self._offset:self._offset + self._page_size]
        self._offset += len(page)
        self._store.stats["page_fetch"] += 1
        if self._offset >= len(self._results):
            self._done = True
        return copy.deepcopy(page)


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore for testing.

    Attributes:
        stats: Counter of calls per operation name, plus
            databases_created and collections_created
        latency: Optional delay (seconds) applied to every item operation

    Thread safety:
        Uses an asyncio lock around mutations. Safe to use from
        multiple coroutines.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> await store.create_database_if_not_exists("db")
        >>> info = await store.create_collection_if_not_exists(CollectionRef("db", "c"), "/id")
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self.stats: Counter = Counter()
        self._databases: Dict[str, Dict[str, InMemoryCollection]] = {}
        self._connected = False
        self._lock = asyncio.Lock()
        self._failures: Dict[Tuple[str, Optional[str]], Exception] = {}
        self._in_flight = 0
        self.peak_in_flight = 0

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryDocumentStore connected")

    async def close(self) -> None:
        """Close; data is kept so a store can be reconnected in tests."""
        self._connected = False
        logger.debug("InMemoryDocumentStore closed")

    async def probe(self) -> None:
        self._check("probe")

    async def create_database_if_not_exists(self, database: str) -> None:
        self._check("create_database")
        async with self._lock:
            if database not in self._databases:
                self.stats["databases_created"] += 1
                self._databases[database] = {}
                logger.debug("Database created", extra={"database": database})

    async def create_collection_if_not_exists(
        self,
        ref: CollectionRef,
        partition_key_path: Optional[str] = None,
    ) -> CollectionInfo:
        self._check("create_collection")
        async with self._lock:
            if ref.database not in self._databases:
                raise NotFoundError(
                    f"Database {ref.database} not found", "database", ref.database
                )
            collections = self._databases[ref.database]
            if ref.collection not in collections:
                self.stats["collections_created"] += 1
                info = CollectionInfo(
                    ref=ref,
                    self_link=f"dbs/{ref.database}/colls/{uuid.uuid4().hex[:8]}/",
                    partition_key_path=partition_key_path,
                )
                collections[ref.collection] = InMemoryCollection(info=info)
                logger.debug("Collection created", extra={"collection": str(ref)})
            return collections[ref.collection].info

    async def read_item(
        self,
        ref: CollectionRef,
        item_id: str,
        partition_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        await self._enter("read_item", item_id)
        try:
            found = self._collection(ref).find(item_id, partition_key)
            if not found:
                raise NotFoundError(
                    f"Document {item_id} not found", "document", item_id, partition_key
                )
            return copy.deepcopy(found[0])
        finally:
            self._exit()

    async def create_item(
        self,
        ref: CollectionRef,
        body: Dict[str, Any],
        partition_key: Optional[str] = None,
    ) -> int:
        item_id = body["id"]
        await self._enter("create_item", item_id)
        try:
            async with self._lock:
                coll = self._collection(ref)
                key = self._key(coll, body, partition_key)
                if key in coll.documents:
                    raise ConflictError(f"Document {item_id} already exists", item_id)
                self._store(coll, key, body)
            return HTTPStatus.CREATED
        finally:
            self._exit()

    async def upsert_item(
        self,
        ref: CollectionRef,
        body: Dict[str, Any],
        partition_key: Optional[str] = None,
    ) -> int:
        item_id = body["id"]
        await self._enter("upsert_item", item_id)
        try:
            async with self._lock:
                coll = self._collection(ref)
                key = self._key(coll, body, partition_key)
                existed = key in coll.documents
                self._store(coll, key, body)
            return HTTPStatus.OK if existed else HTTPStatus.CREATED
        finally:
            self._exit()

    async def replace_item(
        self,
        ref: CollectionRef,
        item_id: str,
        body: Dict[str, Any],
        partition_key: Optional[str] = None,
    ) -> int:
        await self._enter("replace_item", item_id)
        try:
            async with self._lock:
                coll = self._collection(ref)
                key = self._key(coll, body, partition_key)
                if key not in coll.documents:
                    raise NotFoundError(
                        f"Document {item_id} not found", "document", item_id, partition_key
                    )
                self._store(coll, key, body)
            return HTTPStatus.OK
        finally:
            self._exit()

    async def delete_item(
        self,
        ref: CollectionRef,
        item_id: str,
        partition_key: Optional[str] = None,
    ) -> int:
        await self._enter("delete_item", item_id)
        try:
            async with self._lock:
                coll = self._collection(ref)
                key = (partition_key if coll.partitioned else None, item_id)
                if key not in coll.documents:
                    raise NotFoundError(
                        f"Document {item_id} not found", "document", item_id, partition_key
                    )
                del coll.documents[key]
            return HTTPStatus.NO_CONTENT
        finally:
            self._exit()

    def open_query(
        self,
        ref: CollectionRef,
        spec: QuerySpec,
        options: QueryOptions,
    ) -> InMemoryQueryCursor:
        self._check("query")
        return InMemoryQueryCursor(self, ref, parse_query(spec.query), spec.parameter_map(), options)

    async def read_throughput(self, ref: CollectionRef) -> Optional[int]:
        self._check("read_throughput")
        return self._collection(ref).throughput

    async def replace_throughput(self, ref: CollectionRef, units: int) -> None:
        self._check("replace_throughput")
        coll = self._collection(ref)
        if coll.throughput is None:
            raise NotFoundError(f"No offer for {ref}", "offer", str(ref))
        coll.throughput = units

    async def execute_stored_procedure(
        self,
        ref: CollectionRef,
        name: str,
        params: Sequence[Any],
        partition_key: Optional[str] = None,
    ) -> Any:
        self._check("execute_stored_procedure")
        coll = self._collection(ref)
        procedure = coll.procedures.get(name)
        if procedure is None:
            raise NotFoundError(f"Stored procedure {name} not found", "sproc", name)
        async with self._lock:
            return procedure(_ProcedureContext(coll), *copy.deepcopy(list(params)))

    # Internals

    async def _evaluate(
        self,
        ref: CollectionRef,
        query: ParsedQuery,
        params: Dict[str, Any],
        options: QueryOptions,
    ) -> List[JsonValue]:
        if not self._connected:
            raise StoreConnectionError("Not connected", endpoint="memory")
        async with self._lock:
            coll = self._collection(ref)
            scope = self._query_scope(coll, options)
            results: List[JsonValue] = []
            for (pk, _), doc in coll.documents.items():
                if scope is not _ALL and pk != scope:
                    continue
                if not matches(query, doc, params):
                    continue
                row = project(query, doc)
                if not is_undefined(row):
                    results.append(row)
            return results

    def _query_scope(self, coll: InMemoryCollection, options: QueryOptions) -> Any:
        if not coll.partitioned:
            return _ALL
        if options.partition_key is not None:
            return options.partition_key
        if options.enable_cross_partition_query:
            return _ALL
        return coll.current_partition

    def _collection(self, ref: CollectionRef) -> InMemoryCollection:
        coll = self._databases.get(ref.database, {}).get(ref.collection)
        if coll is None:
            raise NotFoundError(f"Collection {ref} not found", "collection", str(ref))
        return coll

    def _key(
        self,
        coll: InMemoryCollection,
        body: Dict[str, Any],
        partition_key: Optional[str],
    ) -> Tuple[Optional[str], str]:
        if not coll.partitioned:
            return (None, body["id"])
        value = coll.partition_of(body)
        if partition_key is not None and value != partition_key:
            raise StoreError(
                f"Partition key {partition_key!r} does not match document value {value!r}",
                status_code=400,
            )
        return (value, body["id"])

    def _store(
        self,
        coll: InMemoryCollection,
        key: Tuple[Optional[str], str],
        body: Dict[str, Any],
    ) -> None:
        coll.documents[key] = copy.deepcopy(body)
        if coll.current_partition is None:
            coll.current_partition = key[0]

    def _check(self, operation: str, item_id: Optional[str] = None) -> None:
        if not self._connected:
            raise StoreConnectionError("Not connected", endpoint="memory")
        self.stats[operation] += 1
        failure = self._failures.get((operation, item_id)) or self._failures.get((operation, None))
        if failure is not None:
            raise failure

    async def _enter(self, operation: str, item_id: Optional[str]) -> None:
        self._check(operation, item_id)
        self._in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
        if self.latency:
            await asyncio.sleep(self.latency)

    def _exit(self) -> None:
        self._in_flight -= 1

    # Testing helpers

    def inject_failure(
        self,
        operation: str,
        exception: Exception,
        item_id: Optional[str] = None,
    ) -> None:
        """Make an operation raise ``exception``.

        Args:
            operation: Operation name (e.g. "upsert_item", "probe", "create_collection")
            exception: Exception to raise
            item_id: Only fail for this document id; None fails every call
        """
        self._failures[(operation, item_id)] = exception

    def clear_failures(self) -> None:
        self._failures.clear()

    def register_stored_procedure(
        self,
        ref: CollectionRef,
        name: str,
        procedure: StoredProcedure,
    ) -> None:
        """Register a Python callable as a stored procedure.

        The callable receives a context exposing ``read``/``replace`` plus
        the positional params.
        """
        self._collection(ref).procedures[name] = procedure

    def remove_offer(self, ref: CollectionRef) -> None:
        """Simulate a collection with no throughput offer."""
        self._collection(ref).throughput = None

    def set_current_partition(self, ref: CollectionRef, partition_key: Optional[str]) -> None:
        """Set the partition seen by non-cross-partition queries without a key."""
        self._collection(ref).current_partition = partition_key

    def all_documents(self, ref: CollectionRef) -> List[Dict[str, Any]]:
        """All stored documents, including soft-deleted ones (testing helper)."""
        return copy.deepcopy(list(self._collection(ref).documents.values()))

    def partitions(self, ref: CollectionRef) -> Dict[Optional[str], int]:
        """Document count per partition (testing helper)."""
        counts: Dict[Optional[str], int] = defaultdict(int)
        for pk, _ in self._collection(ref).documents:
            counts[pk] += 1
        return dict(counts)


class _AllPartitions:
    def __repr__(self) -> str:
        return "<all partitions>"


_ALL = _AllPartitions()


class _ProcedureContext:
    """What a registered stored procedure can touch."""

    def __init__(self, coll: InMemoryCollection) -> None:
        self._coll = coll

    def read(self, item_id: str) -> Optional[Dict[str, Any]]:
        found = self._coll.find(item_id, None)
        return copy.deepcopy(found[0]) if found else None

    def replace(self, body: Dict[str, Any]) -> None:
        key = (self._coll.partition_of(body) if self._coll.partitioned else None, body["id"])
        self._coll.documents[key] = copy.deepcopy(body)
