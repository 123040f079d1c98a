"""
Query construction and paging for docrepo.

This module provides:
- QueryBuilder: type-scoped, parameterised SQL for envelopes
- DocumentQuery: lazy pager over a store cursor

Example:
    >>> spec = QueryBuilder(Provider).where_id("p1").build()
    >>> spec.query
    'SELECT * FROM c WHERE c.documentType = @DocumentType AND c.deleted = false AND c.id = @Id'

Invariants:
    - Default scope is documentType = <type> AND deleted = false
    - Values are always passed as parameters, never inlined
    - A DocumentQuery is single-pass: once exhausted it stays exhausted
"""

from __future__ import annotations

import logging
import re
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    TypeVar,
)

from .envelope import (
    CONTENT_FIELD,
    DELETED_FIELD,
    DOCUMENT_TYPE_FIELD,
    ID_FIELD,
    document_type_for,
)
from .errors import ValidationError
from .store.base import JsonValue, QueryCursor, QuerySpec

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_FIELD_NAME = re.compile(r"^[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*$")


class QueryBuilder:
    """Builds parameterised queries over envelopes of one payload type.

    Example:
        >>> QueryBuilder(Provider).where_content("ukprn", "1001").select_content().build()
    """

    def __init__(
        self,
        entity_type: Optional[type] = None,
        *,
        include_deleted: bool = False,
        alias: str = "c",
    ) -> None:
        self._alias = alias
        self._conditions: List[str] = []
        self._parameters: Dict[str, Any] = {}
        self._select_content = False
        if entity_type is not None:
            self._add(DOCUMENT_TYPE_FIELD, "@DocumentType", document_type_for(entity_type))
        if not include_deleted:
            self._conditions.append(f"{alias}.{DELETED_FIELD} = false")

    def where_id(self, document_id: str) -> QueryBuilder:
        """Restrict to one document id."""
        return self._add(ID_FIELD, "@Id", document_id)

    def where_ids(self, document_ids: List[str]) -> QueryBuilder:
        """Restrict to a set of document ids."""
        self._parameters["@Ids"] = list(document_ids)
        self._conditions.append(f"ARRAY_CONTAINS(@Ids, {self._alias}.{ID_FIELD})")
        return self

    def where_content(self, field_path: str, value: Any) -> QueryBuilder:
        """Equality filter on a content field, e.g. where_content("ukprn", "1001")."""
        if not _FIELD_NAME.match(field_path):
            raise ValidationError(f"Invalid field path {field_path!r}", field_name=field_path)
        name = "@p" + str(len(self._parameters))
        return self._add(f"{CONTENT_FIELD}.{field_path}", name, value)

    def select_content(self) -> QueryBuilder:
        """Project only the content of each envelope."""
        self._select_content = True
        return self

    def build(self) -> QuerySpec:
        projection = f"VALUE {self._alias}.{CONTENT_FIELD}" if self._select_content else "*"
        text = f"SELECT {projection} FROM {self._alias}"
        if self._conditions:
            text += " WHERE " + " AND ".join(self._conditions)
        parameters = tuple({"name": k, "value": v} for k, v in self._parameters.items())
        return QuerySpec(query=text, parameters=parameters)

    def _add(self, field_path: str, name: str, value: Any) -> QueryBuilder:
        self._parameters[name] = value
        self._conditions.append(f"{self._alias}.{field_path} = {name}")
        return self


class DocumentQuery(Generic[R]):
    """Lazy, single-pass sequence of result pages.

    Pages are fetched on demand. Items are converted with ``convert``
    before being handed out. Iterating yields pages (lists); use
    ``to_list()`` to drain everything.

    Example:
        >>> query = await repo.read(Provider)
        >>> async for page in query:
        ...     handle(page)
    """

    def __init__(
        self,
        cursor: QueryCursor,
        convert: Callable[[JsonValue], R],
    ) -> None:
        self._cursor = cursor
        self._convert = convert
        self.pages_fetched = 0

    @property
    def has_more_results(self) -> bool:
        return self._cursor.has_more_results

    async def fetch_next(self) -> List[R]:
        """Fetch and convert the next page; empty once exhausted."""
        if not self._cursor.has_more_results:
            return []
        raw = await self._cursor.fetch_next()
        self.pages_fetched += 1
        return [self._convert(item) for item in raw]

    async def __aiter__(self) -> AsyncIterator[List[R]]:
        while self._cursor.has_more_results:
            page = await self.fetch_next()
            if page:
                yield page

    async def to_list(self) -> List[R]:
        """Drain all remaining pages into one list, in store order.

        Memory use grows with the result set; use stream_batches() for
        large scans.
        """
        results: List[R] = []
        while self._cursor.has_more_results:
            results.extend(await self.fetch_next())
        logger.debug("Query drained", extra={"pages": self.pages_fetched, "items": len(results)})
        return results

    async def first_or_none(self) -> Optional[R]:
        """First result across pages, or None."""
        while self._cursor.has_more_results:
            page = await self.fetch_next()
            if page:
                return page[0]
        return None
