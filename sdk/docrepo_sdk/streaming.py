"""
Batch streaming over paged queries.

stream_batches() hands query results to a handler in bounded batches
instead of materialising the whole result set.

Invariants:
    - Every batch except the last holds exactly page_size items
    - The next page is not fetched until the handler has finished
    - A handler exception stops paging and propagates
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, TypeVar

from .errors import ValidationError
from .query import DocumentQuery

logger = logging.getLogger(__name__)

T = TypeVar("T")

BatchHandler = Callable[[List[T]], Awaitable[None]]


async def stream_batches(
    query: DocumentQuery[T],
    handler: BatchHandler,
    page_size: int,
) -> int:
    """Feed query results to ``handler`` in batches of ``page_size``.

    Args:
        query: Query to drain
        handler: Coroutine function called with each batch
        page_size: Batch size

    Returns:
        Total number of items handed to the handler
    """
    if page_size < 1:
        raise ValidationError("page_size must be at least 1", field_name="page_size")

    buffer: List[T] = []
    total = 0
    batches = 0

    while query.has_more_results:
        buffer.extend(await query.fetch_next())
        while len(buffer) >= page_size:
            batch, buffer = buffer[:page_size], buffer[page_size:]
            await handler(batch)
            total += len(batch)
            batches += 1

    if buffer:
        await handler(buffer)
        total += len(buffer)
        batches += 1

    logger.debug("Batch streaming complete", extra={"items": total, "batches": batches})
    return total
